"""
Error taxonomy shared by taskfeed clients, workers and store adapters.

Task-level failures never cross the client/worker boundary as exceptions.
They travel as data (the task's ``error`` field) and are re-raised on the
client side as ``TaskFailedError``. The exceptions below are only raised
inside a single process.
"""
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Task, TaskError


class TaskfeedError(Exception):
    """Base exception for all taskfeed errors."""
    pass


# =============================================================================
# Store errors
# =============================================================================


class StoreError(TaskfeedError):
    """Base exception for task store failures."""
    pass


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached or is not connected."""
    pass


class ConflictError(StoreError):
    """Raised when a write carries a stale revision or the document already exists."""

    def __init__(self, doc_id: str, revision: Optional[str] = None):
        self.doc_id = doc_id
        self.revision = revision
        super().__init__(f"Document update conflict: {doc_id} (revision {revision})")


class NotFoundError(TaskfeedError):
    """Base exception for failed lookups."""
    pass


class DocumentNotFoundError(NotFoundError, StoreError):
    """Raised when a document does not exist (or was deleted)."""

    def __init__(self, origin: str, doc_id: str):
        self.origin = origin
        self.doc_id = doc_id
        super().__init__(f"Document not found: {origin}/{doc_id}")


class PrincipalNotFoundError(NotFoundError):
    """Raised by the account directory when a principal does not exist."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"Principal not found: {kind}/{name}")


# =============================================================================
# Protocol errors
# =============================================================================


class SelectorError(TaskfeedError, ValueError):
    """Raised for malformed event selector strings."""
    pass


class ProtocolViolation(TaskfeedError):
    """
    Raised synchronously when a caller breaks the task protocol.

    Examples are per-identity listener registration on the worker side and
    moving a terminal task back into a non-terminal state.
    """
    pass


class CreationError(TaskfeedError):
    """The initial write of a task failed; the task never reached a handler."""

    def __init__(self, message: str, task_type: Optional[str] = None):
        self.task_type = task_type
        super().__init__(message)


class _TaskLevelError(TaskfeedError):
    """Errors a handler converts into a ``failed`` task."""

    kind = "Error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_task_error(self) -> "TaskError":
        from .models import TaskError

        return TaskError(kind=self.kind, message=self.message, details=self.details)


class RoutingError(_TaskLevelError):
    """A handler could not resolve a referenced principal."""

    kind = "NotFound"


class TaskValidationError(_TaskLevelError):
    """A payload violates a plugin-defined constraint."""

    kind = "ValidationError"


class TaskFailedError(TaskfeedError):
    """Client-side rejection of a task that reached the ``failed`` state."""

    def __init__(self, error: "TaskError", task: Optional["Task"] = None):
        self.error = error
        self.task = task
        super().__init__(f"{error.kind}: {error.message}")
