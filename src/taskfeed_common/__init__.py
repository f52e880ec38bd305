"""
Taskfeed Common - Shared task models, event names and errors.
"""
from .models import (
    BaseDTO,
    Change,
    Principal,
    Task,
    TaskError,
    TaskState,
)

from .events import (
    EventSelector,
    EventVerb,
    TaskEvent,
    WORKER_VERBS,
)

from .errors import (
    ConflictError,
    CreationError,
    DocumentNotFoundError,
    NotFoundError,
    PrincipalNotFoundError,
    ProtocolViolation,
    RoutingError,
    SelectorError,
    StoreError,
    StoreUnavailableError,
    TaskFailedError,
    TaskfeedError,
    TaskValidationError,
)

__all__ = [
    # Models
    "BaseDTO",
    "Change",
    "Principal",
    "Task",
    "TaskError",
    "TaskState",
    # Events
    "EventSelector",
    "EventVerb",
    "TaskEvent",
    "WORKER_VERBS",
    # Errors
    "ConflictError",
    "CreationError",
    "DocumentNotFoundError",
    "NotFoundError",
    "PrincipalNotFoundError",
    "ProtocolViolation",
    "RoutingError",
    "SelectorError",
    "StoreError",
    "StoreUnavailableError",
    "TaskFailedError",
    "TaskfeedError",
    "TaskValidationError",
]
