"""
Pydantic DTOs for task documents and store change notifications.

These models are decoupled from any particular store engine and are shared
by clients, workers and store adapters.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Reserved separator of the event naming wire format
SEPARATOR = ":"


class BaseDTO(BaseModel):
    """
    Base configuration for all DTOs.

    - Aliases are generated in camelCase for JSON serialization.
    - Allows population by field name (snake_case) in Python code.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


def validate_name(value: str, what: str) -> str:
    """Check a type tag or identifier for use in event names."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"{what} must be a non-empty string")
    if SEPARATOR in value:
        raise ValueError(f"{what} must not contain '{SEPARATOR}': {value!r}")
    return value


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskState(str, Enum):
    """Task lifecycle states. ``succeeded`` and ``failed`` are terminal."""
    ADDED = "added"
    CHANGED = "changed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


class TaskError(BaseDTO):
    """Structured error payload attached to a failed task."""
    kind: str = Field(..., description="Error category (e.g. 'NotFound', 'ValidationError')")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Optional structured details"
    )


class Task(BaseDTO):
    """
    The unit of work exchanged between clients and workers through the store.

    Fields:
        id: Globally unique identifier, immutable
        kind: Document discriminator, always "task"
        type: Task kind used for routing and selector matching
        payload: Opaque creator-supplied data
        origin: Collection/principal the task was created in
        state: Lifecycle state
        error: Structured error, present only when state is "failed"
        result: Optional data attached on success
        progress: Optional annotation attached on "changed"
        revision: Store-supplied revision token
    """
    id: str = Field(default_factory=new_id, description="Unique task identifier")
    kind: Literal["task"] = Field(default="task", description="Document discriminator")
    type: str = Field(..., description="Task type tag")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Opaque task payload")
    origin: str = Field(..., description="Collection the task was created in")
    state: TaskState = Field(default=TaskState.ADDED, description="Lifecycle state")
    error: Optional[TaskError] = Field(default=None, description="Error payload for failed tasks")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Result data for succeeded tasks")
    progress: Optional[Dict[str, Any]] = Field(default=None, description="Progress annotation")
    revision: Optional[str] = Field(default=None, description="Store revision token")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time (UTC)")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update time (UTC)")

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return validate_name(value, "Task id")

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        return validate_name(value, "Task type")

    @model_validator(mode="after")
    def _check_error(self) -> "Task":
        if self.state == TaskState.FAILED and self.error is None:
            raise ValueError("A failed task must carry an error payload")
        if self.state != TaskState.FAILED and self.error is not None:
            raise ValueError("Only failed tasks may carry an error payload")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Task":
        """Build a task from a stored document."""
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        """Serialize the task as a store document (camelCase, JSON-safe)."""
        doc = self.model_dump(by_alias=True, mode="json", exclude_none=True)
        return doc

    def evolve(self, **changes: Any) -> "Task":
        """Return a validated copy with the given fields replaced."""
        data = self.model_dump()
        data.update(changes)
        data["updated_at"] = utcnow()
        return Task.model_validate(data)


def is_task_document(doc: Dict[str, Any]) -> bool:
    return doc.get("kind") == "task"


class Change(BaseDTO):
    """
    A single entry of a store change feed.

    ``doc`` is the document body after the change. For deletions it carries
    the final body of the document (tombstones keep their content).
    """
    seq: Union[int, str] = Field(..., description="Store sequence token")
    origin: str = Field(..., description="Collection the change happened in")
    doc: Dict[str, Any] = Field(..., description="Document body after the change")
    deleted: bool = Field(default=False, description="Whether the document was deleted")

    @property
    def doc_id(self) -> str:
        return self.doc.get("id", "")

    @property
    def revision(self) -> Optional[str]:
        return self.doc.get("revision")


class Principal(BaseDTO):
    """An account known to the account directory."""
    kind: str = Field(..., description="Principal kind (e.g. 'user')")
    name: str = Field(..., description="Principal name, unique per kind")
    origin: str = Field(..., description="Collection owned by the principal")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Extra account data")
