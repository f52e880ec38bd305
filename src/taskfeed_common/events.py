"""
Event names, selectors and the task event envelope.

Event names follow the colon-delimited wire format ``<verb>:<type>[:<id>]``.
The name is case-sensitive and ``:`` is reserved as the separator, so task
types and ids never contain it.

    >>> EventSelector.parse("succeed:direct-message:T1")
    EventSelector(verb=<EventVerb.SUCCEED: 'succeed'>, type='direct-message', id='T1')
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import Field

from .errors import SelectorError
from .models import SEPARATOR, BaseDTO, Task, TaskState


class EventVerb(str, Enum):
    """Verbs of the task event vocabulary."""
    ADD = "add"
    CHANGE = "change"
    SUCCEED = "succeed"
    FAIL = "fail"
    REMOVE = "remove"


# Verbs a worker-side surface may listen to
WORKER_VERBS = frozenset({EventVerb.ADD, EventVerb.CHANGE})

_STATE_VERBS = {
    TaskState.ADDED: EventVerb.ADD,
    TaskState.CHANGED: EventVerb.CHANGE,
    TaskState.SUCCEEDED: EventVerb.SUCCEED,
    TaskState.FAILED: EventVerb.FAIL,
}


def verb_for(state: TaskState, deleted: bool = False) -> EventVerb:
    """Classify a task document change by verb."""
    if deleted:
        return EventVerb.REMOVE
    return _STATE_VERBS[state]


@dataclass(frozen=True)
class EventSelector:
    """
    A parsed event name.

    ``type`` and ``id`` narrow the events a listener observes:
    no type matches every event of the verb, a type matches only tasks of
    that type, and type+id matches a single task.
    """
    verb: EventVerb
    type: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self):
        if self.id is not None and self.type is None:
            raise SelectorError("An id selector requires a type")
        for part in (self.type, self.id):
            if part is not None and (not part or SEPARATOR in part):
                raise SelectorError(f"Invalid selector part: {part!r}")

    @classmethod
    def parse(cls, name: Union[str, "EventSelector"]) -> "EventSelector":
        """
        Parse an event name.

        Raises:
            SelectorError: If the name is malformed or the verb is unknown
        """
        if isinstance(name, EventSelector):
            return name
        if not isinstance(name, str) or not name:
            raise SelectorError(f"Event name must be a non-empty string, got {name!r}")

        parts = name.split(SEPARATOR)
        if len(parts) > 3 or any(not part for part in parts):
            raise SelectorError(f"Malformed event name: {name!r}")

        try:
            verb = EventVerb(parts[0])
        except ValueError:
            raise SelectorError(f"Unknown event verb in {name!r}") from None

        return cls(
            verb=verb,
            type=parts[1] if len(parts) > 1 else None,
            id=parts[2] if len(parts) > 2 else None,
        )

    @property
    def granularity(self) -> str:
        if self.id is not None:
            return "identity"
        if self.type is not None:
            return "type"
        return "verb"

    def matches(self, verb: EventVerb, task_type: str, task_id: str) -> bool:
        if verb != self.verb:
            return False
        if self.type is not None and self.type != task_type:
            return False
        if self.id is not None and self.id != task_id:
            return False
        return True

    def __str__(self) -> str:
        return SEPARATOR.join(
            part for part in (self.verb.value, self.type, self.id) if part is not None
        )


class TaskEvent(BaseDTO):
    """
    A task change classified by verb, as delivered to listeners.

    Fields:
        verb: Event verb
        task: The task body carried by the change
        origin: Collection the change was observed in
        seq: Store sequence token of the underlying change
        time: When the router observed the change
    """
    verb: EventVerb = Field(..., description="Event verb")
    task: Task = Field(..., description="Task body after the change")
    origin: str = Field(..., description="Collection the change was observed in")
    seq: Optional[Union[int, str]] = Field(default=None, description="Store sequence token")
    time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Observation time (UTC)"
    )

    @property
    def name(self) -> str:
        """Fully qualified event name (``verb:type:id``)."""
        return str(EventSelector(self.verb, self.task.type, self.task.id))
