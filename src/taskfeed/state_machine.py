"""
Task State Machine - the authority for legal task transitions.

States:

    added -> {changed}* -> {succeeded | failed}

``succeeded`` and ``failed`` are terminal. Terminal transitions are
idempotent: replication may hand the same task to several handler
instances, so a second ``mark_succeeded``/``mark_failed`` is a silent no-op.
Races between writers are settled by the store's revision check: the first
write wins, the loser re-reads the task, finds it terminal and backs off.

Usage:
    machine = TaskStateMachine(store)

    done = await machine.mark_succeeded(task, result={"messageId": "m-1"})
    if done is None:
        # somebody else terminated the task first
        ...
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set, Union

from taskfeed_common.errors import (
    ConflictError,
    DocumentNotFoundError,
    ProtocolViolation,
    StoreError,
)
from taskfeed_common.models import Task, TaskError, TaskState

from .store import TaskStore

logger = logging.getLogger(__name__)

ErrorPayload = Union[TaskError, Dict[str, Any], str, Exception]

TRANSITIONS = {
    TaskState.ADDED: {TaskState.CHANGED, TaskState.SUCCEEDED, TaskState.FAILED},
    TaskState.CHANGED: {TaskState.CHANGED, TaskState.SUCCEEDED, TaskState.FAILED},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED: set(),
}


def check_transition(current: TaskState, target: TaskState) -> bool:
    """
    Validate a state transition.

    Returns:
        True if the transition must be written, False if it is a no-op
        (terminal to terminal)

    Raises:
        ProtocolViolation: If the transition is illegal
    """
    if current.is_terminal:
        if target.is_terminal:
            return False
        raise ProtocolViolation(
            f"Task in terminal state '{current.value}' cannot move to '{target.value}'"
        )
    if target not in TRANSITIONS[current]:
        raise ProtocolViolation(f"Illegal transition '{current.value}' -> '{target.value}'")
    return True


def coerce_error(error: ErrorPayload) -> TaskError:
    """Turn a handler-supplied error payload into a ``TaskError``."""
    if isinstance(error, TaskError):
        return error
    if isinstance(error, dict):
        return TaskError.model_validate(error)
    if hasattr(error, "to_task_error"):
        return error.to_task_error()
    if isinstance(error, Exception):
        return TaskError(kind=type(error).__name__, message=str(error))
    return TaskError(kind="Error", message=str(error))


class TaskStateMachine:
    """
    Drives task documents through their lifecycle with revision-checked writes.

    Attributes:
        store: Task store the documents live in
        removal_delay: Seconds to wait before deleting a terminal task
            (None keeps terminal tasks)
        conflict_retries: Re-read/retry budget when a write hits a stale revision
    """

    def __init__(
        self,
        store: TaskStore,
        removal_delay: Optional[float] = 0.0,
        conflict_retries: int = 5,
    ):
        self.store = store
        self.removal_delay = removal_delay
        self.conflict_retries = conflict_retries
        self._removals: Set[asyncio.Task] = set()

    async def mark_succeeded(
        self,
        task: Task,
        result: Optional[Dict[str, Any]] = None,
        origin: Optional[str] = None,
    ) -> Optional[Task]:
        """
        Terminate a task successfully.

        Returns:
            The stored terminal task, or None if the task was already terminal
        """
        return await self._transition(
            task,
            TaskState.SUCCEEDED,
            origin=origin,
            result=result,
            error=None,
        )

    async def mark_failed(
        self,
        task: Task,
        error: ErrorPayload,
        origin: Optional[str] = None,
    ) -> Optional[Task]:
        """
        Terminate a task with a structured error payload.

        Returns:
            The stored terminal task, or None if the task was already terminal
        """
        return await self._transition(
            task,
            TaskState.FAILED,
            origin=origin,
            error=coerce_error(error),
        )

    async def mark_changed(
        self,
        task: Task,
        progress: Optional[Dict[str, Any]] = None,
        origin: Optional[str] = None,
    ) -> Task:
        """
        Annotate a running task (``changed`` self-loop).

        Raises:
            ProtocolViolation: If the task is terminal
            DocumentNotFoundError: If the task no longer exists
        """
        fields = {"progress": progress} if progress is not None else {}
        stored = await self._transition(task, TaskState.CHANGED, origin=origin, **fields)
        if stored is None:
            raise ProtocolViolation(f"Task {task.id} is terminal and cannot change")
        return stored

    async def _transition(
        self,
        task: Task,
        target: TaskState,
        origin: Optional[str] = None,
        **fields: Any,
    ) -> Optional[Task]:
        origin = origin or task.origin
        current = task

        for attempt in range(self.conflict_retries + 1):
            if not check_transition(current.state, target):
                logger.debug(
                    f"Task {task.id} already {current.state.value}; "
                    f"'{target.value}' is a no-op"
                )
                return None

            updated = current.evolve(state=target, **fields)
            try:
                doc = await self.store.update(origin, updated.to_document())
            except ConflictError:
                logger.debug(
                    f"Revision conflict on task {task.id} "
                    f"(attempt {attempt + 1}), re-reading"
                )
                try:
                    current = Task.from_document(await self.store.get(origin, task.id))
                except DocumentNotFoundError:
                    if target.is_terminal:
                        # Terminated and removed by another writer
                        return None
                    raise
                continue
            except DocumentNotFoundError:
                if target.is_terminal:
                    logger.debug(f"Task {task.id} no longer exists; '{target.value}' is a no-op")
                    return None
                raise

            stored = Task.from_document(doc)
            logger.debug(f"Task {stored.id} -> {target.value} ({stored.revision})")
            if target.is_terminal:
                self._schedule_removal(origin, stored)
            return stored

        raise ConflictError(task.id, current.revision)

    # =========================================================================
    # Removal of terminal tasks
    # =========================================================================

    def _schedule_removal(self, origin: str, task: Task) -> None:
        if self.removal_delay is None:
            return
        removal = asyncio.create_task(self._remove(origin, task))
        self._removals.add(removal)
        removal.add_done_callback(self._removals.discard)

    async def _remove(self, origin: str, task: Task) -> None:
        await asyncio.sleep(self.removal_delay)
        try:
            await self.store.delete(origin, task.id, task.revision)
            logger.debug(f"Removed terminal task {origin}/{task.id}")
        except (ConflictError, DocumentNotFoundError):
            logger.debug(f"Task {task.id} changed or vanished before removal; skipping")
        except StoreError as e:
            logger.warning(f"Failed to remove terminal task {task.id}: {e}")

    async def drain(self) -> None:
        """Wait for scheduled removals to finish."""
        while self._removals:
            await asyncio.gather(*list(self._removals), return_exceptions=True)

    async def close(self) -> None:
        """Cancel scheduled removals."""
        for removal in list(self._removals):
            removal.cancel()
        await asyncio.gather(*list(self._removals), return_exceptions=True)
        self._removals.clear()
