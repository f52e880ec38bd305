"""
Client Completion Bridge - one task creation, one deferred result.

``submit()`` writes a task and returns a ``PendingTask`` that settles exactly
once: resolved with the completed task when a worker marks it succeeded,
rejected with ``TaskFailedError`` when it is marked failed, or rejected with
``CreationError`` when the initial write never made it to the store.

Terminal notifications may arrive more than once (replication redelivers);
the first one settles the result and deregisters every listener of that
task, so later duplicates go nowhere.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Generator, List, Optional

from taskfeed_common.errors import (
    CreationError,
    DocumentNotFoundError,
    StoreError,
    TaskFailedError,
)
from taskfeed_common.events import EventSelector, EventVerb, TaskEvent
from taskfeed_common.models import Task, TaskState, new_id

from .router import EventRouter, Listener
from .store import TaskStore

logger = logging.getLogger(__name__)


class PendingTask:
    """
    Deferred outcome of a submitted task.

    Usage:
        pending = await bridge.submit("direct-message", {"to": "alice", "body": "hi"})
        try:
            task = await pending
        except TaskFailedError as e:
            print(e.error.kind, e.error.message)
    """

    def __init__(self, task: Task, future: "asyncio.Future[Task]"):
        self.task = task
        self._future = future

    @property
    def task_id(self) -> str:
        return self.task.id

    def done(self) -> bool:
        return self._future.done()

    async def result(self, timeout: Optional[float] = None) -> Task:
        """
        Wait for the outcome.

        A timeout only stops waiting; the task itself keeps running and the
        pending result can still be awaited later.

        Raises:
            TaskFailedError: If the task failed
            CreationError: If the task could not be created
            asyncio.TimeoutError: If ``timeout`` elapsed first
        """
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def __await__(self) -> Generator[Any, None, Task]:
        return self._future.__await__()

    def __repr__(self) -> str:
        return f"PendingTask(id={self.task.id!r}, type={self.task.type!r}, done={self.done()})"


class CompletionBridge:
    """
    Turns task creation into a single deferred result.

    Attributes:
        store: Task store to create tasks in
        router: Client-side event router following ``origin``
        origin: Collection the client writes its tasks to
    """

    def __init__(self, store: TaskStore, router: EventRouter, origin: str):
        self.store = store
        self.router = router
        self.events = router.client_events()
        self.origin = origin

    async def submit(
        self,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        task_id: Optional[str] = None,
    ) -> PendingTask:
        """
        Create a task and return its pending result.

        Raises:
            ValueError: If the type or id is not a valid name (programming error)
        """
        future: "asyncio.Future[Task]" = asyncio.get_running_loop().create_future()
        task = Task(
            id=task_id or new_id(),
            type=task_type,
            payload=dict(payload or {}),
            origin=self.origin,
        )

        try:
            doc = await self.store.create(self.origin, task.to_document())
        except StoreError as e:
            logger.warning(f"Failed to create {task_type} task {task.id}: {e}")
            future.set_exception(
                CreationError(f"Failed to create {task_type} task: {e}", task_type=task_type)
            )
            return PendingTask(task, future)

        created = Task.from_document(doc)
        pending = PendingTask(created, future)
        settle = self._await_outcome(created, future)
        logger.debug(f"Submitted {created.type}:{created.id}")

        # Catch-up read: the outcome may already have been written
        try:
            current = Task.from_document(await self.store.get(self.origin, created.id))
        except DocumentNotFoundError:
            current = None
        except StoreError as e:
            logger.debug(f"Catch-up read of {created.id} failed, waiting for events: {e}")
            current = None
        if current is not None and current.is_terminal:
            settle(current)

        return pending

    def _await_outcome(
        self,
        task: Task,
        future: "asyncio.Future[Task]",
    ) -> Callable[[Task], None]:
        """
        Register the terminal listeners of one task.

        Returns:
            A function settling the pending result from a terminal task body
        """
        listeners: List[Listener] = []

        def deregister(_: Any = None) -> None:
            for listener in listeners:
                self.events.off(listener)

        def settle(terminal: Task) -> None:
            if self._settle(future, terminal):
                deregister()

        async def on_terminal(event: TaskEvent) -> None:
            settle(event.task)

        async def on_removed(event: TaskEvent) -> None:
            # Tombstones keep the final body; only a terminal one carries an outcome
            if event.task.is_terminal:
                settle(event.task)

        for verb, callback in (
            (EventVerb.SUCCEED, on_terminal),
            (EventVerb.FAIL, on_terminal),
            (EventVerb.REMOVE, on_removed),
        ):
            listeners.append(self.events.on(EventSelector(verb, task.type, task.id), callback))

        # Covers cancellation by the caller
        future.add_done_callback(deregister)
        return settle

    @staticmethod
    def _settle(future: "asyncio.Future[Task]", task: Task) -> bool:
        """Settle the pending result. Returns False if it was already settled."""
        if future.done():
            return False
        if task.state == TaskState.SUCCEEDED:
            logger.debug(f"Task {task.id} succeeded")
            future.set_result(task)
        else:
            logger.debug(f"Task {task.id} failed: {task.error.kind}")
            future.set_exception(TaskFailedError(task.error, task))
        return True
