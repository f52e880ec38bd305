"""
Task Client - the client-side capability object.

A client owns one collection (its origin). It creates tasks there, follows
that collection's change feed, and exposes every event verb at every
selector granularity.

Usage:
    async with TaskClient(store, origin="user-bob") as client:
        client.on("succeed:direct-message", lambda event: print(event.task.id))

        task = await client.add("direct-message", {"to": "alice", "body": "hi"})
"""
import logging
from typing import Any, Dict, Optional

from taskfeed_common.models import Task

from .bridge import CompletionBridge, PendingTask
from .router import EventCallback, EventRouter, Listener, SelectorLike
from .store import TaskStore

logger = logging.getLogger(__name__)


class TaskClient:
    """
    Client-side registration surface plus the completion bridge.

    Attributes:
        store: Task store (the client's replica)
        origin: Collection this client creates tasks in
        router: Event router following ``origin``
        events: Client registration surface
        bridge: Completion bridge
    """

    def __init__(
        self,
        store: TaskStore,
        origin: str,
        router: Optional[EventRouter] = None,
        dedupe_window: int = 1024,
    ):
        self.store = store
        self.origin = origin
        self.router = router or EventRouter(store, origins=[origin], dedupe_window=dedupe_window)
        self.events = self.router.client_events()
        self.bridge = CompletionBridge(store, self.router, origin)

    # =========================================================================
    # Registration
    # =========================================================================

    def on(self, selector: SelectorLike, callback: Optional[EventCallback] = None):
        """
        Listen to task events (``add``, ``change``, ``succeed``, ``fail``, ``remove``).

        Usable as a decorator when ``callback`` is omitted.
        """
        return self.events.on(selector, callback)

    def once(self, selector: SelectorLike, callback: EventCallback) -> Listener:
        return self.events.once(selector, callback)

    def off(self, listener: Listener) -> bool:
        return self.events.off(listener)

    # =========================================================================
    # Tasks
    # =========================================================================

    async def submit(
        self,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        task_id: Optional[str] = None,
    ) -> PendingTask:
        """Create a task and return its pending result without waiting for it."""
        if not self.router.is_running:
            await self.start()
        return await self.bridge.submit(task_type, payload, task_id=task_id)

    async def add(
        self,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Task:
        """
        Create a task and wait for its outcome.

        Returns:
            The completed task

        Raises:
            TaskFailedError: If a worker marked the task failed
            CreationError: If the task could not be written
            asyncio.TimeoutError: If ``timeout`` elapsed first
        """
        pending = await self.submit(task_type, payload)
        return await pending.result(timeout=timeout)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start following the client's collection."""
        await self.router.start()

    async def stop(self) -> None:
        await self.router.stop()

    async def __aenter__(self) -> "TaskClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
