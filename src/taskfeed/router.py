"""
Event Router - turns store changes into task events for listeners.

The router follows the task store's change feed, classifies each task
document change by verb (``add``, ``change``, ``succeed``, ``fail``,
``remove``) and multicasts it to every listener whose selector matches.

Two registration surfaces sit on top of one router:

- ``ClientEvents``: all verbs, at verb, type or type+id granularity
- ``WorkerEvents``: only ``add``/``change``, at verb or type granularity.
  Workers are long-lived; per-task callbacks for tasks another worker may
  terminate would pile up forever, so they are rejected outright.

Usage:
    router = EventRouter(store, origins=["user-alice"])
    await router.start()

    events = router.client_events()

    @events.on("succeed:direct-message")
    async def delivered(event: TaskEvent):
        print(f"Delivered: {event.task.id}")
"""
import inspect
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from pydantic import ValidationError

from taskfeed_common.errors import ProtocolViolation
from taskfeed_common.events import (
    WORKER_VERBS,
    EventSelector,
    TaskEvent,
    verb_for,
)
from taskfeed_common.models import Change, Task, is_task_document

from .store import TaskStore

logger = logging.getLogger(__name__)

# Listeners may be plain functions or coroutines
EventCallback = Callable[[TaskEvent], Union[Awaitable[None], None]]
SelectorLike = Union[str, EventSelector]


@dataclass(eq=False)
class Listener:
    """Handle of a registered listener, used to deregister it."""
    selector: EventSelector
    callback: EventCallback
    once: bool = False
    active: bool = True


class EventRouter:
    """
    Classifies store changes and delivers them to matching listeners.

    The listener registry is private to the process. Mutations take a lock
    and delivery iterates a snapshot, so listeners can register and
    deregister while notifications are being delivered.
    """

    def __init__(
        self,
        store: TaskStore,
        origins: Optional[List[str]] = None,
        dedupe_window: int = 1024,
    ):
        """
        Initialize the router.

        Args:
            store: Task store whose change feed is followed
            origins: Collections to follow (all when omitted)
            dedupe_window: How many recent (id, revision) keys to remember
                for dropping redelivered changes (0 disables)
        """
        self.store = store
        self.origins = list(origins) if origins else None
        self._dedupe_window = dedupe_window
        self._seen: "OrderedDict[Tuple[Any, ...], None]" = OrderedDict()
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()
        self._subscription_id: Optional[str] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe to the store's change feed."""
        if self._subscription_id is not None:
            logger.warning("Event router already running")
            return
        self._subscription_id = await self.store.subscribe(self.handle_change, self.origins)
        logger.info(f"Event router following {self.origins or 'all origins'}")

    async def stop(self) -> None:
        """Stop following the change feed. Listeners stay registered."""
        if self._subscription_id is None:
            return
        await self.store.unsubscribe(self._subscription_id)
        self._subscription_id = None
        logger.info("Event router stopped")

    @property
    def is_running(self) -> bool:
        return self._subscription_id is not None

    # =========================================================================
    # Listener registry
    # =========================================================================

    def add_listener(
        self,
        selector: SelectorLike,
        callback: EventCallback,
        once: bool = False,
    ) -> Listener:
        """
        Register a listener.

        Raises:
            SelectorError: If the selector string is malformed
        """
        listener = Listener(selector=EventSelector.parse(selector), callback=callback, once=once)
        with self._lock:
            self._listeners.append(listener)
        logger.debug(f"Registered listener for {listener.selector}")
        return listener

    def remove_listener(self, listener: Listener) -> bool:
        """Deregister a listener. Returns False if it was not registered."""
        with self._lock:
            listener.active = False
            try:
                self._listeners.remove(listener)
            except ValueError:
                return False
        logger.debug(f"Removed listener for {listener.selector}")
        return True

    def listeners(self, selector: Optional[SelectorLike] = None) -> List[Listener]:
        """Return registered listeners, optionally only those with the given selector."""
        wanted = EventSelector.parse(selector) if selector is not None else None
        with self._lock:
            return [
                listener for listener in self._listeners
                if wanted is None or listener.selector == wanted
            ]

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def client_events(self) -> "ClientEvents":
        return ClientEvents(self)

    def worker_events(self) -> "WorkerEvents":
        return WorkerEvents(self)

    # =========================================================================
    # Change handling
    # =========================================================================

    @staticmethod
    def classify(change: Change) -> Optional[TaskEvent]:
        """
        Turn a store change into a task event.

        Returns:
            The event, or None if the change is not about a task document
        """
        if not is_task_document(change.doc):
            return None
        try:
            task = Task.from_document(change.doc)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed task document {change.origin}/{change.doc_id}: {e}")
            return None

        return TaskEvent(
            verb=verb_for(task.state, deleted=change.deleted),
            task=task,
            origin=change.origin,
            seq=change.seq,
        )

    async def handle_change(self, change: Change) -> None:
        """Change feed callback: classify, drop duplicates, dispatch."""
        event = self.classify(change)
        if event is None:
            return
        if self._is_duplicate(change):
            logger.debug(f"Dropping redelivered change {event.name} ({change.revision})")
            return
        await self.dispatch(event)

    async def dispatch(self, event: TaskEvent) -> int:
        """
        Deliver an event to all matching listeners.

        Returns:
            Number of listeners invoked
        """
        task = event.task
        with self._lock:
            matching = [
                listener for listener in self._listeners
                if listener.active and listener.selector.matches(event.verb, task.type, task.id)
            ]
            for listener in matching:
                if listener.once:
                    listener.active = False
                    self._listeners.remove(listener)

        if not matching:
            logger.debug(f"No listeners for {event.name}")
            return 0

        delivered = 0
        for listener in matching:
            # Deregistered by an earlier listener of this same delivery
            if not listener.active and not listener.once:
                continue
            try:
                result = listener.callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Error in listener for {listener.selector} ({event.name}): {e}")
        return delivered

    async def replay(self, since: Optional[Any] = None) -> int:
        """
        Feed historical changes through the normal dispatch path.

        Returns:
            Number of changes replayed
        """
        if self.origins:
            changes: List[Change] = []
            for origin in self.origins:
                changes.extend(await self.store.changes(origin=origin, since=since))
        else:
            changes = await self.store.changes(since=since)

        for change in changes:
            await self.handle_change(change)
        logger.info(f"Replayed {len(changes)} change(s)")
        return len(changes)

    def _is_duplicate(self, change: Change) -> bool:
        if self._dedupe_window <= 0:
            return False
        key = (change.origin, change.doc_id, change.revision, change.deleted)
        with self._lock:
            if key in self._seen:
                return True
            self._seen[key] = None
            while len(self._seen) > self._dedupe_window:
                self._seen.popitem(last=False)
        return False


class ClientEvents:
    """
    Client-side registration surface: every verb, every granularity.

    Usage:
        events.on("succeed:direct-message", on_delivered)

        @events.on("fail")
        async def any_failure(event):
            ...
    """

    def __init__(self, router: EventRouter):
        self._router = router

    def on(self, selector: SelectorLike, callback: Optional[EventCallback] = None):
        """Register a listener; usable as a decorator when ``callback`` is omitted."""
        if callback is None:
            def decorator(func: EventCallback) -> EventCallback:
                self._router.add_listener(selector, func)
                return func
            return decorator
        return self._router.add_listener(selector, callback)

    def once(self, selector: SelectorLike, callback: EventCallback) -> Listener:
        """Register a listener that is removed after its first delivery."""
        return self._router.add_listener(selector, callback, once=True)

    def off(self, listener: Listener) -> bool:
        return self._router.remove_listener(listener)


class WorkerEvents:
    """
    Worker-side registration surface: ``add``/``change`` only, never per task.

    Raises ProtocolViolation at registration time for anything else.
    """

    def __init__(self, router: EventRouter):
        self._router = router

    @staticmethod
    def validate(selector: SelectorLike) -> EventSelector:
        parsed = EventSelector.parse(selector)
        if parsed.verb not in WORKER_VERBS:
            raise ProtocolViolation(
                f"Workers may only listen to add/change events, not '{parsed}'"
            )
        if parsed.granularity == "identity":
            raise ProtocolViolation(
                f"Per-task registration '{parsed}' is not allowed on the worker side"
            )
        return parsed

    def on(self, selector: SelectorLike, callback: Optional[EventCallback] = None):
        """Register a listener; usable as a decorator when ``callback`` is omitted."""
        parsed = self.validate(selector)
        if callback is None:
            def decorator(func: EventCallback) -> EventCallback:
                self._router.add_listener(parsed, func)
                return func
            return decorator
        return self._router.add_listener(parsed, callback)

    def off(self, listener: Listener) -> bool:
        return self._router.remove_listener(listener)
