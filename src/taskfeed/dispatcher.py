"""
Backend Dispatcher - binds handlers to task types on the worker side.

The dispatcher listens for ``add`` (and optionally ``change``) events of the
task types it has handlers for, claims the task, and invokes the handler.
Handlers drive their task to a terminal state through ``success()`` or
``error()``.

Several dispatcher processes may follow the same change feed and replication
may redeliver changes, so a handler can be invoked more than once for one
task. The lease claim keeps concurrent duplicates out; handlers should still
keep their side effects idempotent.

Usage:
    dispatcher = Dispatcher(store, worker_id="worker-1")

    @dispatcher.on_task("direct-message")
    async def send(origin_id: str, task: Task) -> None:
        recipient = await accounts.find_principal("user", task.payload["to"])
        ...
        await dispatcher.success(origin_id, task)

    await dispatcher.start()
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from taskfeed_common.errors import DocumentNotFoundError, StoreError
from taskfeed_common.events import EventSelector, EventVerb, TaskEvent
from taskfeed_common.models import Task, TaskError, validate_name

from .config import Settings
from .lease import Lease, LeaseManager
from .router import EventRouter, Listener, SelectorLike, WorkerEvents
from .state_machine import ErrorPayload, TaskStateMachine
from .store import TaskStore

if TYPE_CHECKING:
    from .sweeper import LeaseSweeper

logger = logging.getLogger(__name__)

# Type alias for task handlers: handler(origin_id, task)
TaskHandler = Callable[[str, Task], Awaitable[Any]]


@dataclass
class Invocation:
    """Bookkeeping for one running handler invocation."""
    origin: str
    task: Task
    handler: TaskHandler
    lease: Optional[Lease] = None
    job: Optional[asyncio.Task] = field(default=None, repr=False)


class Dispatcher:
    """
    Worker-side component invoking type-bound handlers on task events.

    Attributes:
        store: Task store shared with clients
        router: Event router following all origins
        events: Worker registration surface of the router
        state_machine: Terminates tasks on behalf of handlers
        leases: Lease manager (None when leasing is disabled)
        worker_id: Identity written into leases
    """

    def __init__(
        self,
        store: TaskStore,
        worker_id: str = "worker",
        router: Optional[EventRouter] = None,
        state_machine: Optional[TaskStateMachine] = None,
        leases: Optional[LeaseManager] = None,
        lease_ttl: Optional[float] = 30.0,
        lease_max_attempts: int = 3,
        sweep_interval: Optional[float] = None,
        max_concurrency: int = 16,
        max_pending: int = 1024,
        replay_on_start: bool = True,
        fail_on_handler_error: bool = False,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: Task store
            worker_id: Identity of this worker (lease owner)
            router: Event router (a new one following all origins if omitted)
            state_machine: State machine (a new one if omitted)
            leases: Lease manager; built from ``lease_ttl`` if omitted
            lease_ttl: Lease duration in seconds, None disables leasing
            lease_max_attempts: Claims before the sweeper fails a task
            sweep_interval: Seconds between sweeps, None disables the sweeper
            max_concurrency: Concurrent handler invocations
            max_pending: Upper bound of tracked invocations (running + waiting)
            replay_on_start: Replay the change history on start
            fail_on_handler_error: Mark tasks failed when their handler raises
        """
        self.store = store
        self.worker_id = worker_id
        self.router = router or EventRouter(store)
        self.events: WorkerEvents = self.router.worker_events()
        self.state_machine = state_machine or TaskStateMachine(store)
        if leases is None and lease_ttl is not None:
            leases = LeaseManager(store, owner=worker_id, ttl=lease_ttl)
        self.leases = leases
        self.lease_max_attempts = lease_max_attempts
        self.replay_on_start = replay_on_start
        self.fail_on_handler_error = fail_on_handler_error

        self._max_pending = max_pending
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._registrations: List[Tuple[EventSelector, TaskHandler]] = []
        # task_id -> running invocation; evicted when the invocation ends
        self._in_flight: Dict[str, Invocation] = {}

        self._running = False
        self._renewal_task: Optional[asyncio.Task] = None
        self.sweeper: Optional["LeaseSweeper"] = None
        if sweep_interval is not None and self.leases is not None:
            from .sweeper import LeaseSweeper
            self.sweeper = LeaseSweeper(self, interval=sweep_interval, max_attempts=lease_max_attempts)

    @classmethod
    def from_settings(
        cls,
        store: TaskStore,
        settings: Settings,
        state_machine: Optional[TaskStateMachine] = None,
        origins: Optional[List[str]] = None,
    ) -> "Dispatcher":
        """Build a dispatcher configured from ``Settings``, following ``origins`` (all when omitted)."""
        return cls(
            store,
            worker_id=settings.worker_id,
            router=EventRouter(store, origins=origins, dedupe_window=settings.router_dedupe_window),
            state_machine=state_machine or TaskStateMachine(
                store,
                removal_delay=settings.removal_delay_seconds,
                conflict_retries=settings.conflict_retries,
            ),
            lease_ttl=settings.lease_ttl_seconds if settings.lease_enabled else None,
            lease_max_attempts=settings.lease_max_attempts,
            sweep_interval=settings.sweep_interval_seconds if settings.lease_enabled else None,
            max_concurrency=settings.max_concurrency,
            replay_on_start=settings.replay_on_start,
            fail_on_handler_error=settings.fail_on_handler_error,
        )

    # =========================================================================
    # Registration
    # =========================================================================

    def on(self, selector: SelectorLike, handler: TaskHandler) -> Listener:
        """
        Register a handler for worker-visible events.

        Raises:
            ProtocolViolation: For per-task selectors or non add/change verbs
            SelectorError: For malformed selectors
        """
        parsed = WorkerEvents.validate(selector)

        async def listener(event: TaskEvent) -> None:
            self._spawn(event.origin, event.task, handler)

        self._registrations.append((parsed, handler))
        logger.debug(f"Registered task handler: {parsed}")
        return self.events.on(parsed, listener)

    def register(self, task_type: str, handler: TaskHandler, on_change: bool = False) -> None:
        """Bind a handler to a task type (``add`` events, plus ``change`` if requested)."""
        validate_name(task_type, "Task type")
        self.on(EventSelector(EventVerb.ADD, task_type), handler)
        if on_change:
            self.on(EventSelector(EventVerb.CHANGE, task_type), handler)

    def on_task(self, task_type: str, on_change: bool = False) -> Callable[[TaskHandler], TaskHandler]:
        """
        Decorator to register a task handler.

        Usage:
            @dispatcher.on_task("direct-message")
            async def handle(origin_id: str, task: Task) -> None:
                await dispatcher.success(origin_id, task)
        """
        def decorator(func: TaskHandler) -> TaskHandler:
            self.register(task_type, func, on_change=on_change)
            return func
        return decorator

    def handler_for(self, task_type: str) -> Optional[TaskHandler]:
        """Return the handler ``add`` events of this type are routed to."""
        for selector, handler in self._registrations:
            if selector.verb == EventVerb.ADD and selector.type in (None, task_type):
                return handler
        return None

    @property
    def in_flight(self) -> List[str]:
        """Ids of tasks with a running invocation in this process."""
        return list(self._in_flight)

    # =========================================================================
    # Terminating tasks
    # =========================================================================

    async def success(
        self,
        origin_id: str,
        task: Task,
        result: Optional[Dict[str, Any]] = None,
    ) -> Optional[Task]:
        """Mark a task succeeded. Returns None if it was already terminal."""
        stored = await self.state_machine.mark_succeeded(task, result=result, origin=origin_id)
        await self._release(origin_id, task.id)
        return stored

    async def error(
        self,
        origin_id: str,
        task: Task,
        error_payload: ErrorPayload,
    ) -> Optional[Task]:
        """Mark a task failed with a structured error. Returns None if it was already terminal."""
        stored = await self.state_machine.mark_failed(task, error_payload, origin=origin_id)
        await self._release(origin_id, task.id)
        return stored

    async def progress(
        self,
        origin_id: str,
        task: Task,
        progress: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """Annotate a running task (``changed`` state)."""
        return await self.state_machine.mark_changed(task, progress=progress, origin=origin_id)

    # =========================================================================
    # Invocation
    # =========================================================================

    def redispatch(self, origin_id: str, task: Task) -> bool:
        """
        Invoke the handler for a task outside of the change feed (sweeper path).

        Returns:
            True if an invocation was started
        """
        handler = self.handler_for(task.type)
        if handler is None:
            return False
        return self._spawn(origin_id, task, handler) is not None

    def _spawn(self, origin: str, task: Task, handler: TaskHandler) -> Optional[asyncio.Task]:
        if task.is_terminal:
            return None
        if task.id in self._in_flight:
            logger.debug(f"Task {task.id} already in flight; skipping duplicate delivery")
            return None
        if len(self._in_flight) >= self._max_pending:
            logger.warning(f"Too many pending invocations; leaving task {task.id} for a later sweep")
            return None

        invocation = Invocation(origin=origin, task=task, handler=handler)
        self._in_flight[task.id] = invocation
        invocation.job = asyncio.create_task(self._run(invocation))
        return invocation.job

    async def _run(self, invocation: Invocation) -> None:
        origin, task = invocation.origin, invocation.task
        try:
            async with self._semaphore:
                # The delivered snapshot may be stale (replays, redeliveries)
                current = await self._unfinished(origin, task.id)
                if current is None:
                    return

                if self.leases is not None:
                    invocation.lease = await self.leases.claim(origin, task.id)
                    if invocation.lease is None:
                        return
                    # Another worker may have finished it before our claim
                    current = await self._unfinished(origin, task.id)
                    if current is None:
                        await self._release(origin, task.id)
                        return

                logger.debug(f"Invoking handler for {current.type}:{current.id}")
                await invocation.handler(origin, current)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Handler for task {task.type}:{task.id} raised: {e}")
            if self.fail_on_handler_error:
                await self._fail_after_exception(origin, task, e)
        finally:
            self._in_flight.pop(task.id, None)

    async def _unfinished(self, origin: str, task_id: str) -> Optional[Task]:
        """Return the stored task, or None if it is gone or terminal."""
        try:
            current = Task.from_document(await self.store.get(origin, task_id))
        except DocumentNotFoundError:
            current = None
        if current is None or current.is_terminal:
            logger.debug(f"Task {task_id} already finished; not invoking handler")
            return None
        return current

    async def _fail_after_exception(self, origin: str, task: Task, exc: Exception) -> None:
        try:
            current = Task.from_document(await self.store.get(origin, task.id))
            await self.error(
                origin,
                current,
                TaskError(kind="HandlerError", message=str(exc) or type(exc).__name__),
            )
        except StoreError as e:
            logger.error(f"Could not mark task {task.id} failed: {e}")

    async def _release(self, origin: str, task_id: str) -> None:
        if self.leases is None:
            return
        try:
            await self.leases.release(origin, task_id)
        except StoreError as e:
            logger.warning(f"Failed to release lease of task {task_id}: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Start dispatching.

        This method:
        1. Starts following the change feed
        2. Replays existing changes (catch-up after downtime)
        3. Starts lease renewal and the sweeper
        """
        if self._running:
            logger.warning("Dispatcher already running")
            return

        logger.info(f"Starting dispatcher {self.worker_id}")
        await self.router.start()
        self._running = True

        if self.replay_on_start:
            await self.router.replay()

        if self.leases is not None:
            self._renewal_task = asyncio.create_task(self._renewal_loop())
        if self.sweeper is not None:
            await self.sweeper.start()

        logger.info(f"Dispatcher {self.worker_id} is running")

    async def stop(self) -> None:
        """Stop dispatching and wait for running invocations."""
        if not self._running:
            return

        logger.info(f"Stopping dispatcher {self.worker_id}")
        self._running = False

        if self.sweeper is not None:
            await self.sweeper.stop()

        if self._renewal_task:
            self._renewal_task.cancel()
            try:
                await self._renewal_task
            except asyncio.CancelledError:
                pass
            self._renewal_task = None

        await self.router.stop()
        await self.drain()
        await self.state_machine.close()
        logger.info(f"Dispatcher {self.worker_id} stopped")

    async def drain(self) -> None:
        """Wait until no handler invocation is running."""
        while self._in_flight:
            jobs = [inv.job for inv in self._in_flight.values() if inv.job is not None]
            await asyncio.gather(*jobs, return_exceptions=True)

    async def _renewal_loop(self) -> None:
        """Keep the leases of running invocations alive."""
        interval = self.leases.ttl / 3
        while self._running:
            try:
                await asyncio.sleep(interval)
                for invocation in list(self._in_flight.values()):
                    if invocation.lease is None:
                        continue
                    invocation.lease = await self.leases.renew(invocation.origin, invocation.lease)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Lease renewal failed: {e}", exc_info=True)
