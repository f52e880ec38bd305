"""
Background sweeper for stalled tasks and stale documents.

Periodically scans the collections a dispatcher serves and:
- re-dispatches non-terminal tasks whose lease expired, or that were never
  claimed within one lease TTL (e.g. a missed notification)
- fails tasks whose lease expired ``max_attempts`` times (``LeaseExpired``)
- drops leases of tasks that are terminal or gone
- removes terminal tasks a crashed worker never got to remove
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, TYPE_CHECKING

from pydantic import ValidationError

from taskfeed_common.errors import ConflictError, DocumentNotFoundError, StoreError
from taskfeed_common.models import Task, TaskError, is_task_document

from .lease import Lease

if TYPE_CHECKING:
    from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counters of one sweep."""
    redispatched: int = 0
    expired: int = 0
    leases_released: int = 0
    removed: int = 0


class LeaseSweeper:
    """Runs ``sweep()`` every ``interval`` seconds on behalf of a dispatcher."""

    def __init__(self, dispatcher: "Dispatcher", interval: float = 10.0, max_attempts: int = 3):
        if dispatcher.leases is None:
            raise ValueError("LeaseSweeper requires a dispatcher with leasing enabled")
        self.dispatcher = dispatcher
        self.interval = interval
        self.max_attempts = max_attempts
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self._running:
            logger.warning("Sweeper is already running")
            return

        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Sweeper started")

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        if not self._running:
            return

        self._running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        logger.info("Sweeper stopped")

    async def _sweep_loop(self) -> None:
        logger.info(
            f"Starting sweep task (interval: {self.interval}s, "
            f"max attempts: {self.max_attempts})"
        )

        while self._running:
            try:
                await asyncio.sleep(self.interval)

                if not self._running:
                    break

                report = await self.sweep()
                if report.redispatched or report.expired or report.removed:
                    logger.info(f"Sweep: {report}")
                else:
                    logger.debug("Sweep found nothing to do")

            except asyncio.CancelledError:
                logger.info("Sweep task cancelled")
                break
            except Exception as e:
                logger.error(f"Error in sweep task: {e}", exc_info=True)
                # Continue running despite errors

    async def sweep(self) -> SweepReport:
        """Scan every origin the dispatcher serves once."""
        report = SweepReport()
        origins = self.dispatcher.router.origins or await self.dispatcher.store.origins()
        for origin in origins:
            await self._sweep_origin(origin, report)
        return report

    async def _sweep_origin(self, origin: str, report: SweepReport) -> None:
        dispatcher = self.dispatcher
        leases = dispatcher.leases
        store = dispatcher.store
        now = leases.now()

        tasks: Dict[str, Task] = {}
        held: Dict[str, Lease] = {}
        for doc in await store.list_documents(origin):
            try:
                if is_task_document(doc):
                    tasks[doc["id"]] = Task.from_document(doc)
                elif doc.get("kind") == "lease":
                    lease = Lease.from_document(doc)
                    held[lease.task_id] = lease
            except ValidationError as e:
                logger.warning(f"Skipping malformed document {origin}/{doc.get('id')}: {e}")

        for task_id, lease in held.items():
            task = tasks.get(task_id)
            if task is None or task.is_terminal:
                if await leases.release(origin, task_id, force=True):
                    report.leases_released += 1

        removal_delay = dispatcher.state_machine.removal_delay
        for task in tasks.values():
            age = now - task.updated_at.timestamp()

            if task.is_terminal:
                if removal_delay is not None and age > removal_delay + self.interval:
                    if await self._remove(origin, task):
                        report.removed += 1
                continue

            if dispatcher.handler_for(task.type) is None or task.id in dispatcher.in_flight:
                continue

            lease = held.get(task.id)
            if lease is None:
                if age < leases.ttl:
                    continue
            elif not lease.is_expired(now):
                continue
            elif lease.attempts >= self.max_attempts:
                await self._expire(origin, task, lease)
                report.expired += 1
                continue

            if dispatcher.redispatch(origin, task):
                report.redispatched += 1

    async def _expire(self, origin: str, task: Task, lease: Lease) -> None:
        logger.warning(
            f"Task {task.type}:{task.id} not completed after {lease.attempts} attempt(s); failing it"
        )
        await self.dispatcher.error(
            origin,
            task,
            TaskError(
                kind="LeaseExpired",
                message=f"Task not completed after {lease.attempts} attempt(s)",
                details={"lastOwner": lease.owner},
            ),
        )
        await self.dispatcher.leases.release(origin, task.id, force=True)

    async def _remove(self, origin: str, task: Task) -> bool:
        try:
            await self.dispatcher.store.delete(origin, task.id, task.revision)
        except (ConflictError, DocumentNotFoundError):
            return False
        except StoreError as e:
            logger.warning(f"Failed to remove terminal task {task.id}: {e}")
            return False
        return True
