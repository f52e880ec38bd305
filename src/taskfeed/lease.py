"""
Task leases - the claim step in front of handler invocation.

A lease is a document (``kind: "lease"``) stored next to the task it
guards. Creating it is the claim: the store rejects a second create, so
only one worker wins. A lease expires after its TTL; an expired lease may be
taken over with a revision-checked update, which bumps ``attempts``.

Workers renew the leases of invocations that are still running. A handler
that returns without terminating its task simply stops renewing, and the
sweeper re-dispatches the task once the lease has expired.
"""
import logging
import time
from typing import Any, Callable, Dict, Literal, Optional

from pydantic import Field

from taskfeed_common.errors import ConflictError, DocumentNotFoundError
from taskfeed_common.models import BaseDTO

from .store import TaskStore

logger = logging.getLogger(__name__)

LEASE_PREFIX = "lease-"


def lease_id(task_id: str) -> str:
    return f"{LEASE_PREFIX}{task_id}"


class Lease(BaseDTO):
    """A time-bounded claim of one task by one worker."""
    id: str = Field(..., description="Lease document id (lease-<task id>)")
    kind: Literal["lease"] = Field(default="lease", description="Document discriminator")
    task_id: str = Field(..., description="Task guarded by this lease")
    owner: str = Field(..., description="Worker holding the lease")
    expires_at: float = Field(..., description="Expiry as epoch seconds")
    attempts: int = Field(default=1, description="How many times the task was claimed")
    revision: Optional[str] = Field(default=None, description="Store revision token")

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Lease":
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class LeaseManager:
    """
    Claims, renews and releases task leases for one worker.

    Attributes:
        store: Task store holding lease documents
        owner: Worker id written into leases
        ttl: Lease duration in seconds
    """

    def __init__(
        self,
        store: TaskStore,
        owner: str,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.owner = owner
        self.ttl = ttl
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    async def get(self, origin: str, task_id: str) -> Optional[Lease]:
        try:
            return Lease.from_document(await self.store.get(origin, lease_id(task_id)))
        except DocumentNotFoundError:
            return None

    async def claim(self, origin: str, task_id: str) -> Optional[Lease]:
        """
        Try to claim a task.

        Returns:
            The lease if this worker now holds it, None if another live lease exists
        """
        now = self.now()
        lease = Lease(
            id=lease_id(task_id),
            task_id=task_id,
            owner=self.owner,
            expires_at=now + self.ttl,
        )
        try:
            doc = await self.store.create(origin, lease.to_document())
            logger.debug(f"Claimed task {task_id} ({self.owner})")
            return Lease.from_document(doc)
        except ConflictError:
            pass

        current = await self.get(origin, task_id)
        if current is None:
            # Released between our create and read; the next delivery will retry
            return None
        if not current.is_expired(now):
            logger.debug(f"Task {task_id} is leased by {current.owner}")
            return None

        taken = current.model_copy(
            update={
                "owner": self.owner,
                "expires_at": now + self.ttl,
                "attempts": current.attempts + 1,
            }
        )
        try:
            doc = await self.store.update(origin, taken.to_document())
        except (ConflictError, DocumentNotFoundError):
            logger.debug(f"Lost takeover race for task {task_id}")
            return None

        logger.info(
            f"Took over expired lease of task {task_id} from {current.owner} "
            f"(attempt {taken.attempts})"
        )
        return Lease.from_document(doc)

    async def renew(self, origin: str, lease: Lease) -> Optional[Lease]:
        """
        Extend a lease held by this worker.

        Returns:
            The renewed lease, or None if the lease was lost
        """
        if lease.owner != self.owner:
            return None
        renewed = lease.model_copy(update={"expires_at": self.now() + self.ttl})
        try:
            return Lease.from_document(await self.store.update(origin, renewed.to_document()))
        except (ConflictError, DocumentNotFoundError):
            logger.warning(f"Lost lease on task {lease.task_id}")
            return None

    async def release(self, origin: str, task_id: str, force: bool = False) -> bool:
        """
        Delete a lease held by this worker (any owner with ``force``).

        Returns:
            True if a lease was deleted
        """
        current = await self.get(origin, task_id)
        if current is None:
            return False
        if current.owner != self.owner and not force:
            return False
        try:
            await self.store.delete(origin, current.id, current.revision)
        except (ConflictError, DocumentNotFoundError):
            return False
        logger.debug(f"Released lease of task {task_id}")
        return True
