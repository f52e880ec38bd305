"""
In-memory task store.

This adapter is primarily used for:
- Local development without external dependencies
- Unit testing
- Demo purposes

Documents are kept in memory per origin. Each subscription owns a delivery
queue drained by a background task, so change notifications arrive
asynchronously (like replication) but in order per subscription.
"""
import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from taskfeed_common.errors import (
    ConflictError,
    DocumentNotFoundError,
    StoreUnavailableError,
)
from taskfeed_common.models import Change, new_id

from .base import ChangeHandler, Seq, TaskStore, next_revision

logger = logging.getLogger(__name__)


class MemoryStore(TaskStore):
    """
    In-memory task store for development and testing.

    Features:
    - Revision-checked writes (optimistic concurrency)
    - Tombstones that keep the final document body
    - Ordered asynchronous change delivery per subscription
    - ``flush()`` to wait until every queued change was handled
    - ``redeliver()`` to simulate at-least-once duplicate delivery
    """

    def __init__(self):
        """Initialize the memory store."""
        self._connected = False
        # origin -> doc_id -> document
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # origin -> doc_id -> last revision of deleted documents
        self._tombstones: Dict[str, Dict[str, str]] = {}
        self._log: List[Change] = []
        self._seq = 0
        # subscription_id -> {"origins", "handler", "queue", "task"}
        self._subscriptions: Dict[str, Dict[str, Any]] = {}

    async def connect(self) -> None:
        """Mark store as connected."""
        if self._connected:
            logger.warning("Memory store already connected")
            return

        self._connected = True
        logger.info("Memory store connected (in-memory mode)")

    async def disconnect(self) -> None:
        """Stop all change feed subscriptions. Documents are kept."""
        for subscription_id in list(self._subscriptions):
            await self.unsubscribe(subscription_id)
        self._connected = False
        logger.info("Memory store disconnected")

    @property
    def is_connected(self) -> bool:
        """Check if store is connected."""
        return self._connected

    # =========================================================================
    # Documents
    # =========================================================================

    async def create(self, origin: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        self._ensure_connected()

        stored = copy.deepcopy(doc)
        doc_id = stored.get("id") or new_id()
        stored["id"] = doc_id

        collection = self._collections.setdefault(origin, {})
        if doc_id in collection:
            raise ConflictError(doc_id, stored.get("revision"))

        previous = self._tombstones.get(origin, {}).pop(doc_id, None)
        stored["revision"] = next_revision(stored, previous)
        collection[doc_id] = stored

        logger.debug(f"Created {origin}/{doc_id} ({stored['revision']})")
        self._append_change(origin, stored, deleted=False)
        return copy.deepcopy(stored)

    async def get(self, origin: str, doc_id: str) -> Dict[str, Any]:
        self._ensure_connected()

        doc = self._collections.get(origin, {}).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(origin, doc_id)
        return copy.deepcopy(doc)

    async def update(self, origin: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        self._ensure_connected()

        doc_id = doc.get("id")
        current = self._collections.get(origin, {}).get(doc_id) if doc_id else None
        if current is None:
            raise DocumentNotFoundError(origin, doc_id or "")
        if doc.get("revision") != current["revision"]:
            raise ConflictError(doc_id, doc.get("revision"))

        stored = copy.deepcopy(doc)
        stored["revision"] = next_revision(stored, current["revision"])
        self._collections[origin][doc_id] = stored

        logger.debug(f"Updated {origin}/{doc_id} ({stored['revision']})")
        self._append_change(origin, stored, deleted=False)
        return copy.deepcopy(stored)

    async def delete(self, origin: str, doc_id: str, revision: str) -> None:
        self._ensure_connected()

        current = self._collections.get(origin, {}).get(doc_id)
        if current is None:
            raise DocumentNotFoundError(origin, doc_id)
        if revision != current["revision"]:
            raise ConflictError(doc_id, revision)

        final = copy.deepcopy(current)
        final["revision"] = next_revision(final, current["revision"])
        del self._collections[origin][doc_id]
        self._tombstones.setdefault(origin, {})[doc_id] = final["revision"]

        logger.debug(f"Deleted {origin}/{doc_id} ({final['revision']})")
        self._append_change(origin, final, deleted=True)

    async def list_documents(self, origin: str) -> List[Dict[str, Any]]:
        self._ensure_connected()
        return [copy.deepcopy(doc) for doc in self._collections.get(origin, {}).values()]

    async def origins(self) -> List[str]:
        return sorted(set(self._collections) | set(self._tombstones))

    # =========================================================================
    # Change feed
    # =========================================================================

    async def changes(
        self,
        origin: Optional[str] = None,
        since: Optional[Seq] = None,
    ) -> List[Change]:
        after = int(since) if since is not None else 0
        return [
            change.model_copy(deep=True)
            for change in self._log
            if int(change.seq) > after and (origin is None or change.origin == origin)
        ]

    async def subscribe(
        self,
        handler: ChangeHandler,
        origins: Optional[List[str]] = None,
    ) -> str:
        """
        Subscribe to changes of the given origins (all when omitted).

        Only changes appended after subscribing are delivered; use
        ``changes()`` to catch up on history.
        """
        self._ensure_connected()

        subscription_id = str(uuid4())
        queue: asyncio.Queue = asyncio.Queue()
        self._subscriptions[subscription_id] = {
            "origins": set(origins) if origins else None,
            "handler": handler,
            "queue": queue,
            "task": asyncio.create_task(self._pump(subscription_id, handler, queue)),
        }

        logger.info(f"Subscribed to {origins or 'all origins'} (sub_id: {subscription_id})")
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        """Unsubscribe from a subscription."""
        sub_data = self._subscriptions.pop(subscription_id, None)
        if sub_data is None:
            logger.warning(f"Subscription {subscription_id} not found")
            return

        sub_data["task"].cancel()
        try:
            await sub_data["task"]
        except asyncio.CancelledError:
            pass

        queue: asyncio.Queue = sub_data["queue"]
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()

        logger.info(f"Unsubscribed: {subscription_id}")

    async def flush(self) -> None:
        """Wait until every queued change has been handled by its subscriber."""
        while True:
            queues = [sub["queue"] for sub in self._subscriptions.values()]
            for queue in queues:
                await queue.join()
            if all(queue.empty() for queue in queues):
                return

    async def redeliver(self, since: Optional[Seq] = None, doc_id: Optional[str] = None) -> int:
        """
        Push historical changes to subscribers again.

        Simulates the duplicate deliveries an at-least-once replication
        transport produces.

        Returns:
            Number of changes re-enqueued
        """
        count = 0
        for change in await self.changes(since=since):
            if doc_id is not None and change.doc_id != doc_id:
                continue
            self._enqueue(change)
            count += 1
        return count

    def _append_change(self, origin: str, doc: Dict[str, Any], deleted: bool) -> None:
        self._seq += 1
        change = Change(seq=self._seq, origin=origin, doc=copy.deepcopy(doc), deleted=deleted)
        self._log.append(change)
        self._enqueue(change)

    def _enqueue(self, change: Change) -> None:
        for sub_data in self._subscriptions.values():
            origins: Optional[Set[str]] = sub_data["origins"]
            if origins is None or change.origin in origins:
                sub_data["queue"].put_nowait(change.model_copy(deep=True))

    async def _pump(
        self,
        subscription_id: str,
        handler: ChangeHandler,
        queue: asyncio.Queue,
    ) -> None:
        """Deliver queued changes to a handler, one at a time."""
        while True:
            change = await queue.get()
            try:
                await handler(change)
            except Exception as e:
                logger.error(f"Handler error for subscription {subscription_id}: {e}")
            finally:
                queue.task_done()

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise StoreUnavailableError("Memory store not connected")
