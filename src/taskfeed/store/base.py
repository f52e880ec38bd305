"""
Base adapter interface for task store backends.

The task store is a replicated, per-origin document collection with a change
feed. All adapters must implement this interface so clients and workers stay
backend-agnostic (in-memory for development and tests, CouchDB in
production).

Documents are plain mappings. Adapters own two keys:
- ``id``: document identifier (generated on create when missing)
- ``revision``: revision token, ``<generation>-<digest>``, checked on every write
"""
import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from taskfeed_common.models import Change

# Type alias for change feed handlers
ChangeHandler = Callable[[Change], Awaitable[None]]

Seq = Union[int, str]


def next_revision(doc: Dict[str, Any], current: Optional[str] = None) -> str:
    """
    Compute the revision token for a new version of a document.

    The generation advances monotonically; the digest is derived from the
    body so identical writes yield identical tokens.
    """
    generation = revision_generation(current) + 1
    body = {k: v for k, v in doc.items() if k != "revision"}
    digest = hashlib.md5(
        json.dumps(body, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return f"{generation}-{digest}"


def revision_generation(revision: Optional[str]) -> int:
    if not revision:
        return 0
    return int(revision.split("-", 1)[0])


class TaskStore(ABC):
    """
    Abstract base class for task store adapters.

    Writes are optimistic: ``update`` and ``delete`` must carry the current
    revision, otherwise ``ConflictError`` is raised. The change feed delivers
    at least once and preserves order per subscription.
    """

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the connection to the store.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop change feeds and close the connection."""
        pass

    @abstractmethod
    async def create(self, origin: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a document in a collection.

        Args:
            origin: Collection to write to
            doc: Document body; ``id`` is generated when missing

        Returns:
            The stored document including ``id`` and ``revision``

        Raises:
            ConflictError: If a document with the same id exists
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def get(self, origin: str, doc_id: str) -> Dict[str, Any]:
        """
        Read the current version of a document.

        Raises:
            DocumentNotFoundError: If the document does not exist or was deleted
        """
        pass

    @abstractmethod
    async def update(self, origin: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace a document, checking its ``revision``.

        Returns:
            The stored document with its new revision

        Raises:
            ConflictError: If ``revision`` is not the current one
            DocumentNotFoundError: If the document does not exist
        """
        pass

    @abstractmethod
    async def delete(self, origin: str, doc_id: str, revision: str) -> None:
        """
        Delete a document, checking its revision.

        The deletion shows up in the change feed with the final body.

        Raises:
            ConflictError: If ``revision`` is not the current one
            DocumentNotFoundError: If the document does not exist
        """
        pass

    @abstractmethod
    async def list_documents(self, origin: str) -> List[Dict[str, Any]]:
        """Return all live documents of a collection."""
        pass

    @abstractmethod
    async def origins(self) -> List[str]:
        """Return the collections known to (or followed by) this store."""
        pass

    @abstractmethod
    async def changes(
        self,
        origin: Optional[str] = None,
        since: Optional[Seq] = None,
    ) -> List[Change]:
        """
        Return historical changes, oldest first.

        Args:
            origin: Restrict to one collection (all when omitted)
            since: Only return changes after this sequence token
        """
        pass

    @abstractmethod
    async def subscribe(
        self,
        handler: ChangeHandler,
        origins: Optional[List[str]] = None,
    ) -> str:
        """
        Follow the change feed.

        Args:
            handler: Async callback receiving each ``Change``
            origins: Collections to follow (all when omitted)

        Returns:
            Subscription ID that can be used to unsubscribe
        """
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> None:
        """Stop a change feed subscription."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the store is connected."""
        pass

    @property
    def name(self) -> str:
        """Return the adapter name for logging."""
        return self.__class__.__name__
