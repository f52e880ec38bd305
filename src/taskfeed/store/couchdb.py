"""
CouchDB adapter for the task store.

Each origin maps to one CouchDB database. Writes go through the HTTP
document API (``PUT /{db}/{id}`` with ``_rev`` for optimistic concurrency)
and the change feed follows ``/{db}/_changes`` in longpoll mode, reconnecting
with exponential backoff.

Deletions are written as ``_deleted`` updates that keep the document body,
so removal notifications still carry the task's type and final state.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from urllib.parse import quote
from uuid import uuid4

import httpx

from taskfeed_common.errors import (
    ConflictError,
    DocumentNotFoundError,
    StoreError,
    StoreUnavailableError,
)
from taskfeed_common.models import Change, new_id

from .base import ChangeHandler, Seq, TaskStore

logger = logging.getLogger(__name__)


def to_couch(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a store document into a CouchDB document body."""
    body = {k: v for k, v in doc.items() if k not in ("id", "revision")}
    body["_id"] = doc["id"]
    if doc.get("revision"):
        body["_rev"] = doc["revision"]
    return body


def from_couch(body: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a CouchDB document body into a store document."""
    doc = {k: v for k, v in body.items() if not k.startswith("_")}
    doc["id"] = body["_id"]
    if body.get("_rev"):
        doc["revision"] = body["_rev"]
    return doc


class CouchDBStore(TaskStore):
    """
    Task store backed by CouchDB.

    Attributes:
        url: CouchDB base URL
        databases: Databases (origins) followed by change feed subscriptions
    """

    def __init__(
        self,
        url: str = "http://localhost:5984",
        databases: Optional[List[str]] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        longpoll_timeout_ms: int = 30000,
        max_reconnect_attempts: int = -1,  # -1 = infinite
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        discovery_interval: Optional[float] = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the CouchDB store.

        Args:
            url: CouchDB base URL (e.g., "http://localhost:5984")
            databases: Databases to follow; all non-system databases when omitted
            username: Optional basic-auth user
            password: Optional basic-auth password
            longpoll_timeout_ms: Server-side timeout of one longpoll request
            max_reconnect_attempts: Max reconnection attempts (-1 for infinite)
            reconnect_base_delay: Initial delay between reconnection attempts (seconds)
            reconnect_max_delay: Maximum delay between reconnection attempts (seconds)
            discovery_interval: Seconds between database re-listings of subscriptions
                that follow every database (None disables)
            transport: Optional httpx transport (used by tests)
        """
        self.url = url.rstrip("/")
        self.databases = list(databases or [])
        self._auth = (username, password) if username else None
        self._longpoll_timeout_ms = longpoll_timeout_ms
        self._transport = transport

        # Reconnection settings
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._discovery_interval = discovery_interval

        self._client: Optional[httpx.AsyncClient] = None
        # subscription_id -> list of follow tasks
        self._subscriptions: Dict[str, List[asyncio.Task]] = {}
        self._stop_event = asyncio.Event()

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        if self._client is not None:
            logger.warning("CouchDB store already connected")
            return

        # SSE-style timeouts: longpoll reads may take as long as the server allows
        timeout = httpx.Timeout(connect=10.0, read=None, write=30.0, pool=None)
        self._client = httpx.AsyncClient(
            base_url=self.url,
            auth=self._auth,
            timeout=timeout,
            transport=self._transport,
        )
        self._stop_event.clear()

        try:
            response = await self._client.get("/")
        except httpx.HTTPError as e:
            await self._client.aclose()
            self._client = None
            raise StoreUnavailableError(f"CouchDB unreachable at {self.url}: {e}") from e
        if response.status_code != 200:
            await self._client.aclose()
            self._client = None
            raise StoreUnavailableError(f"CouchDB returned {response.status_code} at {self.url}")

        for database in self.databases:
            await self._ensure_database(database)

        logger.info(f"CouchDB store connected: {self.url}")

    async def disconnect(self) -> None:
        logger.info("Disconnecting CouchDB store")
        self._stop_event.set()

        for subscription_id in list(self._subscriptions):
            await self.unsubscribe(subscription_id)

        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    # =========================================================================
    # Documents
    # =========================================================================

    async def create(self, origin: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        stored = {k: v for k, v in doc.items() if k != "revision"}
        stored["id"] = stored.get("id") or new_id()

        response = await self._request("PUT", self._doc_path(origin, stored["id"]), json=to_couch(stored))
        if response.status_code == 404:
            # Database missing; create it and retry once
            await self._ensure_database(origin)
            response = await self._request("PUT", self._doc_path(origin, stored["id"]), json=to_couch(stored))

        self._raise_for_write(response, origin, stored["id"], None)
        stored["revision"] = response.json()["rev"]
        return stored

    async def get(self, origin: str, doc_id: str) -> Dict[str, Any]:
        response = await self._request("GET", self._doc_path(origin, doc_id))
        if response.status_code == 404:
            raise DocumentNotFoundError(origin, doc_id)
        if response.status_code != 200:
            raise StoreError(f"CouchDB GET {origin}/{doc_id} failed: {response.status_code}")
        return from_couch(response.json())

    async def update(self, origin: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = doc["id"]
        response = await self._request("PUT", self._doc_path(origin, doc_id), json=to_couch(doc))
        self._raise_for_write(response, origin, doc_id, doc.get("revision"))

        stored = dict(doc)
        stored["revision"] = response.json()["rev"]
        return stored

    async def delete(self, origin: str, doc_id: str, revision: str) -> None:
        # Keep the body on the tombstone so the change feed can classify it
        current = await self.get(origin, doc_id)
        if current.get("revision") != revision:
            raise ConflictError(doc_id, revision)

        body = to_couch(current)
        body["_deleted"] = True
        response = await self._request("PUT", self._doc_path(origin, doc_id), json=body)
        self._raise_for_write(response, origin, doc_id, revision)

    async def list_documents(self, origin: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            f"/{self._db(origin)}/_all_docs",
            params={"include_docs": "true"},
        )
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise StoreError(f"CouchDB _all_docs for {origin} failed: {response.status_code}")

        return [
            from_couch(row["doc"])
            for row in response.json().get("rows", [])
            if row.get("doc") and not row["id"].startswith("_design/")
        ]

    async def origins(self) -> List[str]:
        if self.databases:
            return list(self.databases)

        response = await self._request("GET", "/_all_dbs")
        if response.status_code != 200:
            raise StoreError(f"CouchDB _all_dbs failed: {response.status_code}")
        return [name for name in response.json() if not name.startswith("_")]

    # =========================================================================
    # Change feed
    # =========================================================================

    async def changes(
        self,
        origin: Optional[str] = None,
        since: Optional[Seq] = None,
    ) -> List[Change]:
        if origin is None:
            if since is not None:
                raise ValueError("CouchDB sequence tokens are per database; pass an origin")
            result: List[Change] = []
            for database in await self.origins():
                result.extend(await self.changes(database))
            return result

        params: Dict[str, Any] = {"include_docs": "true"}
        if since is not None:
            params["since"] = since
        response = await self._request("GET", f"/{self._db(origin)}/_changes", params=params)
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise StoreError(f"CouchDB _changes for {origin} failed: {response.status_code}")
        return self._parse_changes(origin, response.json())

    async def subscribe(
        self,
        handler: ChangeHandler,
        origins: Optional[List[str]] = None,
    ) -> str:
        if self._client is None:
            raise StoreUnavailableError("CouchDB store not connected")

        databases = origins or await self.origins()
        subscription_id = str(uuid4())
        tasks = [
            asyncio.create_task(self._follow(database, handler)) for database in databases
        ]
        if not origins and not self.databases and self._discovery_interval is not None:
            tasks.append(asyncio.create_task(self._discover(handler, set(databases), tasks)))
        self._subscriptions[subscription_id] = tasks

        logger.info(f"Following _changes of {databases} (sub_id: {subscription_id})")
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        tasks = self._subscriptions.pop(subscription_id, None)
        if tasks is None:
            logger.warning(f"Subscription {subscription_id} not found")
            return

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info(f"Unsubscribed: {subscription_id}")

    async def _discover(
        self,
        handler: ChangeHandler,
        followed: Set[str],
        tasks: List[asyncio.Task],
    ) -> None:
        """Start following databases created after the subscription."""
        while not self._stop_event.is_set():
            try:
                await asyncio.sleep(self._discovery_interval)
                for database in await self.origins():
                    if database in followed:
                        continue
                    followed.add(database)
                    # New databases are followed from their first change
                    tasks.append(asyncio.create_task(self._follow(database, handler, since=0)))
                    logger.info(f"Following _changes of new database {database}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Database discovery failed: {e}")

    async def _follow(self, origin: str, handler: ChangeHandler, since: Seq = "now") -> None:
        """
        Main loop for one database's change feed.

        Handles longpolling, reconnection with exponential backoff, and
        change dispatch.
        """
        attempt = 0

        while not self._stop_event.is_set():
            try:
                response = await self._request(
                    "GET",
                    f"/{self._db(origin)}/_changes",
                    params={
                        "feed": "longpoll",
                        "include_docs": "true",
                        "since": since,
                        "timeout": self._longpoll_timeout_ms,
                    },
                )
                if response.status_code != 200:
                    raise StoreUnavailableError(f"_changes returned {response.status_code}")

                body = response.json()
                for change in self._parse_changes(origin, body):
                    try:
                        await handler(change)
                    except Exception as e:
                        logger.error(f"Handler error for {origin} change {change.seq}: {e}")
                since = body.get("last_seq", since)
                attempt = 0

            except asyncio.CancelledError:
                break
            except Exception as e:
                error_msg = str(e).strip()
                if error_msg:
                    logger.warning(f"Change feed issue for {origin}: {error_msg}")
                else:
                    logger.debug(f"Change feed for {origin} disconnected, reconnecting...")

                if self._max_reconnect_attempts >= 0 and attempt >= self._max_reconnect_attempts:
                    logger.error(f"Max reconnection attempts reached for {origin}")
                    break

                delay = min(
                    self._reconnect_base_delay * (2 ** attempt),
                    self._reconnect_max_delay,
                )
                if attempt < 3:
                    logger.debug(f"Reconnecting in {delay:.1f}s (attempt {attempt + 1})")

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Continue with retry

                attempt += 1

    @staticmethod
    def _parse_changes(origin: str, body: Dict[str, Any]) -> List[Change]:
        changes = []
        for row in body.get("results", []):
            if row["id"].startswith("_design/") or not row.get("doc"):
                continue
            changes.append(
                Change(
                    seq=row["seq"],
                    origin=origin,
                    doc=from_couch(row["doc"]),
                    deleted=bool(row.get("deleted")),
                )
            )
        return changes

    # =========================================================================
    # HTTP helpers
    # =========================================================================

    @staticmethod
    def _db(origin: str) -> str:
        return quote(origin, safe="")

    def _doc_path(self, origin: str, doc_id: str) -> str:
        return f"/{self._db(origin)}/{quote(doc_id, safe='')}"

    async def _ensure_database(self, origin: str) -> None:
        response = await self._request("PUT", f"/{self._db(origin)}")
        # 412: database already exists
        if response.status_code not in (201, 202, 412):
            raise StoreError(f"Failed to create database {origin}: {response.status_code}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise StoreUnavailableError("CouchDB store not connected")
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"CouchDB request failed: {method} {path}: {e}") from e

    @staticmethod
    def _raise_for_write(
        response: httpx.Response,
        origin: str,
        doc_id: str,
        revision: Optional[str],
    ) -> None:
        if response.status_code in (201, 202):
            return
        if response.status_code == 409:
            raise ConflictError(doc_id, revision)
        if response.status_code == 404:
            raise DocumentNotFoundError(origin, doc_id)
        raise StoreError(
            f"CouchDB write {origin}/{doc_id} failed: {response.status_code} - {response.text}"
        )
