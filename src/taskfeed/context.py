"""
Task Platform - wires the store and the platform services together.

Usage:
    platform = TaskPlatform.from_settings()
    await platform.connect()

    dispatcher = platform.dispatcher()
    DirectMessagePlugin.from_platform(platform, dispatcher).register()
    await dispatcher.start()

    async with platform.client("user-bob") as client:
        await client.add("direct-message", {"to": "alice", "body": "hi"})

    await platform.close()
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .accounts import AccountDirectory
from .client import TaskClient
from .config import Settings, get_settings
from .dispatcher import Dispatcher
from .plugin_config import PluginConfigStore
from .store import CouchDBStore, MemoryStore, TaskStore

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> TaskStore:
    """Factory function to create the configured store adapter."""
    backend = settings.store_backend.lower()

    if backend == "couchdb":
        return CouchDBStore(
            url=settings.couchdb_url,
            databases=settings.couchdb_databases or None,
            username=settings.couchdb_username,
            password=settings.couchdb_password,
            longpoll_timeout_ms=settings.couchdb_longpoll_timeout_ms,
            discovery_interval=settings.couchdb_discovery_interval_seconds,
        )
    elif backend == "memory":
        return MemoryStore()
    else:
        raise ValueError(f"Unknown store backend: {backend}")


@dataclass
class TaskPlatform:
    """
    Everything a client or worker needs, built from one store.

    Attributes:
        store: Task store shared by clients and workers
        settings: Process settings
        accounts: Principal lookup
        plugin_config: Per-plugin configuration
    """
    store: TaskStore
    settings: Settings = field(default_factory=Settings)
    accounts: Optional[AccountDirectory] = None
    plugin_config: Optional[PluginConfigStore] = None

    def __post_init__(self) -> None:
        if self.accounts is None:
            self.accounts = AccountDirectory(self.store, collection=self.settings.accounts_collection)
        if self.plugin_config is None:
            self.plugin_config = PluginConfigStore(
                self.store,
                collection=self.settings.config_collection,
                conflict_retries=self.settings.conflict_retries,
            )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TaskPlatform":
        """Create a platform with the store backend named in the settings."""
        settings = settings or get_settings()
        return cls(store=create_store(settings), settings=settings)

    def client(self, origin: str) -> TaskClient:
        """Create a client owning the ``origin`` collection."""
        return TaskClient(self.store, origin, dedupe_window=self.settings.router_dedupe_window)

    def dispatcher(self, origins: Optional[List[str]] = None) -> Dispatcher:
        """Create a dispatcher configured from the platform settings."""
        return Dispatcher.from_settings(self.store, self.settings, origins=origins)

    async def connect(self) -> None:
        if not self.store.is_connected:
            await self.store.connect()
        logger.info(f"Task platform ready ({self.store.name} store)")

    async def close(self) -> None:
        """Disconnect the store."""
        await self.store.disconnect()
