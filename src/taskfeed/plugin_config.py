"""
Per-plugin configuration stored as documents in the ``plugins`` collection.
"""
import logging
from typing import Any, Dict

from taskfeed_common.errors import ConflictError, DocumentNotFoundError

from .store import TaskStore

logger = logging.getLogger(__name__)

CONFIG_KIND = "plugin-config"


def config_id(plugin_name: str) -> str:
    return f"plugin-{plugin_name}"


class PluginConfigStore:
    """
    Reads and writes plugin configuration mappings.

    Attributes:
        store: Task store holding the configuration documents
        collection: Collection name (``plugins`` by default)
        conflict_retries: Retries of a conflicting ``set_config``
    """

    def __init__(self, store: TaskStore, collection: str = "plugins", conflict_retries: int = 5):
        self.store = store
        self.collection = collection
        self.conflict_retries = conflict_retries

    async def get_config(self, plugin_name: str) -> Dict[str, Any]:
        """Return the plugin's configuration (an empty mapping if unset)."""
        try:
            doc = await self.store.get(self.collection, config_id(plugin_name))
        except DocumentNotFoundError:
            return {}
        return dict(doc.get("config") or {})

    async def set_config(self, plugin_name: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace the plugin's configuration.

        Raises:
            ConflictError: If concurrent writers kept winning for every retry
        """
        doc: Dict[str, Any] = {
            "id": config_id(plugin_name),
            "kind": CONFIG_KIND,
            "plugin": plugin_name,
            "config": dict(config),
        }
        for attempt in range(self.conflict_retries + 1):
            try:
                current = await self.store.get(self.collection, doc["id"])
            except DocumentNotFoundError:
                current = None

            try:
                if current is None:
                    doc.pop("revision", None)
                    await self.store.create(self.collection, doc)
                else:
                    doc["revision"] = current.get("revision")
                    await self.store.update(self.collection, doc)
            except (ConflictError, DocumentNotFoundError):
                logger.debug(f"Config write for {plugin_name} conflicted (attempt {attempt + 1})")
                continue

            logger.info(f"Updated configuration of plugin {plugin_name}")
            return dict(config)

        raise ConflictError(doc["id"])
