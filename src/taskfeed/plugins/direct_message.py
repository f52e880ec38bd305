"""
Direct messages between users.

A client adds a ``direct-message`` task to its own collection:

    await client.add("direct-message", {"to": "alice", "body": "Hello!"})

The worker resolves the recipient and writes a ``message`` document into the
recipient's collection, then marks the task succeeded with the message id.
Unknown recipients fail the task with ``NotFound``, oversized or missing
bodies with ``ValidationError``.
"""
import logging
from typing import Any, Dict, TYPE_CHECKING

from taskfeed_common.errors import (
    ConflictError,
    PrincipalNotFoundError,
    RoutingError,
    TaskValidationError,
)
from taskfeed_common.models import Task, utcnow

from ..accounts import AccountDirectory
from ..dispatcher import Dispatcher
from ..plugin_config import PluginConfigStore
from ..store import TaskStore

if TYPE_CHECKING:
    from ..context import TaskPlatform

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_SIZE = 10000


def message_id(task_id: str) -> str:
    return f"message-{task_id}"


class DirectMessagePlugin:
    """Delivers ``direct-message`` tasks."""

    name = "direct-message"

    def __init__(
        self,
        dispatcher: Dispatcher,
        store: TaskStore,
        accounts: AccountDirectory,
        plugin_config: PluginConfigStore,
    ):
        self.dispatcher = dispatcher
        self.store = store
        self.accounts = accounts
        self.plugin_config = plugin_config

    @classmethod
    def from_platform(cls, platform: "TaskPlatform", dispatcher: Dispatcher) -> "DirectMessagePlugin":
        return cls(dispatcher, platform.store, platform.accounts, platform.plugin_config)

    def register(self) -> "DirectMessagePlugin":
        self.dispatcher.register(self.name, self.handle)
        logger.info(f"Registered plugin {self.name}")
        return self

    async def handle(self, origin_id: str, task: Task) -> None:
        try:
            config = await self.plugin_config.get_config(self.name)
            to, body = self.validate(task.payload, self.max_body_size(config))

            try:
                recipient = await self.accounts.find_principal("user", to)
            except PrincipalNotFoundError:
                raise RoutingError("recipient unknown", {"to": to})

            msg_id = await self.deliver(origin_id, task, recipient.origin, to, body)

        except (TaskValidationError, RoutingError) as e:
            logger.info(f"Rejected direct message {task.id}: {e.kind}: {e.message}")
            await self.dispatcher.error(origin_id, task, e)
            return

        await self.dispatcher.success(origin_id, task, {"messageId": msg_id})

    @staticmethod
    def max_body_size(config: Dict[str, Any]) -> int:
        """Configured body limit; unusable values fall back to the default."""
        value = config.get("maxBodySize", DEFAULT_MAX_BODY_SIZE)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid maxBodySize {value!r}")
            return DEFAULT_MAX_BODY_SIZE

    @staticmethod
    def validate(payload: Dict[str, Any], max_body_size: int):
        """
        Check the payload of a direct message.

        Returns:
            (recipient name, message body)

        Raises:
            TaskValidationError: For a missing recipient or a missing/oversized body
        """
        to = payload.get("to")
        body = payload.get("body")
        if not isinstance(to, str) or not to:
            raise TaskValidationError("recipient missing")
        if not isinstance(body, str) or not body:
            raise TaskValidationError("body missing")
        if len(body) > max_body_size:
            raise TaskValidationError(
                "body too long",
                {"maxBodySize": max_body_size, "size": len(body)},
            )
        return to, body

    async def deliver(self, origin_id: str, task: Task, target: str, to: str, body: str) -> str:
        """Write the message into the recipient's collection (once per task)."""
        doc = {
            "id": message_id(task.id),
            "kind": "message",
            "from": origin_id,
            "to": to,
            "body": body,
            "taskId": task.id,
            "createdAt": utcnow().isoformat(),
        }
        try:
            await self.store.create(target, doc)
            logger.info(f"Delivered message {doc['id']} from {origin_id} to {to}")
        except ConflictError:
            # Redelivered task; the first invocation already wrote it
            logger.debug(f"Message {doc['id']} already delivered")
        return doc["id"]
