"""
Taskfeed - Task lifecycle and event dispatch over a replicated document store.

Clients add task documents to their own collection and await the outcome;
workers bind handlers to task types and drive each task to ``succeeded`` or
``failed``. The document store is the only channel between the two.
"""

__version__ = "0.1.0"

from .accounts import AccountDirectory
from .bridge import CompletionBridge, PendingTask
from .client import TaskClient
from .config import Settings, get_settings
from .context import TaskPlatform, create_store
from .dispatcher import Dispatcher
from .lease import Lease, LeaseManager
from .plugin_config import PluginConfigStore
from .router import ClientEvents, EventRouter, Listener, WorkerEvents
from .state_machine import TaskStateMachine
from .store import CouchDBStore, MemoryStore, TaskStore
from .sweeper import LeaseSweeper

__all__ = [
    "__version__",
    # Platform
    "TaskPlatform",
    "create_store",
    "Settings",
    "get_settings",
    # Client side
    "TaskClient",
    "CompletionBridge",
    "PendingTask",
    "ClientEvents",
    # Worker side
    "Dispatcher",
    "WorkerEvents",
    "LeaseManager",
    "Lease",
    "LeaseSweeper",
    "TaskStateMachine",
    # Routing
    "EventRouter",
    "Listener",
    # Stores
    "TaskStore",
    "MemoryStore",
    "CouchDBStore",
    # Services
    "AccountDirectory",
    "PluginConfigStore",
]
