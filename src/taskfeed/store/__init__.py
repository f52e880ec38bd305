"""
Task store adapters.

This package provides the adapter pattern implementation for the replicated
document store the protocol runs on (in-memory, CouchDB).
"""
from .base import TaskStore, ChangeHandler, next_revision
from .memory import MemoryStore
from .couchdb import CouchDBStore

__all__ = [
    "TaskStore",
    "ChangeHandler",
    "next_revision",
    "MemoryStore",
    "CouchDBStore",
]
