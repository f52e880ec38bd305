"""
Configuration settings for taskfeed clients and workers.

Settings are loaded from ``TASKFEED_*`` environment variables and an optional
``.env`` file. Components also accept explicit values, so library users and
tests never have to touch the environment.
"""
from functools import lru_cache
from typing import List, Literal, Optional
from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Taskfeed configuration loaded from environment variables.

    Defaults are tuned for local development with the in-memory store.
    """
    model_config = SettingsConfigDict(
        env_prefix="TASKFEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store backend
    store_backend: Literal["memory", "couchdb"] = "memory"

    # CouchDB settings (for couchdb backend)
    couchdb_url: str = "http://localhost:5984"
    couchdb_username: Optional[str] = None
    couchdb_password: Optional[str] = None
    couchdb_databases: List[str] = Field(default_factory=list)
    couchdb_longpoll_timeout_ms: int = 30000
    couchdb_discovery_interval_seconds: Optional[float] = 30.0

    # Worker identity and leasing
    worker_id: str = Field(default_factory=lambda: f"worker-{str(uuid4())[:8]}")
    lease_enabled: bool = True
    lease_ttl_seconds: float = 30.0
    lease_max_attempts: int = 3
    sweep_interval_seconds: float = 10.0

    # Task lifecycle
    removal_delay_seconds: Optional[float] = 0.0  # None keeps terminal tasks
    conflict_retries: int = 5

    # Dispatch
    max_concurrency: int = 16
    replay_on_start: bool = True
    fail_on_handler_error: bool = False
    router_dedupe_window: int = 1024

    # Collections used by the platform itself
    accounts_collection: str = "accounts"
    config_collection: str = "plugins"

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
