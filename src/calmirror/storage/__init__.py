"""Storage adapters for calmirror."""

from __future__ import annotations

from calmirror.config import MirrorConfig, StorageConfig
from calmirror.storage.base import StorageAdapter
from calmirror.storage.memory import InMemoryAdapter
from calmirror.storage.postgres import PostgresAdapter

__all__ = [
    "InMemoryAdapter",
    "PostgresAdapter",
    "StorageAdapter",
    "create_adapter",
]


def create_adapter(config: MirrorConfig | StorageConfig) -> StorageAdapter:
    """Build the storage adapter selected by ``storage.backend``."""
    storage = config.storage if isinstance(config, MirrorConfig) else config
    if storage.backend == "postgres":
        return PostgresAdapter(
            storage.connection,
            ssl_config=storage.ssl,
            tables=storage.tables,
            auto_create_tables=storage.auto_create_tables,
            auto_connect=storage.auto_connect,
            logging_config=storage.logging,
        )
    return InMemoryAdapter(
        tables=storage.tables,
        auto_connect=storage.auto_connect,
        logging_config=storage.logging,
    )
