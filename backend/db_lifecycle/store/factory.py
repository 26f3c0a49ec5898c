"""Factory for creating state store instances."""
from ..config import MonitorConfig
from ..errors import ConfigError
from .base import StateStore
from .sqlite import SQLiteStateStore


def get_state_store(config: MonitorConfig) -> StateStore:
    """
    Build the store named by ``config.store_backend``.

    Backends never fall back to one another.
    """
    if config.store_backend == "sqlite":
        return SQLiteStateStore(db_path=config.sqlite_path)
    if config.store_backend == "postgres":
        # Lazy import so the sqlite backend works without psycopg2
        from .postgres import PostgresStateStore

        return PostgresStateStore(connection_string=config.database.dsn)
    raise ConfigError(f"unknown state store backend: {config.store_backend}")
