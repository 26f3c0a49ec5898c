"""Error taxonomy for the database lifecycle monitor."""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all lifecycle monitor errors."""


class ConnectivityError(LifecycleError):
    """The database could not be reached at all."""


class CountError(LifecycleError):
    """A row count for a single entity failed."""

    def __init__(self, entity: str, message: str) -> None:
        super().__init__(message)
        self.entity = entity


class BackupError(LifecycleError):
    """Dump or compression failed, or the artifact is empty."""


class PersistenceError(LifecycleError):
    """An audit read or write against the state store failed."""


class ConfigError(LifecycleError):
    """Startup configuration is missing or invalid."""
