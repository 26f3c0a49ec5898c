"""Abstract base class for the status audit store."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..schema import StatusRecord, SystemStatus


class StateStore(ABC):
    """Append-only log of system status records."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create the audit table (and helpers) if they do not exist."""

    @abstractmethod
    def append(self, record: StatusRecord) -> str:
        """
        Insert a record and return its generated id.

        Never updates or deletes earlier rows. ``error_count`` is computed
        here: the current maximum, plus one when ``record.status`` is error.

        Raises:
            PersistenceError: If the write fails
        """

    @abstractmethod
    def latest(self) -> Optional[StatusRecord]:
        """Most recently created record, or None for an empty log."""

    @abstractmethod
    def latest_backup_time(self) -> Optional[datetime]:
        """Most recent non-null ``last_backup_time`` across the whole history."""

    @abstractmethod
    def latest_reset_time(self) -> Optional[datetime]:
        """Most recent non-null ``last_reset_time`` across the whole history."""

    @abstractmethod
    def history(self, limit: int = 20) -> List[StatusRecord]:
        """Most recent records first."""

    def log_system_event(
        self,
        status: SystemStatus,
        state: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append an event record for an explicit lifecycle transition."""
        return self.append(StatusRecord(status=status, last_known_state=state or {}, last_error=error))
