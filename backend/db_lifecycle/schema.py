"""
Audit record schema.

StatusRecord mirrors one row of the ``system_status`` table. Records are
append-only; the store assigns ``id``, ``error_count``, ``created_at`` and
the per-status timestamp columns at insert time, so values supplied by
callers for those fields are ignored on append.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SystemStatus(str, Enum):
    """Lifecycle transition recorded in the audit log."""
    INITIALIZED = "initialized"
    RESET = "reset"
    BACKUP = "backup"
    RESTORE = "restore"
    ERROR = "error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StatusRecord(BaseModel):
    """One immutable audit-log entry."""
    id: Optional[str] = Field(None, description="Record identifier, assigned by the store")
    status: SystemStatus = Field(..., description="Lifecycle transition")
    last_known_state: Dict[str, Any] = Field(default_factory=dict, description="Snapshot or event context")
    error_count: int = Field(default=0, description="Running error counter at the time of insert")
    last_error: Optional[Dict[str, Any]] = Field(None, description="Structured error payload")
    last_reset_time: Optional[datetime] = None
    last_backup_time: Optional[datetime] = None
    last_restore_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    class Config:
        use_enum_values = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "last_known_state": self.last_known_state,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_reset_time": _iso(self.last_reset_time),
            "last_backup_time": _iso(self.last_backup_time),
            "last_restore_time": _iso(self.last_restore_time),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
