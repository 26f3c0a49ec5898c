from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple


HealthStatus = str  # "healthy" | "warning" | "error"

HEALTHY = "healthy"
WARNING = "warning"
ERROR = "error"

_SEVERITY = {HEALTHY: 0, WARNING: 1, ERROR: 2}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def escalate(current: HealthStatus, candidate: HealthStatus) -> HealthStatus:
    """Return the more severe of two statuses (error > warning > healthy)."""
    return candidate if _SEVERITY[candidate] > _SEVERITY[current] else current


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Snapshot:
    status: HealthStatus
    observed_at: datetime = field(default_factory=_utc_now)
    table_counts: Mapping[str, int] = field(default_factory=dict)
    last_backup_at: Optional[datetime] = None
    warnings: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()

    @classmethod
    def failed(cls, message: str, *, observed_at: Optional[datetime] = None) -> "Snapshot":
        """Snapshot for a tick where the probe could not run at all."""
        return cls(status=ERROR, observed_at=observed_at or _utc_now(), errors=(message,))

    def with_error(self, message: str) -> "Snapshot":
        return replace(self, status=ERROR, errors=self.errors + (message,))

    def with_warning(self, message: str) -> "Snapshot":
        return replace(self, status=escalate(self.status, WARNING), warnings=self.warnings + (message,))

    def with_backup(self, when: Optional[datetime]) -> "Snapshot":
        return replace(self, last_backup_at=when)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "lastCheck": _iso(self.observed_at),
            "tables": dict(self.table_counts),
            "lastBackup": _iso(self.last_backup_at),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class BackupArtifact:
    path: Path
    created_at: datetime
    size_bytes: int

    @property
    def name(self) -> str:
        return self.path.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class RetentionPolicy:
    max_count: int
    max_age_days: int


@dataclass(frozen=True)
class TickResult:
    snapshot: Snapshot
    record_id: Optional[str] = None
    backup: Optional[BackupArtifact] = None
    backup_reason: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "record_id": self.record_id,
            "backup": self.backup.to_dict() if self.backup else None,
            "backup_reason": self.backup_reason,
            "duration_ms": self.duration_ms,
        }
