from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError
from .types import RetentionPolicy

DEFAULT_CRITICAL_TABLES = ("user_profiles", "schools", "school_users", "content")
STORE_BACKENDS = {"postgres", "sqlite"}


def _truthy(value: str) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _csv_list(value: str) -> tuple[str, ...]:
    items = []
    for raw in (value or "").split(","):
        item = raw.strip()
        if item and item not in items:
            items.append(item)
    return tuple(items)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class DatabaseSettings:
    host: str
    port: int
    user: str
    password: str
    database: str

    @property
    def dsn(self) -> str:
        from psycopg2.extensions import make_dsn

        return make_dsn(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            dbname=self.database,
        )

    def validate(self) -> None:
        for name in ("host", "user", "database"):
            if not str(getattr(self, name) or "").strip():
                raise ConfigError(f"database {name} is required")
        if not 0 < self.port < 65536:
            raise ConfigError(f"database port out of range: {self.port}")

    @classmethod
    def from_env(cls) -> "DatabaseSettings":
        settings = cls(
            host=os.getenv("POSTGRES_HOST", "localhost").strip(),
            port=_env_int("POSTGRES_PORT", 54322),
            user=os.getenv("POSTGRES_USER", "postgres").strip(),
            password=os.getenv("POSTGRES_PASSWORD", "postgres"),
            database=os.getenv("POSTGRES_DB", "postgres").strip(),
        )
        settings.validate()
        return settings


@dataclass(frozen=True)
class MonitorConfig:
    database: DatabaseSettings

    interval_seconds: int
    critical_tables: tuple[str, ...]
    data_loss_threshold: float
    backup_max_age_hours: float

    probe_timeout_seconds: float
    backup_timeout_seconds: float

    backup_dir: Path
    max_backups: int
    retention_days: int

    store_backend: str  # "postgres" | "sqlite"
    sqlite_path: str

    enabled: bool = False
    reset_warning_hours: float = 1.0

    @property
    def retention(self) -> RetentionPolicy:
        return RetentionPolicy(max_count=self.max_backups, max_age_days=self.retention_days)

    def validate(self) -> None:
        self.database.validate()
        if self.interval_seconds <= 0:
            raise ConfigError("DB_MONITOR_INTERVAL_SECONDS must be positive")
        if not self.critical_tables:
            raise ConfigError("DB_MONITOR_CRITICAL_TABLES must name at least one table")
        if not 0 <= self.data_loss_threshold < 1:
            raise ConfigError("DB_MONITOR_DATA_LOSS_THRESHOLD must be in [0, 1)")
        if self.backup_max_age_hours <= 0:
            raise ConfigError("DB_MONITOR_BACKUP_MAX_AGE_HOURS must be positive")
        if self.probe_timeout_seconds <= 0 or self.backup_timeout_seconds <= 0:
            raise ConfigError("probe and backup timeouts must be positive")
        if self.max_backups < 1:
            raise ConfigError("MAX_BACKUPS must be at least 1")
        if self.retention_days < 0:
            raise ConfigError("BACKUP_RETENTION_DAYS must not be negative")
        if self.reset_warning_hours < 0:
            raise ConfigError("DB_MONITOR_RESET_WARNING_HOURS must not be negative")
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigError(f"STATE_STORE_BACKEND must be one of {sorted(STORE_BACKENDS)}")

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        critical = os.getenv("DB_MONITOR_CRITICAL_TABLES", ",".join(DEFAULT_CRITICAL_TABLES))

        config = cls(
            database=DatabaseSettings.from_env(),
            interval_seconds=_env_int("DB_MONITOR_INTERVAL_SECONDS", 300),
            critical_tables=_csv_list(critical),
            data_loss_threshold=_env_float("DB_MONITOR_DATA_LOSS_THRESHOLD", 0.1),
            backup_max_age_hours=_env_float("DB_MONITOR_BACKUP_MAX_AGE_HOURS", 24.0),
            probe_timeout_seconds=_env_float("DB_MONITOR_PROBE_TIMEOUT_SECONDS", 30.0),
            backup_timeout_seconds=_env_float("DB_MONITOR_BACKUP_TIMEOUT_SECONDS", 3600.0),
            backup_dir=Path(os.getenv("BACKUP_DIR", "./backups") or "./backups"),
            max_backups=_env_int("MAX_BACKUPS", 5),
            retention_days=_env_int("BACKUP_RETENTION_DAYS", 7),
            store_backend=(os.getenv("STATE_STORE_BACKEND", "postgres") or "postgres").strip().lower(),
            sqlite_path=os.getenv("STATE_STORE_SQLITE_PATH", "system_status.db") or "system_status.db",
            enabled=_truthy(os.getenv("ENABLE_DB_MONITORING", "false")),
            reset_warning_hours=_env_float("DB_MONITOR_RESET_WARNING_HOURS", 1.0),
        )
        config.validate()
        return config
