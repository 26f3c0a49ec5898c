"""
Pytest configuration and fixtures for the database lifecycle monitor.

This module provides:
- Environment overrides so nothing touches a real database
- A fake read surface for the health probe
- Backup commands built from the current interpreter instead of pg_dump/gzip
- SQLite-backed state stores on temporary files
"""
import dataclasses
import os
from typing import Callable, Optional

import pytest

os.environ.setdefault("STATE_STORE_BACKEND", "sqlite")
os.environ.setdefault("ENABLE_DB_MONITORING", "false")

from db_lifecycle.backup import BackupCommand, BackupExecutor
from db_lifecycle.config import DatabaseSettings, MonitorConfig
from db_lifecycle.detector import AnomalyDetector
from db_lifecycle.monitor import MonitorLoop
from db_lifecycle.probe import HealthProbe
from db_lifecycle.store.sqlite import SQLiteStateStore
from tests.mock_helpers import FakeReader, python_command


@pytest.fixture
def db_settings() -> DatabaseSettings:
    return DatabaseSettings(host="db.internal", port=5432, user="monitor", password="s3cret", database="app")


@pytest.fixture
def make_config(tmp_path, db_settings) -> Callable[..., MonitorConfig]:
    def _make(**overrides) -> MonitorConfig:
        base = MonitorConfig(
            database=db_settings,
            interval_seconds=3600,
            critical_tables=("user_profiles", "schools", "school_users", "content"),
            data_loss_threshold=0.1,
            backup_max_age_hours=24.0,
            probe_timeout_seconds=5.0,
            backup_timeout_seconds=30.0,
            backup_dir=tmp_path / "backups",
            max_backups=5,
            retention_days=7,
            store_backend="sqlite",
            sqlite_path=str(tmp_path / "status.db"),
        )
        return dataclasses.replace(base, **overrides)

    return _make


@pytest.fixture
def sqlite_store(tmp_path) -> SQLiteStateStore:
    return SQLiteStateStore(db_path=str(tmp_path / "status.db"))


@pytest.fixture
def make_monitor(make_config, sqlite_store):
    """Build a MonitorLoop with a fake reader, python backup pipeline and sqlite store."""

    def _make(
        reader: Optional[FakeReader] = None,
        *,
        command: Optional[BackupCommand] = None,
        store=None,
        **config_overrides,
    ) -> MonitorLoop:
        cfg = make_config(**config_overrides)
        return MonitorLoop(
            config=cfg,
            probe=HealthProbe(reader or FakeReader(), timeout_seconds=cfg.probe_timeout_seconds),
            detector=AnomalyDetector(threshold=cfg.data_loss_threshold),
            executor=BackupExecutor(
                backup_dir=cfg.backup_dir,
                retention=cfg.retention,
                command=command or python_command(),
                timeout_seconds=cfg.backup_timeout_seconds,
            ),
            store=store or sqlite_store,
        )

    return _make