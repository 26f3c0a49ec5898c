from __future__ import annotations

from typing import Optional

from .backup import BackupCommand, BackupExecutor
from .config import MonitorConfig
from .detector import AnomalyDetector
from .monitor import MonitorLoop
from .probe import DatabaseReader, HealthProbe, PostgresReader
from .store import StateStore, get_state_store


def build_probe(config: MonitorConfig, reader: Optional[DatabaseReader] = None) -> HealthProbe:
    return HealthProbe(reader or PostgresReader(), timeout_seconds=config.probe_timeout_seconds)


def build_executor(config: MonitorConfig, command: Optional[BackupCommand] = None) -> BackupExecutor:
    return BackupExecutor(
        backup_dir=config.backup_dir,
        retention=config.retention,
        command=command or BackupCommand.pg_dump(config.database),
        timeout_seconds=config.backup_timeout_seconds,
    )


def build_default_monitor(
    *,
    config: MonitorConfig,
    store: Optional[StateStore] = None,
    reader: Optional[DatabaseReader] = None,
    command: Optional[BackupCommand] = None,
) -> MonitorLoop:
    """Wire a MonitorLoop from config; any collaborator can be swapped in."""
    return MonitorLoop(
        config=config,
        probe=build_probe(config, reader),
        detector=AnomalyDetector(threshold=config.data_loss_threshold),
        executor=build_executor(config, command),
        store=store or get_state_store(config),
    )
