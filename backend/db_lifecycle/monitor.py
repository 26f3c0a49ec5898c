from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .backup import BackupExecutor
from .config import MonitorConfig
from .detector import AnomalyDetector, empty_table_message, empty_tables
from .errors import BackupError, ConnectivityError, PersistenceError
from .probe import HealthProbe
from .schema import StatusRecord, SystemStatus
from .store import StateStore
from .types import HEALTHY, BackupArtifact, Snapshot, TickResult

logger = logging.getLogger("db_lifecycle")

IDLE = "idle"
PROBING = "probing"
CLASSIFYING = "classifying"
BACKING_UP = "backing-up"
RECORDING = "recording"

DATA_LOSS_INCIDENT = "Unexpected data loss detected"


def reset_message(reset_at: datetime, window_hours: float) -> str:
    return f"Database was reset within the last {window_hours:g}h (at {reset_at.isoformat()})"


class MonitorLoop:
    """
    Periodic database check: probe, classify, back up when needed, record.

    Each instance owns its own baseline snapshot; ticks are serialized and
    every tick appends exactly one snapshot record to the state store.
    """

    def __init__(
        self,
        *,
        config: MonitorConfig,
        probe: HealthProbe,
        detector: AnomalyDetector,
        executor: BackupExecutor,
        store: StateStore,
    ) -> None:
        self._config = config
        self._probe = probe
        self._detector = detector
        self._executor = executor
        self._store = store

        self._lock = asyncio.Lock()
        self._phase = IDLE
        self._last_snapshot: Optional[Snapshot] = None
        self._last_tick: Optional[TickResult] = None
        self._tick_count = 0

        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def executor(self) -> BackupExecutor:
        return self._executor

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def last_snapshot(self) -> Optional[Snapshot]:
        return self._last_snapshot

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> Dict[str, Any]:
        last = self._last_tick.to_dict() if self._last_tick else None
        return {
            "running": self.running,
            "phase": self._phase,
            "interval_seconds": self._config.interval_seconds,
            "critical_tables": list(self._config.critical_tables),
            "ticks": self._tick_count,
            "last_tick": last,
        }

    async def check_health(self) -> Snapshot:
        """Fresh classified snapshot; nothing is recorded and the baseline is untouched."""
        current = await self._probe.probe(self._config.critical_tables)
        snapshot = self._detector.classify(current, self._last_snapshot)
        snapshot, _ = await self._flag_conditions(snapshot, now=datetime.now(timezone.utc))
        return snapshot

    def _backup_reason(
        self,
        *,
        data_loss: bool,
        empty_table: bool,
        last_backup: Optional[datetime],
        now: datetime,
    ) -> Optional[str]:
        if data_loss:
            return "data_loss"
        if empty_table:
            return "empty_table"
        if last_backup is None:
            return "no_backup_history"
        if now - last_backup > timedelta(hours=self._config.backup_max_age_hours):
            return "stale_backup"
        return None

    async def _last_backup_time(self) -> tuple[Optional[datetime], Optional[str]]:
        try:
            return await asyncio.to_thread(self._store.latest_backup_time), None
        except PersistenceError as e:
            logger.error("[StateStore] failed to read backup history: %s", e)
            fallback = self._last_snapshot.last_backup_at if self._last_snapshot else None
            return fallback, f"Error reading backup history: {e}"

    async def _last_reset_time(self) -> Optional[datetime]:
        try:
            return await asyncio.to_thread(self._store.latest_reset_time)
        except PersistenceError as e:
            logger.warning("[StateStore] failed to read reset history: %s", e)
            return None

    async def _flag_conditions(self, snapshot: Snapshot, *, now: datetime) -> tuple[Snapshot, list[str]]:
        """Empty critical tables and a recent reset become warnings."""
        empty = empty_tables(snapshot)
        for name in empty:
            snapshot = snapshot.with_warning(empty_table_message(name))
        if empty:
            logger.warning("[DbMonitor] empty critical tables: %s", ", ".join(empty))

        window = self._config.reset_warning_hours
        if window > 0:
            reset_at = await self._last_reset_time()
            if reset_at is not None and now - reset_at < timedelta(hours=window):
                message = reset_message(reset_at, window)
                logger.warning("[DbMonitor] %s", message)
                snapshot = snapshot.with_warning(message)
        return snapshot, empty

    async def _record_backup(self, artifact: BackupArtifact, reason: str) -> None:
        state = {
            "message": "Automatic backup completed",
            "backup_file": artifact.name,
            "size_bytes": artifact.size_bytes,
            "reason": reason,
            "timestamp": artifact.created_at.isoformat(),
        }
        try:
            await asyncio.to_thread(self._store.log_system_event, SystemStatus.BACKUP, state)
        except PersistenceError as e:
            logger.error("[StateStore] failed to record backup %s: %s", artifact.name, e)

    async def run_once(self) -> TickResult:
        """
        Run one tick.

        Leaf failures become snapshot errors; this method only raises on
        programming errors. Safe to call concurrently; ticks are serialized.
        """
        async with self._lock:
            t0 = time.perf_counter()
            previous = self._last_snapshot
            backup: Optional[BackupArtifact] = None
            reason: Optional[str] = None
            losses: list[str] = []
            empty: list[str] = []

            try:
                self._phase = PROBING
                try:
                    snapshot = await self._probe.probe(self._config.critical_tables)
                except ConnectivityError as e:
                    logger.error("[DbMonitor] database unreachable: %s", e)
                    snapshot = Snapshot.failed(str(e))
                else:
                    self._phase = CLASSIFYING
                    losses = self._detector.data_loss(snapshot, previous)
                    snapshot = self._detector.classify(snapshot, previous)
                    if losses:
                        logger.error("ALERT: %s: %s", DATA_LOSS_INCIDENT, "; ".join(losses))
                    now = datetime.now(timezone.utc)
                    snapshot, empty = await self._flag_conditions(snapshot, now=now)

                    last_backup, read_error = await self._last_backup_time()
                    if read_error:
                        snapshot = snapshot.with_error(read_error)
                    snapshot = snapshot.with_backup(last_backup)

                    reason = self._backup_reason(
                        data_loss=bool(losses),
                        empty_table=bool(empty),
                        last_backup=last_backup,
                        now=now,
                    )
                    if reason:
                        self._phase = BACKING_UP
                        logger.info("[Backup] triggered: %s", reason)
                        try:
                            backup = await self._executor.run()
                        except (BackupError, OSError) as e:
                            logger.error("[Backup] failed: %s", e)
                            snapshot = snapshot.with_error(f"Backup failed: {e}")
                        else:
                            snapshot = snapshot.with_backup(backup.created_at)
                            await self._record_backup(backup, reason)

                self._phase = RECORDING
                record_id = await self._record_tick(
                    snapshot, incident=bool(losses), empty_tables=empty, backup=backup, reason=reason
                )
            finally:
                self._phase = IDLE

            # Baseline moves forward even on error so a transient failure is
            # not compared against a stale snapshot next time.
            self._last_snapshot = snapshot
            self._tick_count += 1

            duration_ms = int((time.perf_counter() - t0) * 1000)
            result = TickResult(
                snapshot=snapshot,
                record_id=record_id,
                backup=backup,
                backup_reason=reason,
                duration_ms=duration_ms,
            )
            self._last_tick = result

            logger.info(
                "[DbMonitor] tick status=%s tables=%s warnings=%d errors=%d backup=%s duration_ms=%s",
                snapshot.status,
                ",".join(f"{k}:{v}" for k, v in sorted(snapshot.table_counts.items())) or "-",
                len(snapshot.warnings),
                len(snapshot.errors),
                backup.name if backup else "-",
                duration_ms,
            )
            return result

    async def _record_tick(
        self,
        snapshot: Snapshot,
        *,
        incident: bool,
        empty_tables: list[str],
        backup: Optional[BackupArtifact],
        reason: Optional[str],
    ) -> Optional[str]:
        state = snapshot.to_dict()
        if incident:
            state["incident"] = DATA_LOSS_INCIDENT
        if empty_tables:
            state["emptyTables"] = list(empty_tables)
        if backup is not None:
            state["backup"] = backup.to_dict()
        if reason:
            state["backupReason"] = reason

        record = StatusRecord(
            status=SystemStatus.INITIALIZED if snapshot.status == HEALTHY else SystemStatus.ERROR,
            last_known_state=state,
            last_error={"message": snapshot.errors[0], "errors": list(snapshot.errors)} if snapshot.errors else None,
        )
        try:
            return await asyncio.to_thread(self._store.append, record)
        except PersistenceError as e:
            logger.error("[StateStore] failed to record tick: %s", e)
            return None

    async def _loop(self) -> None:
        interval_s = max(1, int(self._config.interval_seconds))
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("[DbMonitor] loop error: %s", e, exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("[DbMonitor] monitoring started (interval=%ss)", self._config.interval_seconds)

    def request_stop(self) -> None:
        """Stop scheduling new ticks; a tick already in progress runs to completion."""
        self._stopping.set()

    async def wait(self) -> None:
        task = self._task
        if task is not None:
            await task

    async def stop(self) -> None:
        self.request_stop()
        task = self._task
        if task is None:
            return
        await task
        self._task = None
        logger.info("[DbMonitor] monitoring stopped")
