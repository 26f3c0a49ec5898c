from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .config import DatabaseSettings
from .errors import BackupError
from .types import BackupArtifact, RetentionPolicy

logger = logging.getLogger("db_lifecycle")

ARTIFACT_PREFIX = "db_backup_"
ARTIFACT_SUFFIX = ".sql.gz"
_STDERR_TAIL = 500


def artifact_timestamp(moment: datetime) -> str:
    """
    Filesystem-safe, lexically sortable UTC timestamp.

    ``2025-02-24T10:15:30.123Z`` becomes ``2025-02-24T10-15-30-123Z``.
    """
    moment = moment.astimezone(timezone.utc)
    return f"{moment:%Y-%m-%dT%H-%M-%S}-{moment.microsecond // 1000:03d}Z"


def artifact_path(backup_dir: Path, moment: datetime) -> Path:
    return backup_dir / f"{ARTIFACT_PREFIX}{artifact_timestamp(moment)}{ARTIFACT_SUFFIX}"


@dataclass(frozen=True)
class BackupCommand:
    """
    Typed contract for the external dump pipeline.

    ``dump_args`` writes a plain SQL dump to stdout, ``compress_args`` reads it
    on stdin and writes the compressed artifact to stdout. Either process
    exiting with a code outside ``ok_exit_codes`` fails the backup.
    """

    dump_args: Sequence[str]
    compress_args: Sequence[str] = ("gzip", "-c")
    env: Mapping[str, str] = field(default_factory=dict)
    ok_exit_codes: frozenset[int] = frozenset({0})

    @classmethod
    def pg_dump(cls, database: DatabaseSettings) -> "BackupCommand":
        return cls(
            dump_args=(
                "pg_dump",
                "-h", database.host,
                "-p", str(database.port),
                "-U", database.user,
                "-d", database.database,
                "-F", "p",
            ),
            env={"PGPASSWORD": database.password},
        )


def list_artifacts(backup_dir: Path) -> list[Path]:
    """Artifacts in ``backup_dir``, newest first by modification time."""
    if not backup_dir.is_dir():
        return []
    files = [p for p in backup_dir.iterdir() if p.is_file() and p.name.endswith(ARTIFACT_SUFFIX)]
    return sorted(files, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)


def sweep_backups(backup_dir: Path, policy: RetentionPolicy, *, now: Optional[float] = None) -> list[Path]:
    """
    Apply the retention policy and return the removed paths.

    Everything beyond the ``max_count`` newest artifacts is removed, as is
    anything older than ``max_age_days`` regardless of count.
    """
    now_s = time.time() if now is None else now
    max_age_s = max(0, policy.max_age_days) * 24 * 60 * 60

    files = list_artifacts(backup_dir)
    doomed = set(files[max(0, policy.max_count):])
    doomed.update(p for p in files if now_s - p.stat().st_mtime > max_age_s)

    removed: list[Path] = []
    for path in files:
        if path not in doomed:
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("[Backup] failed to remove %s: %s", path.name, e)
            continue
        logger.info("[Backup] removed old backup %s", path.name)
        removed.append(path)
    return removed


def _tail(raw: bytes) -> str:
    text = (raw or b"").decode("utf-8", errors="replace").strip()
    return text[-_STDERR_TAIL:]


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class BackupExecutor:
    """
    Run the dump pipeline into a timestamped artifact and apply retention.

    Recording the backup in the audit log is left to the caller.
    """

    def __init__(
        self,
        *,
        backup_dir: Path,
        retention: RetentionPolicy,
        command: BackupCommand,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._backup_dir = Path(backup_dir)
        self._retention = retention
        self._command = command
        self._timeout_seconds = timeout_seconds

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    @property
    def retention(self) -> RetentionPolicy:
        return self._retention

    async def run(self) -> BackupArtifact:
        started = datetime.now(timezone.utc)
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        path = artifact_path(self._backup_dir, started)

        logger.info("[Backup] creating compressed database backup at %s", path)
        try:
            await self._dump_to(path)
        except BaseException:
            _discard(path)
            raise

        size = path.stat().st_size if path.exists() else 0
        if size <= 0:
            _discard(path)
            raise BackupError("Backup file is empty or was not created")

        artifact = BackupArtifact(path=path, created_at=started, size_bytes=size)
        logger.info("[Backup] created %s (%d bytes)", path.name, size)

        try:
            await asyncio.to_thread(sweep_backups, self._backup_dir, self._retention)
        except OSError as e:
            # the new artifact is valid; old ones are swept again next run
            logger.warning("[Backup] retention sweep failed: %s", e)
        return artifact

    async def _dump_to(self, path: Path) -> None:
        env = {**os.environ, **dict(self._command.env)}
        read_fd, write_fd = os.pipe()
        dump = compress = None
        try:
            with open(path, "wb") as out:
                try:
                    dump = await asyncio.create_subprocess_exec(
                        *self._command.dump_args,
                        stdout=write_fd,
                        stderr=asyncio.subprocess.PIPE,
                        env=env,
                    )
                    os.close(write_fd)
                    write_fd = -1
                    compress = await asyncio.create_subprocess_exec(
                        *self._command.compress_args,
                        stdin=read_fd,
                        stdout=out,
                        stderr=asyncio.subprocess.PIPE,
                        env=env,
                    )
                    os.close(read_fd)
                    read_fd = -1
                except OSError as e:
                    raise BackupError(f"failed to start backup pipeline: {e}") from e

                pipeline = asyncio.gather(dump.communicate(), compress.communicate())
                try:
                    if self._timeout_seconds:
                        results = await asyncio.wait_for(pipeline, timeout=self._timeout_seconds)
                    else:
                        results = await pipeline
                except asyncio.TimeoutError:
                    raise BackupError(f"backup timed out after {self._timeout_seconds:.0f}s") from None
                (_, dump_err), (_, compress_err) = results
        except BaseException:
            for proc in (dump, compress):
                if proc is not None and proc.returncode is None:
                    proc.kill()
                    await proc.wait()
            raise
        finally:
            for fd in (read_fd, write_fd):
                if fd >= 0:
                    os.close(fd)

        ok = self._command.ok_exit_codes
        if dump.returncode not in ok:
            raise BackupError(f"{self._command.dump_args[0]} exited with {dump.returncode}: {_tail(dump_err)}")
        if compress.returncode not in ok:
            raise BackupError(
                f"{self._command.compress_args[0]} exited with {compress.returncode}: {_tail(compress_err)}"
            )
        if dump_err:
            logger.warning("[Backup] warnings during backup: %s", _tail(dump_err))
