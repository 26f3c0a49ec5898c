"""Tests for the backup executor and retention sweep."""
import gzip
import os
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

pytestmark = pytest.mark.unit

from db_lifecycle.backup import (
    BackupCommand,
    BackupExecutor,
    artifact_path,
    artifact_timestamp,
    list_artifacts,
    sweep_backups,
)
from db_lifecycle.errors import BackupError
from db_lifecycle.types import RetentionPolicy
from tests.mock_helpers import DUMP_EMPTY, DUMP_FAIL, PASSTHROUGH, artifact_names, python_command

DAY = 24 * 60 * 60


def _make_artifacts(directory, ages_days, *, now):
    """Create one artifact per age (in days), oldest last in the returned list."""
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for i, age in enumerate(ages_days):
        path = directory / f"db_backup_{i:02d}.sql.gz"
        path.write_bytes(b"x" * 10)
        mtime = now - age * DAY
        os.utime(path, (mtime, mtime))
        paths.append(path)
    return paths


def _executor(tmp_path, command=None, **kwargs):
    kwargs.setdefault("retention", RetentionPolicy(max_count=5, max_age_days=7))
    return BackupExecutor(backup_dir=tmp_path / "backups", command=command or python_command(), **kwargs)


# ---------------------------------------------------------------------------
# Artifact naming
# ---------------------------------------------------------------------------


def test_artifact_timestamp_is_filesystem_safe():
    moment = datetime(2025, 2, 24, 10, 15, 30, 123456, tzinfo=timezone.utc)
    assert artifact_timestamp(moment) == "2025-02-24T10-15-30-123Z"
    assert ":" not in artifact_path(Path("/b"), moment).name


def test_artifact_timestamps_sort_lexically():
    moments = [
        datetime(2025, 1, 9, 23, 59, 59, tzinfo=timezone.utc),
        datetime(2025, 1, 10, 0, 0, 0, tzinfo=timezone.utc),
        datetime(2025, 1, 10, 0, 0, 0, 5000, tzinfo=timezone.utc),
        datetime(2025, 11, 1, 8, 0, 0, tzinfo=timezone.utc),
    ]
    stamps = [artifact_timestamp(m) for m in moments]
    assert stamps == sorted(stamps)


def test_pg_dump_command_contract(db_settings):
    command = BackupCommand.pg_dump(db_settings)
    assert list(command.dump_args) == [
        "pg_dump", "-h", "db.internal", "-p", "5432", "-U", "monitor", "-d", "app", "-F", "p",
    ]
    assert list(command.compress_args) == ["gzip", "-c"]
    assert command.env == {"PGPASSWORD": "s3cret"}
    # the password never appears on the command line
    assert "s3cret" not in command.dump_args
    assert command.ok_exit_codes == frozenset({0})


# ---------------------------------------------------------------------------
# Retention sweep
# ---------------------------------------------------------------------------


def test_sweep_keeps_newest_max_count(tmp_path):
    now = time.time()
    paths = _make_artifacts(tmp_path, [0.1, 0.2, 0.3, 0.4, 0.5, 0.6], now=now)
    removed = sweep_backups(tmp_path, RetentionPolicy(max_count=5, max_age_days=7), now=now)
    assert removed == [paths[-1]]
    assert len(list_artifacts(tmp_path)) == 5


def test_sweep_removes_expired_regardless_of_count(tmp_path):
    now = time.time()
    paths = _make_artifacts(tmp_path, [1, 8, 30], now=now)
    removed = sweep_backups(tmp_path, RetentionPolicy(max_count=5, max_age_days=7), now=now)
    assert set(removed) == {paths[1], paths[2]}
    assert list_artifacts(tmp_path) == [paths[0]]


def test_sweep_applies_union_of_both_rules(tmp_path):
    now = time.time()
    paths = _make_artifacts(tmp_path, [0, 1, 2, 10], now=now)
    removed = sweep_backups(tmp_path, RetentionPolicy(max_count=2, max_age_days=7), now=now)
    assert set(removed) == {paths[2], paths[3]}


def test_sweep_is_idempotent(tmp_path):
    now = time.time()
    _make_artifacts(tmp_path, [0, 1, 2, 3, 4, 5, 6, 9, 12], now=now)
    policy = RetentionPolicy(max_count=4, max_age_days=5)
    sweep_backups(tmp_path, policy, now=now)
    first = artifact_names(tmp_path)
    assert sweep_backups(tmp_path, policy, now=now) == []
    assert artifact_names(tmp_path) == first


@pytest.mark.parametrize("max_count,max_age_days", [(0, 0), (1, 0), (3, 2), (10, 1), (2, 100)])
def test_sweep_bounds_count_and_age(tmp_path, max_count, max_age_days):
    now = time.time()
    _make_artifacts(tmp_path, [0, 0.5, 1.5, 2.5, 3, 5, 8], now=now)
    sweep_backups(tmp_path, RetentionPolicy(max_count=max_count, max_age_days=max_age_days), now=now)
    survivors = list_artifacts(tmp_path)
    assert len(survivors) <= max_count
    assert all(now - p.stat().st_mtime <= max_age_days * DAY for p in survivors)


def test_sweep_ignores_unrelated_files(tmp_path):
    now = time.time()
    _make_artifacts(tmp_path, [30], now=now)
    (tmp_path / "notes.txt").write_text("keep me")
    sweep_backups(tmp_path, RetentionPolicy(max_count=1, max_age_days=1), now=now)
    assert artifact_names(tmp_path) == ["notes.txt"]


def test_sweep_on_missing_directory(tmp_path):
    assert sweep_backups(tmp_path / "nope", RetentionPolicy(max_count=1, max_age_days=1)) == []


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_creates_compressed_artifact(tmp_path):
    artifact = await _executor(tmp_path).run()
    assert artifact.path.exists()
    assert artifact.size_bytes == artifact.path.stat().st_size > 0
    assert artifact.name.startswith("db_backup_") and artifact.name.endswith(".sql.gz")
    assert b"CREATE TABLE content" in gzip.decompress(artifact.path.read_bytes())


@pytest.mark.asyncio
async def test_run_passes_password_through_environment(tmp_path):
    dump = "import os, sys; sys.stdout.write(os.environ['PGPASSWORD'])"
    command = python_command(dump, PASSTHROUGH, env={"PGPASSWORD": "from-env"})
    artifact = await _executor(tmp_path, command).run()
    assert artifact.path.read_bytes() == b"from-env"


@pytest.mark.asyncio
async def test_run_empty_artifact_is_backup_error(tmp_path):
    executor = _executor(tmp_path, python_command(DUMP_EMPTY, PASSTHROUGH))
    with pytest.raises(BackupError, match="empty"):
        await executor.run()
    assert artifact_names(tmp_path / "backups") == []


@pytest.mark.asyncio
async def test_run_dump_failure_is_backup_error(tmp_path):
    executor = _executor(tmp_path, python_command(DUMP_FAIL))
    with pytest.raises(BackupError, match="exited with 1: pg_dump: connection refused"):
        await executor.run()
    assert artifact_names(tmp_path / "backups") == []


@pytest.mark.asyncio
async def test_run_compress_failure_is_backup_error(tmp_path):
    compress = "import sys; sys.stdin.buffer.read(); sys.exit(2)"
    with pytest.raises(BackupError, match="exited with 2"):
        await _executor(tmp_path, python_command(compress_script=compress)).run()
    assert artifact_names(tmp_path / "backups") == []


@pytest.mark.asyncio
async def test_run_accepts_configured_exit_codes(tmp_path):
    dump = "import sys; sys.stdout.write('data'); sys.exit(3)"
    command = python_command(dump, PASSTHROUGH, ok_exit_codes=frozenset({0, 3}))
    artifact = await _executor(tmp_path, command).run()
    assert artifact.path.read_bytes() == b"data"


@pytest.mark.asyncio
async def test_run_missing_binary_is_backup_error(tmp_path):
    command = BackupCommand(dump_args=("definitely-not-a-real-pg-dump-binary",))
    with pytest.raises(BackupError, match="failed to start"):
        await _executor(tmp_path, command).run()
    assert artifact_names(tmp_path / "backups") == []


@pytest.mark.asyncio
async def test_run_timeout_kills_pipeline_and_discards_artifact(tmp_path):
    dump = "import sys, time; sys.stdout.write('partial'); sys.stdout.flush(); time.sleep(30)"
    executor = _executor(tmp_path, python_command(dump, PASSTHROUGH), timeout_seconds=0.5)
    started = time.monotonic()
    with pytest.raises(BackupError, match="timed out"):
        await executor.run()
    assert time.monotonic() - started < 10
    assert artifact_names(tmp_path / "backups") == []


@pytest.mark.asyncio
async def test_run_applies_retention_after_success(tmp_path):
    backups = tmp_path / "backups"
    now = time.time()
    old = _make_artifacts(backups, [1, 2, 3, 4, 5, 6], now=now)
    artifact = await _executor(tmp_path).run()
    survivors = list_artifacts(backups)
    assert len(survivors) == 5
    assert survivors[0] == artifact.path
    assert old[-1] not in survivors and old[-2] not in survivors


@pytest.mark.asyncio
async def test_run_keeps_artifact_when_sweep_fails(tmp_path, monkeypatch, caplog):
    def broken_sweep(*args, **kwargs):
        raise OSError("stat failed: vanished file")

    monkeypatch.setattr("db_lifecycle.backup.sweep_backups", broken_sweep)
    artifact = await _executor(tmp_path).run()

    assert artifact.path.exists()
    assert artifact.size_bytes > 0
    assert "[Backup] retention sweep failed" in caplog.text
