#!/usr/bin/env python3
"""
Database lifecycle command line.

Usage:
    db-lifecycle status              # latest audit record
    db-lifecycle health              # fresh health snapshot (nothing recorded)
    db-lifecycle history --limit 10  # most recent audit records
    db-lifecycle reset               # log a database reset event
    db-lifecycle backup              # take a backup now and record it
    db-lifecycle check               # run one monitoring tick
    db-lifecycle monitor             # run the monitoring loop until SIGINT/SIGTERM
    db-lifecycle init-schema         # create the audit table if missing

Output is JSON on stdout. Exit code 0 on success, 1 on any failure.
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import config  # noqa: F401  (loads .env files)
from db_lifecycle import MonitorConfig, MonitorLoop, build_default_monitor
from db_lifecycle.errors import ConfigError, PersistenceError
from db_lifecycle.schema import SystemStatus

logger = logging.getLogger("db_lifecycle")

# Commands that only read the audit log; their failures are not logged back into it.
READ_ONLY_COMMANDS = {"status", "history", "init-schema"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _status(monitor: MonitorLoop, args) -> None:
    record = await asyncio.to_thread(monitor.store.latest)
    _emit(record.to_dict() if record else None)


async def _history(monitor: MonitorLoop, args) -> None:
    records = await asyncio.to_thread(monitor.store.history, args.limit)
    _emit([r.to_dict() for r in records])


async def _health(monitor: MonitorLoop, args) -> None:
    snapshot = await monitor.check_health()
    _emit(snapshot.to_dict())


async def _reset(monitor: MonitorLoop, args) -> None:
    record_id = await asyncio.to_thread(
        monitor.store.log_system_event,
        SystemStatus.RESET,
        {"message": "Manual database reset triggered", "timestamp": _now_iso()},
    )
    _emit({"id": record_id, "status": SystemStatus.RESET.value})


async def _backup(monitor: MonitorLoop, args) -> None:
    artifact = await monitor.executor.run()
    record_id = await asyncio.to_thread(
        monitor.store.log_system_event,
        SystemStatus.BACKUP,
        {
            "message": "Manual backup triggered",
            "backup_file": artifact.name,
            "size_bytes": artifact.size_bytes,
            "timestamp": artifact.created_at.isoformat(),
        },
    )
    _emit({"id": record_id, "backup": artifact.to_dict()})


async def _check(monitor: MonitorLoop, args) -> None:
    result = await monitor.run_once()
    _emit(result.to_dict())


async def _monitor(monitor: MonitorLoop, args) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, monitor)
    monitor.start()
    await monitor.wait()
    logger.info("[DbMonitor] monitor exited")


def _shutdown(monitor: MonitorLoop) -> None:
    logger.info("[DbMonitor] shutting down monitor...")
    monitor.request_stop()


async def _init_schema(monitor: MonitorLoop, args) -> None:
    await asyncio.to_thread(monitor.store.ensure_schema)
    _emit({"schema": "ok"})


COMMANDS = {
    "status": _status,
    "history": _history,
    "health": _health,
    "reset": _reset,
    "backup": _backup,
    "check": _check,
    "monitor": _monitor,
    "init-schema": _init_schema,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="db-lifecycle", description="Database lifecycle monitor")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Logging level (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show the latest audit record")
    sub.add_parser("health", help="Probe the database now")
    history = sub.add_parser("history", help="Show recent audit records")
    history.add_argument("--limit", type=int, default=20, help="Number of records (default: %(default)s)")
    sub.add_parser("reset", help="Log a database reset event")
    sub.add_parser("backup", help="Take a backup and record it")
    sub.add_parser("check", help="Run one monitoring tick")
    sub.add_parser("monitor", help="Run the monitoring loop")
    sub.add_parser("init-schema", help="Create the audit table if missing")
    return parser


def _record_failure(monitor: MonitorLoop, command: str, error: BaseException) -> None:
    try:
        monitor.store.log_system_event(
            SystemStatus.ERROR,
            {"command": command, "timestamp": _now_iso()},
            {"message": str(error), "type": error.__class__.__name__},
        )
    except PersistenceError as e:
        logger.error("[StateStore] could not record command failure: %s", e)


def main(argv: Optional[list] = None, *, monitor: Optional[MonitorLoop] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if monitor is None:
        try:
            monitor = build_default_monitor(config=MonitorConfig.from_env())
        except (ConfigError, PersistenceError) as e:
            logger.error("Startup failed: %s", e)
            return 1

    try:
        asyncio.run(COMMANDS[args.command](monitor, args))
    except Exception as e:
        logger.error("Error: %s", e)
        if args.command not in READ_ONLY_COMMANDS:
            _record_failure(monitor, args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
