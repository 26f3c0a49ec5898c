from __future__ import annotations

import asyncio

from fastapi import APIRouter, HTTPException, Query, Request

from db_lifecycle import MonitorConfig, build_default_monitor
from db_lifecycle.errors import ConfigError, ConnectivityError, PersistenceError

router = APIRouter(prefix="/admin/db-lifecycle", tags=["db-lifecycle"])


def _get_or_build_monitor(request: Request):
    monitor = getattr(request.app.state, "db_monitor", None)
    if monitor is not None:
        return monitor
    try:
        cfg = MonitorConfig.from_env()
        monitor = build_default_monitor(config=cfg)
    except (ConfigError, PersistenceError) as e:
        raise HTTPException(status_code=500, detail=str(e))
    # Keep the baseline across requests
    request.app.state.db_monitor = monitor
    return monitor


@router.get("/status")
async def get_latest_status(request: Request):
    """Latest audit record."""
    monitor = _get_or_build_monitor(request)
    try:
        record = await asyncio.to_thread(monitor.store.latest)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail="no status recorded yet")
    return record.to_dict()


@router.get("/history")
async def get_status_history(request: Request, limit: int = Query(20, ge=1, le=500)):
    monitor = _get_or_build_monitor(request)
    try:
        records = await asyncio.to_thread(monitor.store.history, limit)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"records": [r.to_dict() for r in records]}


@router.get("/health")
async def get_database_health(request: Request):
    """Fresh snapshot; nothing is recorded."""
    monitor = _get_or_build_monitor(request)
    try:
        snapshot = await monitor.check_health()
    except ConnectivityError as e:
        raise HTTPException(status_code=503, detail=f"database unreachable: {e}")
    return snapshot.to_dict()


@router.post("/run")
async def run_check_once(request: Request):
    monitor = _get_or_build_monitor(request)
    res = await monitor.run_once()
    return res.to_dict()


@router.get("/monitor")
async def get_monitor_state(request: Request):
    monitor = getattr(request.app.state, "db_monitor", None)
    if monitor is None:
        return {"running": False, "phase": "idle", "ticks": 0, "last_tick": None}
    return monitor.snapshot()
