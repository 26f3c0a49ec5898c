"""Database lifecycle monitoring (backend/db_lifecycle).

Periodically samples database health, detects sudden row-count drops between
samples, takes compressed backups with a retention policy, and appends every
outcome to the ``system_status`` audit log.

The loop only runs inside the API process when
``ENABLE_DB_MONITORING=true``; the ``db-lifecycle monitor`` command runs it
standalone.
"""

from .catalog import build_default_monitor
from .config import DatabaseSettings, MonitorConfig
from .monitor import MonitorLoop

__all__ = [
    "DatabaseSettings",
    "MonitorConfig",
    "MonitorLoop",
    "build_default_monitor",
]
