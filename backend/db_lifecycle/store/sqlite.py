"""SQLite implementation of the status store (dev fallback)."""
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..errors import PersistenceError
from ..schema import StatusRecord, SystemStatus
from .base import StateStore

_STATUSES = ", ".join(f"'{s.value}'" for s in SystemStatus)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStateStore(StateStore):
    """SQLite-backed status store."""

    def __init__(self, db_path: str = "system_status.db"):
        self.db_path = Path(db_path)
        self.ensure_schema()

    def _get_connection(self):
        # autocommit mode; transactions are opened explicitly
        try:
            conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS system_status (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL CHECK (status IN ({_STATUSES})),
                    last_known_state TEXT NOT NULL DEFAULT '{{}}',
                    last_reset_time TEXT,
                    last_backup_time TEXT,
                    last_restore_time TEXT,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_system_status_created_at
                ON system_status(created_at)
            """)
            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS system_status_no_delete
                BEFORE DELETE ON system_status
                BEGIN
                    SELECT RAISE(ABORT, 'system_status is append-only');
                END
            """)
        except sqlite3.Error as e:
            raise PersistenceError(f"schema setup failed: {e}") from e
        finally:
            conn.close()

    def append(self, record: StatusRecord) -> str:
        status = SystemStatus(record.status)
        record_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            (current,) = conn.execute(
                "SELECT COALESCE(MAX(error_count), 0) FROM system_status"
            ).fetchone()
            error_count = current + (1 if status is SystemStatus.ERROR else 0)
            conn.execute("""
                INSERT INTO system_status (
                    id, status, last_known_state, last_reset_time, last_backup_time,
                    last_restore_time, error_count, last_error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record_id,
                status.value,
                json.dumps(record.last_known_state, default=str),
                now if status is SystemStatus.RESET else None,
                now if status is SystemStatus.BACKUP else None,
                now if status is SystemStatus.RESTORE else None,
                error_count,
                json.dumps(record.last_error, default=str) if record.last_error is not None else None,
                now,
                now,
            ))
            conn.execute("COMMIT")
            return record_id
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceError(f"append failed: {e}") from e
        finally:
            conn.close()

    def _query(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"query failed: {e}") from e
        finally:
            conn.close()

    def latest(self) -> Optional[StatusRecord]:
        rows = self._query("SELECT * FROM system_status ORDER BY created_at DESC, rowid DESC LIMIT 1")
        return self._row_to_record(rows[0]) if rows else None

    def latest_backup_time(self) -> Optional[datetime]:
        rows = self._query(
            "SELECT MAX(last_backup_time) AS t FROM system_status WHERE last_backup_time IS NOT NULL"
        )
        return _parse_ts(rows[0]["t"]) if rows else None

    def latest_reset_time(self) -> Optional[datetime]:
        rows = self._query(
            "SELECT MAX(last_reset_time) AS t FROM system_status WHERE last_reset_time IS NOT NULL"
        )
        return _parse_ts(rows[0]["t"]) if rows else None

    def history(self, limit: int = 20) -> List[StatusRecord]:
        rows = self._query(
            "SELECT * FROM system_status ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (max(0, int(limit)),),
        )
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row: sqlite3.Row) -> StatusRecord:
        return StatusRecord(
            id=row["id"],
            status=row["status"],
            last_known_state=json.loads(row["last_known_state"] or "{}"),
            error_count=row["error_count"],
            last_error=json.loads(row["last_error"]) if row["last_error"] else None,
            last_reset_time=_parse_ts(row["last_reset_time"]),
            last_backup_time=_parse_ts(row["last_backup_time"]),
            last_restore_time=_parse_ts(row["last_restore_time"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )
