"""PostgreSQL implementation of the status store."""
import json
from datetime import datetime
from typing import List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from ..errors import PersistenceError
from ..schema import StatusRecord, SystemStatus
from .base import StateStore

_SCHEMA_STATEMENTS = [
    """
    DO $$
    BEGIN
        CREATE TYPE system_status_type AS ENUM ('initialized', 'reset', 'backup', 'restore', 'error');
    EXCEPTION
        WHEN duplicate_object THEN NULL;
    END
    $$;
    """,
    """
    CREATE TABLE IF NOT EXISTS system_status (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        status system_status_type NOT NULL DEFAULT 'initialized',
        last_known_state jsonb NOT NULL DEFAULT '{}'::jsonb,
        last_reset_time timestamptz,
        last_backup_time timestamptz,
        last_restore_time timestamptz,
        error_count integer DEFAULT 0,
        last_error jsonb,
        created_at timestamptz DEFAULT now() NOT NULL,
        updated_at timestamptz DEFAULT now() NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_system_status_created_at ON system_status(created_at);",
    "CREATE INDEX IF NOT EXISTS idx_system_status_status ON system_status(status);",
    # The running error count needs the previous rows, so it is computed
    # inside the insert function under a transaction-scoped advisory lock.
    """
    CREATE OR REPLACE FUNCTION log_system_event(
        p_status system_status_type,
        p_state jsonb DEFAULT NULL,
        p_error jsonb DEFAULT NULL
    ) RETURNS uuid AS $$
    DECLARE
        v_id uuid;
        v_errors integer;
    BEGIN
        PERFORM pg_advisory_xact_lock(hashtext('system_status.error_count'));
        SELECT COALESCE(MAX(error_count), 0) INTO v_errors FROM system_status;

        INSERT INTO system_status (
            status,
            last_known_state,
            last_reset_time,
            last_backup_time,
            last_restore_time,
            error_count,
            last_error,
            created_at,
            updated_at
        )
        VALUES (
            p_status,
            COALESCE(p_state, '{}'::jsonb),
            CASE WHEN p_status = 'reset' THEN clock_timestamp() ELSE NULL END,
            CASE WHEN p_status = 'backup' THEN clock_timestamp() ELSE NULL END,
            CASE WHEN p_status = 'restore' THEN clock_timestamp() ELSE NULL END,
            v_errors + CASE WHEN p_status = 'error' THEN 1 ELSE 0 END,
            p_error,
            clock_timestamp(),
            clock_timestamp()
        )
        RETURNING id INTO v_id;

        RETURN v_id;
    END;
    $$ LANGUAGE plpgsql SECURITY DEFINER;
    """,
]


class PostgresStateStore(StateStore):
    """PostgreSQL-backed status store; writes go through ``log_system_event``."""

    def __init__(self, connection_string: Optional[str] = None):
        """
        Args:
            connection_string: PostgreSQL connection string (defaults to config)
        """
        if connection_string is None:
            from config import POSTGRES_CONNECTION_STRING

            connection_string = POSTGRES_CONNECTION_STRING
        self.connection_string = connection_string

    def _get_connection(self):
        try:
            return psycopg2.connect(self.connection_string)
        except psycopg2.Error as e:
            raise PersistenceError(f"cannot connect to state store: {e}") from e

    def ensure_schema(self) -> None:
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                for statement in _SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise PersistenceError(f"schema setup failed: {e}") from e
        finally:
            conn.close()

    def append(self, record: StatusRecord) -> str:
        status = SystemStatus(record.status)
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT log_system_event(%s::system_status_type, %s::jsonb, %s::jsonb)",
                    (
                        status.value,
                        Json(record.last_known_state, dumps=_dumps),
                        Json(record.last_error, dumps=_dumps) if record.last_error is not None else None,
                    ),
                )
                (record_id,) = cur.fetchone()
            conn.commit()
            return str(record_id)
        except psycopg2.Error as e:
            conn.rollback()
            raise PersistenceError(f"append failed: {e}") from e
        finally:
            conn.close()

    def _query(self, query: str, params: tuple = ()) -> List[dict]:
        conn = self._get_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise PersistenceError(f"query failed: {e}") from e
        finally:
            conn.close()

    def latest(self) -> Optional[StatusRecord]:
        rows = self._query("SELECT * FROM system_status ORDER BY created_at DESC LIMIT 1")
        return self._row_to_record(rows[0]) if rows else None

    def latest_backup_time(self) -> Optional[datetime]:
        rows = self._query(
            "SELECT MAX(last_backup_time) AS t FROM system_status WHERE last_backup_time IS NOT NULL"
        )
        return rows[0]["t"] if rows else None

    def latest_reset_time(self) -> Optional[datetime]:
        rows = self._query(
            "SELECT MAX(last_reset_time) AS t FROM system_status WHERE last_reset_time IS NOT NULL"
        )
        return rows[0]["t"] if rows else None

    def history(self, limit: int = 20) -> List[StatusRecord]:
        rows = self._query(
            "SELECT * FROM system_status ORDER BY created_at DESC LIMIT %s",
            (max(0, int(limit)),),
        )
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row: dict) -> StatusRecord:
        row["id"] = str(row["id"])
        row["error_count"] = row.get("error_count") or 0
        return StatusRecord(**row)


def _dumps(value) -> str:
    return json.dumps(value, default=str)
