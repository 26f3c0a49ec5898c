from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Protocol

from .errors import ConnectivityError, CountError
from .types import HEALTHY, Snapshot

logger = logging.getLogger("db_lifecycle")


class DatabaseReader(Protocol):
    """Narrow read surface the probe needs from the database."""

    def version(self) -> str: ...

    def count_rows(self, entity: str) -> int: ...


class PostgresReader:
    """Reads through the shared psycopg2 pool in ``db_postgres``."""

    def version(self) -> str:
        import db_postgres as pg

        rows = pg.execute_query("SELECT version() AS version")
        return str(rows[0]["version"]) if rows else ""

    def count_rows(self, entity: str) -> int:
        import db_postgres as pg
        from psycopg2 import sql

        # schema-qualified names ("public.content") become two identifiers
        query = sql.SQL("SELECT COUNT(*) AS n FROM {}").format(sql.Identifier(*entity.split(".")))
        rows = pg.execute_query(query)
        return int(rows[0]["n"] or 0) if rows else 0


class HealthProbe:
    def __init__(self, reader: DatabaseReader, *, timeout_seconds: Optional[float] = None) -> None:
        self._reader = reader
        self._timeout_seconds = timeout_seconds

    async def probe(self, entities: Iterable[str]) -> Snapshot:
        """
        Take one point-in-time reading of connectivity and row counts.

        Raises ConnectivityError when the round-trip check fails or the probe
        exceeds its timeout; per-entity count failures are reported in
        ``Snapshot.errors`` and the entity is left out of ``table_counts``.
        """
        names = sorted(set(entities))
        if not self._timeout_seconds:
            return await self._probe(names)
        try:
            return await asyncio.wait_for(self._probe(names), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            raise ConnectivityError(f"health probe timed out after {self._timeout_seconds:.1f}s") from None

    async def _probe(self, names: list[str]) -> Snapshot:
        try:
            await asyncio.to_thread(self._reader.version)
        except Exception as e:
            raise ConnectivityError(str(e) or e.__class__.__name__) from e

        results = await asyncio.gather(*(self._count(name) for name in names), return_exceptions=True)

        counts: dict[str, int] = {}
        errors: list[str] = []
        for name, result in zip(names, results):
            if isinstance(result, CountError):
                errors.append(f"Error checking table {name}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                counts[name] = result

        if errors:
            logger.warning("[DbMonitor] %d table count(s) failed: %s", len(errors), "; ".join(errors))
        return Snapshot(status=HEALTHY, table_counts=counts, errors=tuple(errors))

    async def _count(self, entity: str) -> int:
        try:
            count = await asyncio.to_thread(self._reader.count_rows, entity)
        except Exception as e:
            raise CountError(entity, str(e) or e.__class__.__name__) from e
        count = int(count or 0)
        if count < 0:
            raise CountError(entity, f"negative row count {count}")
        return count
