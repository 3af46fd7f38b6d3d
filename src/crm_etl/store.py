"""crm_etl.store

The store seam of the engine. ``Store`` is the async interface the
committer and orchestrator use; ``PgStore`` implements it on PostgreSQL
with psycopg 3.

Each PgStore operation borrows its own pooled connection and runs as its
own transaction. Concurrent updates never share a transaction, and a
rejected bulk insert leaves nothing behind.

psycopg exceptions are translated at this boundary:
  UniqueViolation (23505) -> UniqueViolationError
  any other psycopg.Error -> StoreError
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Mapping, Protocol, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from crm_etl.shared import StoreError, UniqueViolationError

log = logging.getLogger(__name__)


class Store(Protocol):
    async def fetch_all(self, table: str) -> list[dict[str, Any]]:
        ...

    async def fetch_by_values(
        self,
        table: str,
        column: str,
        values: Sequence[str],
        columns: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def insert_many(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        ...

    async def insert_one(self, table: str, row: Mapping[str, Any]) -> None:
        ...

    async def update_by_id(self, table: str, row_id: str, values: Mapping[str, Any]) -> int:
        ...


def _select_list(columns: Sequence[str] | None) -> sql.Composable:
    if not columns:
        return sql.SQL("*")
    return sql.SQL(", ").join(sql.Identifier(c) for c in columns)


def _column_union(rows: Iterable[Mapping[str, Any]]) -> list[str]:
    cols: list[str] = []
    seen: set[str] = set()
    for row in rows:
        for col in row:
            if col not in seen:
                seen.add(col)
                cols.append(col)
    return cols


class PgStore:
    """Store backed by a psycopg AsyncConnectionPool."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def _execute(
        self,
        query: sql.Composable,
        params: Sequence[Any] | None = None,
        fetch: bool = False,
    ) -> tuple[list[dict[str, Any]], int]:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(query, params)
                    rows = await cur.fetchall() if fetch else []
                    return rows, cur.rowcount
        except pg_errors.UniqueViolation as exc:
            raise UniqueViolationError(str(exc)) from exc
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc

    async def fetch_all(self, table: str) -> list[dict[str, Any]]:
        query = sql.SQL("SELECT * FROM {} ORDER BY created_at, id").format(
            sql.Identifier(table)
        )
        rows, _ = await self._execute(query, fetch=True)
        return rows

    async def fetch_by_values(
        self,
        table: str,
        column: str,
        values: Sequence[str],
        columns: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        if not values:
            return []
        query = sql.SQL("SELECT {} FROM {} WHERE {} = ANY(%s)").format(
            _select_list(columns),
            sql.Identifier(table),
            sql.Identifier(column),
        )
        rows, _ = await self._execute(query, (list(values),), fetch=True)
        return rows

    async def insert_many(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert rows in a single statement; columns a row lacks get DEFAULT."""
        if not rows:
            return 0
        cols = _column_union(rows)
        params: list[Any] = []
        value_groups = []
        for row in rows:
            cells = []
            for col in cols:
                if col in row:
                    cells.append(sql.Placeholder())
                    params.append(row[col])
                else:
                    cells.append(sql.DEFAULT)
            value_groups.append(sql.SQL("({})").format(sql.SQL(", ").join(cells)))
        query = sql.SQL("INSERT INTO {} ({}) VALUES {}").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join(value_groups),
        )
        _, count = await self._execute(query, params)
        return count

    async def insert_one(self, table: str, row: Mapping[str, Any]) -> None:
        await self.insert_many(table, [row])

    async def update_by_id(self, table: str, row_id: str, values: Mapping[str, Any]) -> int:
        if not values:
            return 0
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(col), sql.Placeholder())
            for col in values
        )
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            sql.Identifier(table), assignments
        )
        _, count = await self._execute(query, [*values.values(), row_id])
        return count


@asynccontextmanager
async def open_pg_store(
    db_dsn: str,
    min_size: int = 1,
    max_size: int = 10,
) -> AsyncIterator[PgStore]:
    """Open a connection pool for the duration of one run."""
    pool = AsyncConnectionPool(db_dsn, min_size=min_size, max_size=max_size, open=False)
    try:
        await pool.open(wait=True)
    except psycopg.Error as exc:
        await pool.close()
        raise StoreError(f"could not connect: {exc}") from exc
    log.info("store pool opened (min_size=%d, max_size=%d)", min_size, max_size)
    try:
        yield PgStore(pool)
    finally:
        await pool.close()
