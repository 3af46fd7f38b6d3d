"""Unit test fixtures.

MemoryStore is an in-memory implementation of crm_etl.store.Store that
enforces the same uniqueness rules as migrations/0002_crm_core.sql: a
primary key on id and a unique external-id column per table.
"""

from __future__ import annotations

import copy
import uuid
from typing import Any, Mapping, Sequence

import pytest

from crm_etl.models import ENTITIES
from crm_etl.normalize import canonical_key
from crm_etl.shared import StoreError, UniqueViolationError

UNIQUE_COLUMNS = {spec.table: spec.lookup_field for spec in ENTITIES.values()}


class MemoryStore:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {t: [] for t in UNIQUE_COLUMNS}
        self.calls: list[tuple[str, str]] = []
        self.fail_insert_many: StoreError | None = None
        self.fail_lookup: StoreError | None = None
        self.fail_update_ids: set[str] = set()

    # -- helpers -------------------------------------------------------------

    def seed(self, table: str, *rows: Mapping[str, Any]) -> None:
        for row in rows:
            record = dict(row)
            record.setdefault("id", str(uuid.uuid4()))
            self.tables[table].append(record)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables[table]

    def by_lookup(self, table: str, value: str) -> dict[str, Any] | None:
        column = UNIQUE_COLUMNS[table]
        for row in self.tables[table]:
            if canonical_key(row.get(column)) == value:
                return row
        return None

    def _check_unique(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        column = UNIQUE_COLUMNS[table]
        ids = {r["id"] for r in self.tables[table]}
        keys = {
            canonical_key(r.get(column)) for r in self.tables[table]
        } - {None}
        for row in rows:
            rid = row.get("id")
            key = canonical_key(row.get(column))
            if rid is not None and rid in ids:
                raise UniqueViolationError(f"duplicate key value violates unique constraint \"{table}_pkey\"")
            if key is not None and key in keys:
                raise UniqueViolationError(f"duplicate key value violates unique constraint on {column}")
            if rid is not None:
                ids.add(rid)
            if key is not None:
                keys.add(key)

    def _materialize(self, row: Mapping[str, Any]) -> dict[str, Any]:
        record = copy.deepcopy(dict(row))
        if record.get("id") is None:
            record["id"] = str(uuid.uuid4())
        return record

    # -- Store protocol ------------------------------------------------------

    async def fetch_all(self, table: str) -> list[dict[str, Any]]:
        self.calls.append(("fetch_all", table))
        return copy.deepcopy(self.tables[table])

    async def fetch_by_values(self, table, column, values, columns=None):
        self.calls.append(("fetch_by_values", table))
        if self.fail_lookup is not None:
            raise self.fail_lookup
        wanted = set(values)
        found = [
            copy.deepcopy(r) for r in self.tables[table]
            if canonical_key(r.get(column)) in wanted
        ]
        if columns:
            found = [{c: r.get(c) for c in columns} for r in found]
        return found

    async def insert_many(self, table, rows):
        self.calls.append(("insert_many", table))
        if self.fail_insert_many is not None:
            raise self.fail_insert_many
        self._check_unique(table, rows)
        self.tables[table].extend(self._materialize(r) for r in rows)
        return len(rows)

    async def insert_one(self, table, row):
        self.calls.append(("insert_one", table))
        self._check_unique(table, [row])
        self.tables[table].append(self._materialize(row))

    async def update_by_id(self, table, row_id, values):
        self.calls.append(("update_by_id", table))
        if row_id in self.fail_update_ids:
            raise StoreError(f"simulated update failure for {row_id}")
        for row in self.tables[table]:
            if row["id"] == row_id:
                row.update(copy.deepcopy(dict(values)))
                return 1
        return 0

    def count(self, op: str, table: str | None = None) -> int:
        return sum(1 for o, t in self.calls if o == op and (table is None or t == table))


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
