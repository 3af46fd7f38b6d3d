"""crm_etl.committer

Batched upsert of one entity type's candidate records.

For each batch (strictly in order):
  1. look up existing rows whose lookup-field value is in the batch
  2. drop records without a lookup value and repeated lookup values
     (first occurrence wins, a warning is kept for every drop)
  3. null out foreign keys that do not resolve to an existing parent row;
     estimates left with neither account nor contact are counted as unlinked
  4. partition into inserts and updates (unchanged rows are not rewritten)
  5. bulk insert; on a uniqueness violation fall back to one insert per
     record, counting only the ones that land
  6. issue all updates concurrently and wait for every one of them

Failure semantics:
  - a lookup failure propagates (the run aborts)
  - a bulk insert failing for any reason other than uniqueness raises
    BatchInsertError; earlier batches stay committed
  - per-record insert and update failures are counted and reported
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from crm_etl.config import EngineConfig
from crm_etl.models import ENTITIES, EntitySpec, as_rows
from crm_etl.normalize import canonical_key, same_stored_value
from crm_etl.references import sanitize_references
from crm_etl.shared import BatchInsertError, Finding, StoreError, UniqueViolationError
from crm_etl.store import Store

log = logging.getLogger(__name__)

# never rewritten on update: identity and store-managed creation time
_IMMUTABLE_ON_UPDATE = frozenset({"id", "created_at"})
_STORE_MANAGED = frozenset({"created_at", "updated_at"})


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class UpsertResult:
    entity: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    unlinked: int = 0
    total: int = 0
    batches: int = 0
    warnings: list[Finding] = field(default_factory=list)
    errors: list[Finding] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "total": self.total,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "failed": self.failed,
            "unlinked": self.unlinked,
            "batches": self.batches,
            "warnings": [w.to_dict() for w in self.warnings],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class _PendingUpdate:
    row_id: str
    key: str
    values: dict[str, Any]


# ---------------------------------------------------------------------------
# Batch preparation
# ---------------------------------------------------------------------------

def _chunks(rows: list[dict[str, Any]], size: int) -> Iterable[list[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def _dedupe_batch(
    entity: EntitySpec,
    batch: list[dict[str, Any]],
    lookup_field: str,
    result: UpsertResult,
) -> list[tuple[str, dict[str, Any]]]:
    """Return (lookup_key, record) pairs, first occurrence of each key only."""
    kept: list[tuple[str, dict[str, Any]]] = []
    seen: set[str] = set()
    for record in batch:
        key = canonical_key(record.get(lookup_field))
        if key is None:
            result.skipped += 1
            label = entity.label(record)
            log.warning("Skipping %s without %s: %s", entity.name, lookup_field, label)
            result.warnings.append(Finding(
                type="missing_lookup_value",
                message=f"Skipping {entity.name} without {lookup_field}: {label}",
                entity=entity.name,
                entity_id=canonical_key(record.get("id")),
                field=lookup_field,
            ))
            continue
        if key in seen:
            result.skipped += 1
            log.warning("Skipping duplicate %s in batch: %s", lookup_field, key)
            result.warnings.append(Finding(
                type="duplicate_in_batch",
                message=f"Skipping duplicate {lookup_field} in batch: {key}",
                entity=entity.name,
                entity_id=key,
                field=lookup_field,
                value=key,
            ))
            continue
        seen.add(key)
        kept.append((key, record))
    return kept


async def _known_parent_ids(
    store: Store,
    entity: EntitySpec,
    records: list[tuple[str, dict[str, Any]]],
) -> dict[str, set[str]]:
    """Ids of parent rows, cited by this batch, that exist in the store."""
    cited: dict[str, set[str]] = {}
    for _, record in records:
        for column, parent in entity.references.items():
            key = canonical_key(record.get(column))
            if key is not None:
                cited.setdefault(parent, set()).add(key)

    known: dict[str, set[str]] = {}
    for parent, ids in cited.items():
        rows = await store.fetch_by_values(
            ENTITIES[parent].table, "id", sorted(ids), columns=["id"]
        )
        known[parent] = {str(r["id"]) for r in rows}
    return known


def _update_values(
    entity: EntitySpec,
    record: Mapping[str, Any],
    existing: Mapping[str, Any],
    lookup_field: str,
) -> dict[str, Any]:
    immutable = _IMMUTABLE_ON_UPDATE | {lookup_field}
    # a stored external id is never replaced, whatever column the match used
    if entity.external_id(existing) is not None:
        immutable = immutable | {entity.lookup_field}
    return {k: v for k, v in record.items() if k not in immutable and k != "updated_at"}


def _is_unlinked(entity: EntitySpec, record: Mapping[str, Any]) -> bool:
    return all(canonical_key(record.get(column)) is None for column in entity.references)


def _is_unchanged(values: Mapping[str, Any], existing: Mapping[str, Any]) -> bool:
    return all(
        same_stored_value(value, existing.get(column))
        for column, value in values.items()
        if column not in _STORE_MANAGED
    )


# ---------------------------------------------------------------------------
# Write phases
# ---------------------------------------------------------------------------

async def _insert_batch(
    store: Store,
    entity: EntitySpec,
    to_insert: list[dict[str, Any]],
    lookup_field: str,
    batch_index: int,
    result: UpsertResult,
) -> None:
    if not to_insert:
        return
    try:
        await store.insert_many(entity.table, to_insert)
        result.created += len(to_insert)
        return
    except UniqueViolationError as exc:
        log.warning(
            "%s batch %d: unique constraint violation, retrying %d record(s) one by one: %s",
            entity.name, batch_index, len(to_insert), exc,
        )
    except StoreError as exc:
        log.error("%s batch %d: bulk insert error: %s", entity.name, batch_index, exc)
        raise BatchInsertError(entity.name, batch_index, result, exc) from exc

    for row in to_insert:
        key = canonical_key(row.get(lookup_field))
        try:
            await store.insert_one(entity.table, row)
            result.created += 1
        except UniqueViolationError as exc:
            result.skipped += 1
            result.warnings.append(Finding(
                type="insert_conflict",
                message=f"{entity.name.capitalize()} {key} already exists; insert skipped",
                entity=entity.name,
                entity_id=key,
                field=lookup_field,
                value=key,
                note=str(exc),
            ))
        except StoreError as exc:
            result.failed += 1
            log.error("%s %s: insert failed: %s", entity.name, key, exc)
            result.errors.append(Finding(
                type="insert_failed",
                message=f"{entity.name.capitalize()} {key} could not be inserted: {exc}",
                entity=entity.name,
                entity_id=key,
            ))


async def _apply_update(
    store: Store,
    entity: EntitySpec,
    pending: _PendingUpdate,
    result: UpsertResult,
) -> bool:
    try:
        count = await store.update_by_id(entity.table, pending.row_id, pending.values)
    except StoreError as exc:
        log.error("Bulk update error for %s %s: %s", entity.name, pending.row_id, exc)
        result.errors.append(Finding(
            type="update_failed",
            message=f"{entity.name.capitalize()} {pending.key} could not be updated: {exc}",
            entity=entity.name,
            entity_id=pending.key,
            value=pending.row_id,
        ))
        return False
    if count == 0:
        log.warning("%s %s: update matched no row (id=%s)", entity.name, pending.key, pending.row_id)
        result.errors.append(Finding(
            type="update_failed",
            message=f"{entity.name.capitalize()} {pending.key} was not found for update",
            entity=entity.name,
            entity_id=pending.key,
            value=pending.row_id,
        ))
        return False
    return True


async def _update_batch(
    store: Store,
    entity: EntitySpec,
    to_update: list[_PendingUpdate],
    result: UpsertResult,
) -> None:
    if not to_update:
        return
    outcomes = await asyncio.gather(
        *(_apply_update(store, entity, pending, result) for pending in to_update)
    )
    succeeded = sum(1 for ok in outcomes if ok)
    result.updated += succeeded
    result.failed += len(outcomes) - succeeded


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def bulk_upsert(
    store: Store,
    entity: EntitySpec,
    records: Iterable[Any],
    lookup_field: str | None = None,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> UpsertResult:
    """Insert or update records of one entity type, matched on lookup_field.

    Args:
        store: Target store.
        entity: Entity type of every record.
        records: Candidate rows (mappings or typed records) shaped to the
            store's columns.
        lookup_field: External-id column to match on; defaults to the
            config override or the entity's own lookup field.
        config: Engine settings; defaults to EngineConfig().
        now: Timestamp stamped on created_at/updated_at.

    Returns:
        UpsertResult with running totals across all batches.

    Raises:
        StoreError: If an existing-record lookup fails.
        BatchInsertError: If a bulk insert fails for a non-uniqueness reason.
    """
    cfg = config or EngineConfig()
    lookup = lookup_field or cfg.lookup_field_for(entity)
    batch_size = cfg.batch_size_for(entity)
    stamp = (now or datetime.now(timezone.utc)).isoformat()

    rows = as_rows(records)
    result = UpsertResult(entity=entity.name, total=len(rows))

    for batch_index, batch in enumerate(_chunks(rows, batch_size)):
        result.batches += 1
        lookup_values = sorted({
            key for key in (canonical_key(r.get(lookup)) for r in batch) if key is not None
        })
        existing_rows = await store.fetch_by_values(entity.table, lookup, lookup_values)
        existing_map = {
            canonical_key(row.get(lookup)): row for row in existing_rows
        }

        kept = _dedupe_batch(entity, batch, lookup, result)
        known = await _known_parent_ids(store, entity, kept)

        to_insert: list[dict[str, Any]] = []
        to_update: list[_PendingUpdate] = []
        for key, record in kept:
            clean, findings = sanitize_references(record, entity, known)
            result.warnings.extend(findings)
            if entity.flag_unlinked and _is_unlinked(entity, clean):
                result.unlinked += 1

            existing = existing_map.get(key)
            if existing is None:
                row = {k: v for k, v in clean.items() if k not in _STORE_MANAGED}
                if row.get("id") is None:
                    row.pop("id", None)
                    generated = entity.deterministic_id(entity.external_id(clean))
                    if generated is not None:
                        row["id"] = generated
                row["created_at"] = stamp
                row["updated_at"] = stamp
                to_insert.append(row)
                continue

            values = _update_values(entity, clean, existing, lookup)
            if cfg.skip_unchanged_updates and _is_unchanged(values, existing):
                result.unchanged += 1
                continue
            values["updated_at"] = stamp
            to_update.append(_PendingUpdate(row_id=str(existing["id"]), key=key, values=values))

        await _insert_batch(store, entity, to_insert, lookup, batch_index, result)
        await _update_batch(store, entity, to_update, result)
        log.info(
            "%s batch %d: %d inserted-or-skipped, %d update(s), running created=%d updated=%d",
            entity.name, batch_index, len(to_insert), len(to_update),
            result.created, result.updated,
        )

    if result.unlinked:
        names = " or ".join(entity.references)
        log.warning("%d %s(s) have no %s", result.unlinked, entity.name, names)
        result.warnings.append(Finding(
            type="unlinked_records",
            message=(
                f"{result.unlinked} {entity.name}(s) have no {names}: "
                "imported but flagged for review"
            ),
            entity=entity.name,
            value=result.unlinked,
        ))

    return result
