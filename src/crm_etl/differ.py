"""crm_etl.differ

Field-level comparison of imported records against existing store records.

Matching is by external identifier only. The internal id is used as the key
only when neither the imported record nor the existing record carries an
external id; names and addresses never decide identity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from crm_etl.identifiers import ValidIdSet
from crm_etl.models import EntitySpec, as_rows
from crm_etl.normalize import canonical_key, values_equal
from crm_etl.provenance import DEFAULT_RECENCY_DAYS, classify_provenance
from crm_etl.shared import Finding

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class EntityComparison:
    entity: str
    new: list[dict[str, Any]] = field(default_factory=list)
    updated: list[dict[str, Any]] = field(default_factory=list)
    unchanged: list[dict[str, Any]] = field(default_factory=list)
    orphaned: list[dict[str, Any]] = field(default_factory=list)
    differences: list[dict[str, Any]] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "new": len(self.new),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "orphaned": len(self.orphaned),
            "differences": len(self.differences),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "orphaned": self.orphaned,
            "differences": self.differences,
        }


# ---------------------------------------------------------------------------
# Field-level comparator
# ---------------------------------------------------------------------------

def find_differences(
    entity: EntitySpec,
    imported: Mapping[str, Any],
    existing: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """Return {field, imported, existing} for every allow-listed field that differs."""
    differences = []
    for name in entity.compare_fields:
        imported_value = imported.get(name)
        existing_value = existing.get(name)
        if not values_equal(imported_value, existing_value):
            differences.append({
                "field": name,
                "imported": imported_value,
                "existing": existing_value,
            })
    return differences


# ---------------------------------------------------------------------------
# Existing-record index
# ---------------------------------------------------------------------------

@dataclass
class ExistingIndex:
    by_external_id: dict[str, dict[str, Any]]
    by_internal_id: dict[str, dict[str, Any]]

    @classmethod
    def build(cls, entity: EntitySpec, rows: Iterable[Mapping[str, Any]]) -> ExistingIndex:
        by_ext: dict[str, dict[str, Any]] = {}
        by_int: dict[str, dict[str, Any]] = {}
        for row in rows:
            ext_id = entity.external_id(row)
            if ext_id is not None:
                by_ext.setdefault(ext_id, dict(row))
            else:
                rid = canonical_key(row.get("id"))
                if rid is not None:
                    by_int.setdefault(rid, dict(row))
        return cls(by_external_id=by_ext, by_internal_id=by_int)

    def match(self, entity: EntitySpec, imported: Mapping[str, Any]) -> dict[str, Any] | None:
        ext_id = entity.external_id(imported)
        if ext_id is not None:
            return self.by_external_id.get(ext_id)
        rid = canonical_key(imported.get("id"))
        if rid is None:
            return None
        return self.by_internal_id.get(rid)


# ---------------------------------------------------------------------------
# Forward pass: new / updated / unchanged
# ---------------------------------------------------------------------------

def compare_entity(
    entity: EntitySpec,
    imported_rows: Iterable[Any],
    existing_rows: Iterable[Any],
    warnings: list[Finding] | None = None,
) -> EntityComparison:
    """Partition imported records into new / updated / unchanged.

    A repeated lookup key within the imported collection keeps the first
    record; later ones are dropped and reported as duplicate_in_import.
    """
    result = EntityComparison(entity=entity.name)
    index = ExistingIndex.build(entity, as_rows(existing_rows))
    seen: set[str] = set()

    for imported in as_rows(imported_rows):
        key = entity.lookup_key(imported)
        if key is not None:
            if key in seen:
                log.warning("%s: duplicate %s %s in import dropped", entity.name, entity.lookup_field, key)
                if warnings is not None:
                    warnings.append(Finding(
                        type="duplicate_in_import",
                        message=(
                            f"{entity.name.capitalize()} {key} appears more than once in the "
                            "import; only the first occurrence is kept"
                        ),
                        entity=entity.name,
                        entity_id=key,
                        field=entity.lookup_field,
                        value=key,
                    ))
                continue
            seen.add(key)

        existing = index.match(entity, imported)
        if existing is None:
            result.new.append(imported)
            continue

        diffs = find_differences(entity, imported, existing)
        if diffs:
            result.updated.append({
                "record": imported,
                "existing": existing,
                "differences": diffs,
            })
            for diff in diffs:
                result.differences.append({"key": key, **diff})
        else:
            result.unchanged.append(imported)

    return result


# ---------------------------------------------------------------------------
# Reverse pass: orphans
# ---------------------------------------------------------------------------

def find_orphans(
    entity: EntitySpec,
    existing_rows: Iterable[Any],
    valid_ids: ValidIdSet,
    now: datetime | None = None,
    recency_days: int = DEFAULT_RECENCY_DAYS,
) -> tuple[list[dict[str, Any]], list[Finding]]:
    """Return store records no longer present in this import, with warnings.

    Only records carrying an external id are candidates; records without one
    are locally owned and never orphaned.
    """
    orphans: list[dict[str, Any]] = []
    findings: list[Finding] = []
    present = valid_ids.for_entity(entity)

    for row in as_rows(existing_rows):
        ext_id = entity.external_id(row)
        if ext_id is None or ext_id in present:
            continue
        provenance = classify_provenance(row, entity, now=now, recency_days=recency_days)
        orphans.append({
            **row,
            "_source": provenance.source.value,
            "_source_note": provenance.note,
        })
        findings.append(Finding(
            type=f"orphaned_{entity.name}",
            message=(
                f'{entity.name.capitalize()} "{entity.label(row)}" (ID: {ext_id}) '
                "exists in database but not in import sheets"
            ),
            entity=entity.name,
            entity_id=ext_id,
            source=provenance.source.value,
            note=provenance.note,
        ))

    if orphans:
        log.info("%s: %d orphaned record(s)", entity.name, len(orphans))
    return orphans, findings
