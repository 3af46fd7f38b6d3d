"""crm_etl.provenance

Infers where an orphaned store record came from. Used for orphan
reporting only; never drives a write.

Rules are evaluated top to bottom; the first one that returns a
Provenance wins:
  1. previous_import: the record carries an external id
  2. possibly_mock:   UUID-shaped internal id, created within the recency window
  3. unknown:         UUID-shaped internal id, older (or no created_at)
  4. unknown:         anything else
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from crm_etl.models import EntitySpec, get_entity
from crm_etl.normalize import parse_timestamp

DEFAULT_RECENCY_DAYS = 30

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_ENTITY_LABELS = {
    "account": "Account ID",
    "contact": "Contact ID",
    "estimate": "Estimate ID",
    "jobsite": "Jobsite ID",
}


class ProvenanceSource(str, Enum):
    PREVIOUS_IMPORT = "previous_import"
    POSSIBLY_MOCK = "possibly_mock"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Provenance:
    source: ProvenanceSource
    note: str

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source.value, "note": self.note}


@dataclass(frozen=True)
class _Context:
    record: Mapping[str, Any]
    entity: EntitySpec
    now: datetime
    recency_days: int

    @property
    def is_uuid(self) -> bool:
        rid = self.record.get("id")
        return isinstance(rid, str) and bool(_UUID_RE.match(rid.strip()))

    @property
    def age_days(self) -> float | None:
        created = parse_timestamp(self.record.get("created_at"))
        if created is None:
            return None
        return (self.now - created).total_seconds() / 86400.0


def _previous_import(ctx: _Context) -> Provenance | None:
    ext_id = ctx.entity.external_id(ctx.record)
    if ext_id is None:
        return None
    origin = "LMN"
    if ctx.entity.name == "estimate" and ctx.record.get("source") == "lmn_estimates_list":
        origin = "LMN Estimates List"
    return Provenance(
        ProvenanceSource.PREVIOUS_IMPORT,
        f"Imported from {origin} ({_ENTITY_LABELS[ctx.entity.name]}: {ext_id}). "
        "This record was created during a previous import but is no longer "
        "present in the current import sheets.",
    )


def _recent_uuid(ctx: _Context) -> Provenance | None:
    if not ctx.is_uuid:
        return None
    age = ctx.age_days
    if age is None or age >= ctx.recency_days:
        return None
    return Provenance(
        ProvenanceSource.POSSIBLY_MOCK,
        f"This record has a UUID ID and was created recently ({round(age)} days ago). "
        "It may be test/mock data added during development.",
    )


def _old_uuid(ctx: _Context) -> Provenance | None:
    if not ctx.is_uuid:
        return None
    return Provenance(
        ProvenanceSource.UNKNOWN,
        "This record has a UUID ID format. It may have been created manually or "
        "through a previous system version. Source cannot be definitively determined.",
    )


def _fallback(ctx: _Context) -> Provenance:
    return Provenance(
        ProvenanceSource.UNKNOWN,
        "Unable to determine the source of this record. It may have been created "
        "manually or through a previous system version.",
    )


PROVENANCE_RULES: tuple[Callable[[_Context], Provenance | None], ...] = (
    _previous_import,
    _recent_uuid,
    _old_uuid,
    _fallback,
)


def classify_provenance(
    record: Mapping[str, Any],
    entity: EntitySpec | str,
    now: datetime | None = None,
    recency_days: int = DEFAULT_RECENCY_DAYS,
) -> Provenance:
    """Return the inferred provenance of a store record. Never raises."""
    spec = get_entity(entity) if isinstance(entity, str) else entity
    ctx = _Context(
        record=record,
        entity=spec,
        now=parse_timestamp(now) or datetime.now(timezone.utc),
        recency_days=recency_days,
    )
    for rule in PROVENANCE_RULES:
        result = rule(ctx)
        if result is not None:
            return result
    return _fallback(ctx)
