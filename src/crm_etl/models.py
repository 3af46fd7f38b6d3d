"""crm_etl.models

Entity definitions for the four import-managed tables and typed record
classes for callers that prefer them over plain mappings.

Every engine entry point works on plain ``dict`` rows shaped to the store's
column names; ``as_row`` converts a typed record (or any mapping) into one.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping

from crm_etl.normalize import canonical_key, normalize_space

# ---------------------------------------------------------------------------
# Entity definitions
# ---------------------------------------------------------------------------

ENTITY_ORDER = ("account", "contact", "jobsite", "estimate")


@dataclass(frozen=True)
class EntitySpec:
    """Store contract for one entity type."""

    name: str
    table: str
    lookup_field: str
    id_prefix: str
    compare_fields: tuple[str, ...]
    # foreign-key column -> parent entity name (values are parent internal ids)
    references: dict[str, str] = field(default_factory=dict)
    # column -> entity name (values are the parent's external ids)
    external_references: dict[str, str] = field(default_factory=dict)
    # records left with none of their references set are counted for review
    flag_unlinked: bool = False

    def external_id(self, row: Mapping[str, Any]) -> str | None:
        return canonical_key(row.get(self.lookup_field))

    def lookup_key(self, row: Mapping[str, Any]) -> str | None:
        """External id, falling back to the internal id."""
        return self.external_id(row) or canonical_key(row.get("id"))

    def deterministic_id(self, external_id: Any) -> str | None:
        key = canonical_key(external_id)
        return f"{self.id_prefix}{key}" if key else None

    def label(self, row: Mapping[str, Any]) -> str:
        """Human-readable name for warning messages."""
        if self.name == "contact":
            full = normalize_space(
                f"{row.get('first_name') or ''} {row.get('last_name') or ''}"
            )
            if full:
                return full
        elif self.name == "estimate":
            if row.get("estimate_number"):
                return str(row["estimate_number"])
        elif row.get("name"):
            return str(row["name"])
        return self.lookup_key(row) or "<no id>"


ACCOUNT = EntitySpec(
    name="account",
    table="accounts",
    lookup_field="lmn_crm_id",
    id_prefix="lmn-account-",
    compare_fields=(
        "name", "account_type", "status", "annual_revenue", "industry",
        "website", "phone", "address_1", "address_2", "city", "state",
        "postal_code", "country", "classification",
    ),
)

CONTACT = EntitySpec(
    name="contact",
    table="contacts",
    lookup_field="lmn_contact_id",
    id_prefix="lmn-contact-",
    compare_fields=(
        "first_name", "last_name", "email", "email_2", "phone", "phone_2",
        "title", "position", "address_1", "address_2", "city", "state",
        "postal_code", "country",
    ),
    references={"account_id": "account"},
)

JOBSITE = EntitySpec(
    name="jobsite",
    table="jobsites",
    lookup_field="lmn_jobsite_id",
    id_prefix="lmn-jobsite-",
    compare_fields=(
        "name", "address_1", "address_2", "city", "state",
        "postal_code", "country", "notes",
    ),
    references={"account_id": "account", "contact_id": "contact"},
    external_references={"lmn_contact_id": "contact"},
)

ESTIMATE = EntitySpec(
    name="estimate",
    table="estimates",
    lookup_field="lmn_estimate_id",
    id_prefix="lmn-estimate-",
    compare_fields=(
        "estimate_type", "estimate_date", "contract_start", "contract_end",
        "total_price", "total_price_with_tax", "status", "division",
        "project_name",
    ),
    references={"account_id": "account", "contact_id": "contact"},
    external_references={"lmn_contact_id": "contact"},
    flag_unlinked=True,
)

ENTITIES: dict[str, EntitySpec] = {
    spec.name: spec for spec in (ACCOUNT, CONTACT, JOBSITE, ESTIMATE)
}


def get_entity(name: str) -> EntitySpec:
    """Look up an entity by singular or plural name ('account' / 'accounts')."""
    key = name.strip().lower()
    if key in ENTITIES:
        return ENTITIES[key]
    for spec in ENTITIES.values():
        if spec.table == key:
            return spec
    raise KeyError(f"Unknown entity type {name!r}. Must be one of {list(ENTITIES)}.")


# ---------------------------------------------------------------------------
# Typed records
# ---------------------------------------------------------------------------

class _RecordMixin:
    extra: dict[str, Any]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        names = {f.name for f in dataclasses.fields(cls)} - {"extra"}
        known = {k: v for k, v in row.items() if k in names}
        extra = {k: v for k, v in row.items() if k not in names}
        return cls(**known, extra=extra)

    def to_row(self) -> dict[str, Any]:
        row = {
            f.name: getattr(self, f.name)
            for f in dataclasses.fields(self)
            if f.name != "extra" and getattr(self, f.name) is not None
        }
        row.update(self.extra)
        return row


@dataclass
class Account(_RecordMixin):
    id: str | None = None
    lmn_crm_id: str | None = None
    name: str | None = None
    account_type: str | None = None
    status: str | None = None
    annual_revenue: Decimal | float | None = None
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    address_1: str | None = None
    address_2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    classification: str | None = None
    created_at: datetime | str | None = None
    updated_at: datetime | str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Contact(_RecordMixin):
    id: str | None = None
    lmn_contact_id: str | None = None
    account_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    email_2: str | None = None
    phone: str | None = None
    phone_2: str | None = None
    title: str | None = None
    position: str | None = None
    address_1: str | None = None
    address_2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    created_at: datetime | str | None = None
    updated_at: datetime | str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Jobsite(_RecordMixin):
    id: str | None = None
    lmn_jobsite_id: str | None = None
    account_id: str | None = None
    contact_id: str | None = None
    lmn_contact_id: str | None = None
    name: str | None = None
    address_1: str | None = None
    address_2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    notes: str | None = None
    created_at: datetime | str | None = None
    updated_at: datetime | str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Estimate(_RecordMixin):
    id: str | None = None
    lmn_estimate_id: str | None = None
    estimate_number: str | None = None
    account_id: str | None = None
    contact_id: str | None = None
    lmn_contact_id: str | None = None
    estimate_type: str | None = None
    estimate_date: date | datetime | str | None = None
    contract_start: date | datetime | str | None = None
    contract_end: date | datetime | str | None = None
    total_price: Decimal | float | None = None
    total_price_with_tax: Decimal | float | None = None
    status: str | None = None
    division: str | None = None
    project_name: str | None = None
    created_at: datetime | str | None = None
    updated_at: datetime | str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def as_row(record: Any) -> dict[str, Any]:
    """Return a plain column → value dict for a typed record or mapping."""
    if isinstance(record, _RecordMixin):
        return record.to_row()
    return dict(record)


def as_rows(records: Iterable[Any] | None) -> list[dict[str, Any]]:
    return [as_row(r) for r in records or ()]


# ---------------------------------------------------------------------------
# ImportBundle
# ---------------------------------------------------------------------------

@dataclass
class ImportBundle:
    """The four entity collections of one import (or one store snapshot)."""

    accounts: list[dict[str, Any]] = field(default_factory=list)
    contacts: list[dict[str, Any]] = field(default_factory=list)
    estimates: list[dict[str, Any]] = field(default_factory=list)
    jobsites: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_collections(
        cls,
        accounts: Iterable[Any] | None = None,
        contacts: Iterable[Any] | None = None,
        estimates: Iterable[Any] | None = None,
        jobsites: Iterable[Any] | None = None,
    ) -> ImportBundle:
        return cls(
            accounts=as_rows(accounts),
            contacts=as_rows(contacts),
            estimates=as_rows(estimates),
            jobsites=as_rows(jobsites),
        )

    def rows_for(self, entity: EntitySpec) -> list[dict[str, Any]]:
        return getattr(self, entity.table)
