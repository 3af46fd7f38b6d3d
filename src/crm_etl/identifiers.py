"""crm_etl.identifiers

Builds the per-entity sets of identifiers that count as "present" in one
import run. An account cited only by an estimate's account_id is still
present for that run; orphan detection relies on this.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from crm_etl.models import ACCOUNT, CONTACT, ENTITIES, ESTIMATE, JOBSITE, EntitySpec, as_rows
from crm_etl.normalize import canonical_key


@dataclass
class ValidIdSet:
    account_ids: set[str] = field(default_factory=set)
    contact_ids: set[str] = field(default_factory=set)
    estimate_ids: set[str] = field(default_factory=set)
    jobsite_ids: set[str] = field(default_factory=set)

    def for_entity(self, entity: EntitySpec | str) -> set[str]:
        name = entity if isinstance(entity, str) else entity.name
        return getattr(self, f"{name}_ids")

    def contains(self, entity: EntitySpec | str, value: Any) -> bool:
        key = canonical_key(value)
        return key is not None and key in self.for_entity(entity)

    def to_dict(self) -> dict[str, int]:
        return {f"{name}_ids": len(self.for_entity(name)) for name in ENTITIES}


def _add(target: set[str], value: Any) -> None:
    key = canonical_key(value)
    if key is not None:
        target.add(key)


def _collect(
    ids: ValidIdSet,
    entity: EntitySpec,
    rows: Iterable[Mapping[str, Any]],
    follow_references: bool = True,
) -> None:
    own = ids.for_entity(entity)
    for row in rows:
        _add(own, row.get(entity.lookup_field))
        _add(own, row.get("id"))
        if not follow_references:
            continue
        for column, parent in entity.references.items():
            _add(ids.for_entity(parent), row.get(column))
        for column, parent in entity.external_references.items():
            _add(ids.for_entity(parent), row.get(column))


def extract_valid_ids(
    accounts: Iterable[Any] | None = None,
    contacts: Iterable[Any] | None = None,
    estimates: Iterable[Any] | None = None,
    jobsites: Iterable[Any] | None = None,
) -> ValidIdSet:
    """Return the identifiers present in one import run.

    Each record contributes its external id and its internal id to its own
    type's set. Estimates and jobsites also contribute their account_id,
    contact_id and lmn_contact_id to the account/contact sets. Contacts do
    not contribute their account_id: the import-row set for accounts comes
    from the account export and the child entities that cite them.
    """
    ids = ValidIdSet()
    _collect(ids, ACCOUNT, as_rows(accounts))
    _collect(ids, CONTACT, as_rows(contacts), follow_references=False)
    _collect(ids, ESTIMATE, as_rows(estimates))
    _collect(ids, JOBSITE, as_rows(jobsites))
    return ids
