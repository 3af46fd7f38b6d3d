"""crm_etl.references

Foreign-key checks for child records (contact, jobsite, estimate).

sanitize_references repairs a record about to be written: a foreign key
that does not resolve to a known parent id is written as null, never
propagated as a constraint-violating write. validate_references is the
read-only dry-run check used by the comparison report.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from crm_etl.models import ACCOUNT, CONTACT, ESTIMATE, JOBSITE, EntitySpec, ImportBundle
from crm_etl.normalize import canonical_key
from crm_etl.shared import Finding

log = logging.getLogger(__name__)


def sanitize_references(
    record: Mapping[str, Any],
    entity: EntitySpec,
    known_ids: Mapping[str, set[str]],
) -> tuple[dict[str, Any], list[Finding]]:
    """Return a copy of record with unresolvable foreign keys set to None.

    Args:
        record: Candidate row shaped to the store's columns.
        entity: Entity the record belongs to.
        known_ids: Parent entity name -> identifiers known to exist.

    Returns:
        (sanitized_record, findings), with one dangling_reference finding per
        repaired field, carrying the original value.
    """
    clean = dict(record)
    findings: list[Finding] = []
    owner = entity.lookup_key(record) or "<no id>"

    for column, parent in entity.references.items():
        value = clean.get(column)
        key = canonical_key(value)
        if key is None:
            if column in clean:
                clean[column] = None
            continue
        if key in known_ids.get(parent, set()):
            continue
        clean[column] = None
        log.warning(
            "%s %s references non-existent %s %s, setting %s to null",
            entity.name, owner, parent, value, column,
        )
        findings.append(Finding(
            type="dangling_reference",
            message=(
                f"{entity.name.capitalize()} {owner} references non-existent "
                f"{parent} {value}, setting {column} to null"
            ),
            entity=entity.name,
            entity_id=owner,
            field=column,
            value=value,
        ))
    return clean, findings


def _reference_known(value: Any, ids: set[str]) -> bool:
    key = canonical_key(value)
    if key is None:
        return True
    if key in ids:
        return True
    # lmn-account-123 cites external id 123
    return key.rsplit("-", 1)[-1] in ids


def _row_ids(entity: EntitySpec, rows: list[dict[str, Any]]) -> set[str]:
    ids: set[str] = set()
    for row in rows:
        for value in (row.get(entity.lookup_field), row.get("id")):
            key = canonical_key(value)
            if key is not None:
                ids.add(key)
    return ids


def validate_references(
    imported: ImportBundle,
    known_ids: Mapping[str, set[str]] | None = None,
) -> tuple[list[Finding], list[Finding]]:
    """Check imported estimates and jobsites against the parent rows of the import.

    Parent ids default to those carried by the imported account and contact
    rows themselves.

    Returns:
        (errors, warnings). Estimates citing an account or contact outside
        the import are invalid_reference errors; jobsites citing an account
        outside the import are orphaned_jobsite warnings.
    """
    if known_ids is None:
        known_ids = {
            "account": _row_ids(ACCOUNT, imported.accounts),
            "contact": _row_ids(CONTACT, imported.contacts),
        }
    errors: list[Finding] = []
    warnings: list[Finding] = []

    for estimate in imported.estimates:
        owner = ESTIMATE.lookup_key(estimate) or "<no id>"
        for column, parent in ESTIMATE.references.items():
            value = estimate.get(column)
            if _reference_known(value, known_ids.get(parent, set())):
                continue
            errors.append(Finding(
                type="invalid_reference",
                message=f"Estimate {owner} references {parent} {value} which is not in import sheets",
                entity="estimate",
                entity_id=owner,
                field=column,
                value=value,
            ))

    for jobsite in imported.jobsites:
        owner = JOBSITE.lookup_key(jobsite) or "<no id>"
        value = jobsite.get("account_id")
        if _reference_known(value, known_ids.get("account", set())):
            continue
        warnings.append(Finding(
            type="orphaned_jobsite",
            message=f"Jobsite {owner} references account {value} which is not in import sheets",
            entity="jobsite",
            entity_id=owner,
            field="account_id",
            value=value,
        ))

    return errors, warnings
