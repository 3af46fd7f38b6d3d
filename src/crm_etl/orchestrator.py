"""crm_etl.orchestrator

Runs the engine over one complete import.

compare_import (read-only):
  1. extract the ValidIdSet from the imported collections
  2. forward pass per entity: new / updated / unchanged
  3. reverse pass per entity: orphans with provenance
  4. reference validation of estimates and jobsites
  5. aggregate warnings, errors and summary counts

commit_import (writes):
  bulk_upsert per entity in dependency order, accounts first, so that
  child foreign keys resolve against parents written earlier in the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from crm_etl.committer import UpsertResult, bulk_upsert
from crm_etl.config import EngineConfig
from crm_etl.differ import EntityComparison, compare_entity, find_orphans
from crm_etl.identifiers import ValidIdSet, extract_valid_ids
from crm_etl.models import ENTITIES, ENTITY_ORDER, ImportBundle
from crm_etl.references import validate_references
from crm_etl.shared import Finding
from crm_etl.store import Store

log = logging.getLogger(__name__)

_REPORT_WIDTH = 60
_MAX_LISTED = 20


# ---------------------------------------------------------------------------
# Report dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ComparisonReport:
    valid_ids: ValidIdSet
    entities: dict[str, EntityComparison] = field(default_factory=dict)
    warnings: list[Finding] = field(default_factory=list)
    errors: list[Finding] = field(default_factory=list)

    def summary(self) -> dict[str, dict[str, int]]:
        return {name: comparison.counts() for name, comparison in self.entities.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "valid_ids": self.valid_ids.to_dict(),
            "comparisons": {name: c.to_dict() for name, c in self.entities.items()},
            "warnings": [w.to_dict() for w in self.warnings],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class CommitReport:
    results: dict[str, UpsertResult] = field(default_factory=dict)

    @property
    def warnings(self) -> list[Finding]:
        return [w for r in self.results.values() for w in r.warnings]

    @property
    def errors(self) -> list[Finding]:
        return [e for r in self.results.values() for e in r.errors]

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.results.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": {name: r.to_dict() for name, r in self.results.items()},
            "warning_count": len(self.warnings),
            "error_count": len(self.errors),
        }


# ---------------------------------------------------------------------------
# Compare
# ---------------------------------------------------------------------------

def compare_import(
    imported: ImportBundle,
    existing: ImportBundle,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> ComparisonReport:
    """Classify every imported record and find orphans; writes nothing."""
    cfg = config or EngineConfig()
    valid_ids = extract_valid_ids(
        accounts=imported.accounts,
        contacts=imported.contacts,
        estimates=imported.estimates,
        jobsites=imported.jobsites,
    )
    log.info("valid ids: %s", valid_ids.to_dict())

    report = ComparisonReport(valid_ids=valid_ids)
    for name in ENTITY_ORDER:
        entity = ENTITIES[name]
        comparison = compare_entity(
            entity,
            imported.rows_for(entity),
            existing.rows_for(entity),
            warnings=report.warnings,
        )
        orphans, orphan_findings = find_orphans(
            entity,
            existing.rows_for(entity),
            valid_ids,
            now=now,
            recency_days=cfg.mock_recency_days,
        )
        comparison.orphaned = orphans
        report.warnings.extend(orphan_findings)
        report.entities[name] = comparison
        log.info("%s: %s", name, comparison.counts())

    errors, warnings = validate_references(imported)
    report.errors.extend(errors)
    report.warnings.extend(warnings)
    return report


# ---------------------------------------------------------------------------
# Store snapshot + commit
# ---------------------------------------------------------------------------

async def load_existing_snapshot(store: Store) -> ImportBundle:
    """Read every import-managed table. Store failures propagate."""
    tables: dict[str, list[dict[str, Any]]] = {}
    for name in ENTITY_ORDER:
        entity = ENTITIES[name]
        tables[entity.table] = await store.fetch_all(entity.table)
        log.info("loaded %d existing %s", len(tables[entity.table]), entity.table)
    return ImportBundle(**tables)


async def commit_import(
    store: Store,
    imported: ImportBundle,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> CommitReport:
    """Upsert every imported collection, parents before children.

    A BatchInsertError from any entity propagates; entities committed before
    it stay committed.
    """
    report = CommitReport()
    for name in ENTITY_ORDER:
        entity = ENTITIES[name]
        rows = imported.rows_for(entity)
        if not rows:
            report.results[name] = UpsertResult(entity=name)
            continue
        report.results[name] = await bulk_upsert(
            store, entity, rows, config=config, now=now
        )
    return report


# ---------------------------------------------------------------------------
# Text reports
# ---------------------------------------------------------------------------

def _finding_lines(title: str, findings: list[Finding]) -> list[str]:
    if not findings:
        return []
    lines = [f"\n{title} ({len(findings)}):"]
    for finding in findings[:_MAX_LISTED]:
        lines.append(f"  [{finding.type}] {finding.message}")
    if len(findings) > _MAX_LISTED:
        lines.append(f"  ... and {len(findings) - _MAX_LISTED} more")
    return lines


def build_comparison_report_text(report: ComparisonReport, dry_run: bool = True) -> str:
    lines = [
        "=" * _REPORT_WIDTH,
        "LMN Import Comparison Report",
        f"  dry_run: {dry_run}",
        "=" * _REPORT_WIDTH,
    ]
    for name, comparison in report.entities.items():
        counts = comparison.counts()
        lines.append(
            f"  {ENTITIES[name].table:<10} new={counts['new']:<6} "
            f"updated={counts['updated']:<6} unchanged={counts['unchanged']:<6} "
            f"orphaned={counts['orphaned']}"
        )
    ids = report.valid_ids.to_dict()
    lines.append(
        "  valid ids:  " + " ".join(f"{k}={v}" for k, v in ids.items())
    )
    lines.extend(_finding_lines("Errors", report.errors))
    lines.extend(_finding_lines("Warnings", report.warnings))
    lines.append("=" * _REPORT_WIDTH)
    return "\n".join(lines)


def build_commit_report_text(report: CommitReport, dry_run: bool = False) -> str:
    lines = [
        "=" * _REPORT_WIDTH,
        "LMN Import Commit Report",
        f"  dry_run: {dry_run}",
        "=" * _REPORT_WIDTH,
    ]
    for name, result in report.results.items():
        lines.append(
            f"  {ENTITIES[name].table:<10} created={result.created:<6} "
            f"updated={result.updated:<6} unchanged={result.unchanged:<6} "
            f"skipped={result.skipped:<6} failed={result.failed:<6} "
            f"unlinked={result.unlinked}"
        )
    lines.extend(_finding_lines("Errors", report.errors))
    lines.extend(_finding_lines("Warnings", report.warnings))
    lines.append("=" * _REPORT_WIDTH)
    return "\n".join(lines)
