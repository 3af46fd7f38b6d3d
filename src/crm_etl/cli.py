"""crm_etl.cli

Command-line entry point for the LMN re-import.

Modes:
  compare      classify imported records against the store (or a JSON
               snapshot given by --existing-dir); writes nothing
  bulk_upsert  upsert one entity type's collection (--entity-type)
  import       compare, then commit all four collections in dependency order

Input is a directory of JSON arrays: accounts.json, contacts.json,
estimates.json, jobsites.json. A missing file is an empty collection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click

from crm_etl.committer import bulk_upsert
from crm_etl.config import EngineConfig, load_config
from crm_etl.models import ENTITIES, ENTITY_ORDER, ImportBundle, get_entity
from crm_etl.orchestrator import (
    build_commit_report_text,
    build_comparison_report_text,
    commit_import,
    compare_import,
    load_existing_snapshot,
)
from crm_etl.shared import BatchInsertError, ConfigValidationError, StoreError, write_run_report
from crm_etl.store import open_pg_store

# ---------------------------------------------------------------------------
# Input loading
# ---------------------------------------------------------------------------

def _load_collection(directory: Path, table: str, run_id: str) -> list[dict[str, Any]]:
    path = directory / f"{table}.json"
    if not path.exists():
        click.echo(f"[{run_id}] {path.name} not found; treating {table} as empty")
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise ValueError(f"{path} must contain a JSON array of objects")
    return data


def load_bundle(directory: Path, run_id: str) -> ImportBundle:
    """Read the four JSON collections under directory."""
    tables = {
        ENTITIES[name].table: _load_collection(directory, ENTITIES[name].table, run_id)
        for name in ENTITY_ORDER
    }
    return ImportBundle(**tables)


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

async def _run_compare(
    imported: ImportBundle,
    existing_dir: str | None,
    db_dsn: str | None,
    cfg: EngineConfig,
    run_id: str,
) -> dict[str, Any]:
    if existing_dir:
        existing = load_bundle(Path(existing_dir), run_id)
    else:
        async with open_pg_store(db_dsn) as store:
            existing = await load_existing_snapshot(store)
    report = compare_import(imported, existing, cfg)
    click.echo(build_comparison_report_text(report, dry_run=True))
    return {"comparison": report.to_dict()}


async def _run_bulk_upsert(
    imported: ImportBundle,
    entity_type: str,
    lookup_field: str | None,
    db_dsn: str,
    cfg: EngineConfig,
    run_id: str,
) -> tuple[dict[str, Any], int]:
    entity = get_entity(entity_type)
    rows = imported.rows_for(entity)
    click.echo(f"[{run_id}] Upserting {len(rows)} {entity.table}...")
    async with open_pg_store(db_dsn) as store:
        result = await bulk_upsert(store, entity, rows, lookup_field=lookup_field, config=cfg)
    click.echo(
        f"[{run_id}] Done: created={result.created} updated={result.updated} "
        f"unchanged={result.unchanged} skipped={result.skipped} failed={result.failed}"
    )
    for warning in result.warnings:
        click.echo(f"[{run_id}] WARNING [{warning.type}] {warning.message}")
    return {"results": {entity.name: result.to_dict()}}, result.failed


async def _run_import(
    imported: ImportBundle,
    db_dsn: str,
    cfg: EngineConfig,
    dry_run: bool,
    run_id: str,
) -> tuple[dict[str, Any], int]:
    async with open_pg_store(db_dsn) as store:
        existing = await load_existing_snapshot(store)
        comparison = compare_import(imported, existing, cfg)
        click.echo(build_comparison_report_text(comparison, dry_run=dry_run))
        body: dict[str, Any] = {"comparison": comparison.to_dict()}
        if dry_run:
            click.echo(f"[{run_id}] [dry-run] No changes written.")
            return body, 0
        commit = await commit_import(store, imported, cfg)
    click.echo(build_commit_report_text(commit))
    body["commit"] = commit.to_dict()
    return body, commit.failed


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="compare",
    type=click.Choice(["compare", "bulk_upsert", "import"]),
    show_default=True,
    help="Run mode",
)
@click.option("--import-dir", required=True, type=click.Path(), help="Directory of imported JSON collections")
@click.option("--existing-dir", default=None, type=click.Path(), help="[compare] JSON snapshot of existing records instead of the database")
@click.option("--db-dsn", default=None, help="PostgreSQL DSN")
@click.option("--config", "config_path", default=None, type=click.Path(), help="Path to YAML engine config")
@click.option(
    "--entity-type",
    default=None,
    type=click.Choice(list(ENTITIES)),
    help="[bulk_upsert] Entity type to upsert",
)
@click.option("--lookup-field", default=None, help="[bulk_upsert] Override the external-id lookup column")
@click.option("--dry-run", is_flag=True, default=False, help="[import] Compare only; write nothing")
@click.option("--run-id", default=None, help="Run identifier (default: generated)")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
@click.option(
    "--reports-dir",
    default="./artifacts/reports",
    type=click.Path(),
    show_default=True,
    help="Directory for the JSON run report",
)
def main(
    mode: str,
    import_dir: str,
    existing_dir: str | None,
    db_dsn: str | None,
    config_path: str | None,
    entity_type: str | None,
    lookup_field: str | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
    reports_dir: str,
) -> None:
    """LMN re-import: compare and upsert accounts, contacts, jobsites, estimates."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "bulk_upsert" and not entity_type:
        _fatal(run_id, "--entity-type is required for bulk_upsert")
    if not db_dsn and not (mode == "compare" and existing_dir):
        _fatal(run_id, "--db-dsn is required unless comparing against --existing-dir")

    try:
        cfg = load_config(Path(config_path)) if config_path else EngineConfig()
    except (ConfigValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"config error: {exc}")

    import_path = Path(import_dir)
    if not import_path.is_dir():
        _fatal(run_id, f"import directory not found: {import_path}")
    try:
        imported = load_bundle(import_path, run_id)
    except (ValueError, OSError) as exc:
        _fatal(run_id, f"could not read import: {exc}")

    click.echo(
        f"[{run_id}] Loaded "
        + " ".join(f"{t}={len(getattr(imported, t))}" for t in ("accounts", "contacts", "jobsites", "estimates"))
    )

    failed = 0
    try:
        if mode == "compare":
            body = asyncio.run(_run_compare(imported, existing_dir, db_dsn, cfg, run_id))
        elif mode == "bulk_upsert":
            if dry_run:
                click.echo(f"[{run_id}] [dry-run] bulk_upsert writes only; use --mode compare to preview.")
                return
            body, failed = asyncio.run(
                _run_bulk_upsert(imported, entity_type, lookup_field, db_dsn, cfg, run_id)
            )
        else:
            body, failed = asyncio.run(_run_import(imported, db_dsn, cfg, dry_run, run_id))
    except BatchInsertError as exc:
        write_run_report(
            run_id, started_at, mode, dry_run,
            {"import_dir": import_dir},
            {"fatal": str(exc), "partial": exc.partial.to_dict()},
            reports_dir=Path(reports_dir),
        )
        _fatal(run_id, str(exc))
    except StoreError as exc:
        _fatal(run_id, f"store error: {exc}")
    except ValueError as exc:
        _fatal(run_id, f"could not read existing snapshot: {exc}")

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"import_dir": import_dir, "existing_dir": existing_dir},
        body,
        reports_dir=Path(reports_dir),
    )
    click.echo(f"[{run_id}] Report written to {report_path}")

    if failed:
        _fatal(run_id, f"{failed} record(s) failed to write")
