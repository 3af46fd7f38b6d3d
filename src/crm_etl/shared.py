"""crm_etl.shared

Shared types used across the reconciliation engine: exceptions, the
Finding record used for warnings/errors in every report, and the JSON
run-report writer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Raised by a store when a read or write fails."""


class UniqueViolationError(StoreError):
    """Raised when a write is rejected by a uniqueness constraint."""


class BatchInsertError(Exception):
    """Raised when a bulk insert fails for a reason other than uniqueness.

    Batches before ``batch_index`` are already committed; ``partial`` holds
    the running totals at the moment of failure.
    """

    def __init__(self, entity: str, batch_index: int, partial: Any, cause: Exception) -> None:
        super().__init__(
            f"{entity}: bulk insert failed in batch {batch_index}: {cause}"
        )
        self.entity = entity
        self.batch_index = batch_index
        self.partial = partial
        self.cause = cause


class ConfigValidationError(ValueError):
    """Raised when an engine config file fails validation."""


# ---------------------------------------------------------------------------
# Finding
# ---------------------------------------------------------------------------

@dataclass
class Finding:
    """One warning or error attached to a comparison or commit report."""

    type: str
    message: str
    entity: str | None = None
    entity_id: str | None = None
    field: str | None = None
    value: Any = None
    source: str | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    body: dict[str, Any],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        **body,
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
