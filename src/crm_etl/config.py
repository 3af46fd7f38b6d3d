"""crm_etl.config

Engine configuration, passed explicitly to every entry point.

Loaded from YAML (see config/crm_etl.yml):

    batch_size: 100
    batch_size_overrides:
      estimate: 50
    lookup_fields:
      account: lmn_crm_id
    mock_recency_days: 30
    skip_unchanged_updates: true
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from crm_etl.models import ENTITIES, EntitySpec
from crm_etl.shared import ConfigValidationError

DEFAULT_BATCH_SIZE = 100

KNOWN_KEYS = frozenset({
    "batch_size",
    "batch_size_overrides",
    "lookup_fields",
    "mock_recency_days",
    "skip_unchanged_updates",
})


@dataclass
class EngineConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_size_overrides: dict[str, int] = field(default_factory=dict)
    lookup_fields: dict[str, str] = field(default_factory=dict)
    mock_recency_days: int = 30
    skip_unchanged_updates: bool = True

    def batch_size_for(self, entity: EntitySpec) -> int:
        return self.batch_size_overrides.get(entity.name, self.batch_size)

    def lookup_field_for(self, entity: EntitySpec) -> str:
        return self.lookup_fields.get(entity.name, entity.lookup_field)


def _positive_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigValidationError(f"'{key}' must be a positive integer, got {value!r}.")
    return value


def _entity_mapping(key: str, value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"'{key}' must be a mapping of entity type to value.")
    unknown = set(value) - set(ENTITIES)
    if unknown:
        raise ConfigValidationError(
            f"'{key}' has unknown entity types {sorted(unknown)}. "
            f"Must be one of {sorted(ENTITIES)}."
        )
    return dict(value)


def config_from_dict(data: dict[str, Any] | None) -> EngineConfig:
    """Validate a parsed YAML mapping and return an EngineConfig.

    Raises:
        ConfigValidationError: On unknown keys or invalid values.
    """
    if data is None:
        return EngineConfig()
    if not isinstance(data, dict):
        raise ConfigValidationError("Config root must be a mapping.")

    unknown_keys = set(data) - KNOWN_KEYS
    if unknown_keys:
        raise ConfigValidationError(f"Unknown config keys: {sorted(unknown_keys)}")

    cfg = EngineConfig()
    if "batch_size" in data:
        cfg.batch_size = _positive_int("batch_size", data["batch_size"])
    overrides = _entity_mapping("batch_size_overrides", data.get("batch_size_overrides"))
    cfg.batch_size_overrides = {
        name: _positive_int(f"batch_size_overrides.{name}", size)
        for name, size in overrides.items()
    }
    lookups = _entity_mapping("lookup_fields", data.get("lookup_fields"))
    for name, column in lookups.items():
        if not isinstance(column, str) or not column.strip():
            raise ConfigValidationError(
                f"'lookup_fields.{name}' must be a non-empty column name."
            )
    cfg.lookup_fields = {name: column.strip() for name, column in lookups.items()}
    if "mock_recency_days" in data:
        cfg.mock_recency_days = _positive_int("mock_recency_days", data["mock_recency_days"])
    if "skip_unchanged_updates" in data:
        if not isinstance(data["skip_unchanged_updates"], bool):
            raise ConfigValidationError("'skip_unchanged_updates' must be true or false.")
        cfg.skip_unchanged_updates = data["skip_unchanged_updates"]
    return cfg


def load_config(yaml_path: Path) -> EngineConfig:
    """Load, validate, and return an EngineConfig from a YAML file.

    Raises:
        ConfigValidationError: If any field is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    return config_from_dict(yaml.safe_load(raw))
