"""
Configuration Loader (``stock_config.loader``).

Responsibility
--------------
Reads the YAML settings file and parses it into the typed
``stock_config.schema`` dataclasses, then validates the values.  Runtime
code calls ``stock_config.get_active_config()`` rather than this module.

Invariants enforced
-------------------
* Unknown sections or keys are rejected; a typo never silently falls back
  to a default.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``validate_settings`` reports every problem at once.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys, wrong types, out-of-range values  -> ``ConfigValidationError``.
"""

from __future__ import annotations

from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import (
    DatabaseSettings,
    ErpSettings,
    ReservationSettings,
    StockSettings,
    SyncSettings,
)


class ConfigValidationError(ValueError):
    """Configuration file or overrides failed validation.

    Attributes:
        errors: Every problem found, one message per entry.
    """

    def __init__(self, errors: list[str], source: str | None = None):
        self.errors = list(errors)
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(
            f"Configuration validation failed{where}:\n"
            + "\n".join(f"  - {e}" for e in self.errors)
        )


_SECTIONS: dict[str, type] = {
    "database": DatabaseSettings,
    "erp": ErpSettings,
    "sync": SyncSettings,
    "reservations": ReservationSettings,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _coerce(section: str, key: str, expected: type, value: Any, errors: list[str]) -> Any:
    if expected is bool:
        if isinstance(value, bool):
            return value
    elif expected is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif expected is float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif expected is str:
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    errors.append(f"{section}.{key}: expected {expected.__name__}, got {value!r}")
    return None


def _field_types(cls: type) -> dict[str, type]:
    # Annotations are strings under ``from __future__ import annotations``
    names = {"bool": bool, "int": int, "float": float, "str": str}
    return {f.name: names[str(f.type)] for f in fields(cls)}


def parse_section(section: str, data: Any, errors: list[str]):
    cls = _SECTIONS[section]
    if data is None:
        return cls()
    if not isinstance(data, dict):
        errors.append(f"{section}: expected a mapping, got {type(data).__name__}")
        return cls()

    types = _field_types(cls)
    values: dict[str, Any] = {}
    for key, raw in data.items():
        if key not in types:
            errors.append(f"{section}.{key}: unknown setting")
            continue
        value = _coerce(section, key, types[key], raw, errors)
        if value is not None:
            values[key] = value
    return cls(**values)


def parse_settings(data: dict[str, Any], source: str | None = None) -> StockSettings:
    """
    Parse a settings dict (as loaded from YAML).

    Raises:
        ConfigValidationError: On unknown sections/keys or wrong types.
    """
    errors: list[str] = []
    if not isinstance(data, dict):
        raise ConfigValidationError(["top level: expected a mapping"], source)

    for section in data:
        if section not in _SECTIONS:
            errors.append(f"{section}: unknown section")

    parsed = {name: parse_section(name, data.get(name), errors) for name in _SECTIONS}
    if errors:
        raise ConfigValidationError(errors, source)
    return StockSettings(source=source, **parsed)


def apply_env_overrides(settings: StockSettings, environ: dict[str, str]) -> StockSettings:
    """Apply the ``STOCK_*`` environment overrides for secrets and endpoints."""
    database, erp = settings.database, settings.erp
    if environ.get("STOCK_DATABASE_URL"):
        database = replace(database, url=environ["STOCK_DATABASE_URL"])
    erp_overrides = {
        "base_url": environ.get("STOCK_ERP_URL"),
        "username": environ.get("STOCK_ERP_USERNAME"),
        "password": environ.get("STOCK_ERP_PASSWORD"),
    }
    erp_overrides = {k: v for k, v in erp_overrides.items() if v}
    if erp_overrides:
        erp = replace(erp, **erp_overrides)
    return replace(settings, database=database, erp=erp)


def validate_settings(settings: StockSettings) -> list[str]:
    """Return a list of value errors; empty when the settings are usable."""
    errors: list[str] = []
    db, erp, sync = settings.database, settings.erp, settings.sync

    if not db.url:
        errors.append("database.url: must not be empty")
    if db.pool_size < 1:
        errors.append("database.pool_size: must be >= 1")
    if db.max_overflow < 0:
        errors.append("database.max_overflow: must be >= 0")

    if not erp.base_url.startswith(("http://", "https://")):
        errors.append(f"erp.base_url: not an http(s) URL: {erp.base_url!r}")
    if erp.timeout_seconds <= 0:
        errors.append("erp.timeout_seconds: must be positive")
    if not erp.default_location:
        errors.append("erp.default_location: must not be empty")

    if sync.max_workers < 1:
        errors.append("sync.max_workers: must be >= 1")
    if sync.batch_size < 1:
        errors.append("sync.batch_size: must be >= 1")
    if sync.base_delay_seconds <= 0:
        errors.append("sync.base_delay_seconds: must be positive")
    if sync.max_delay_seconds < sync.base_delay_seconds:
        errors.append("sync.max_delay_seconds: must be >= base_delay_seconds")
    if sync.max_consecutive_failures < 1:
        errors.append("sync.max_consecutive_failures: must be >= 1")
    if sync.poll_interval_seconds <= 0:
        errors.append("sync.poll_interval_seconds: must be positive")
    if not 0 <= sync.jitter < 1:
        errors.append("sync.jitter: must be in [0, 1)")
    if sync.stale_after_seconds <= 0:
        errors.append("sync.stale_after_seconds: must be positive")

    if settings.reservations.max_conflict_retries < 0:
        errors.append("reservations.max_conflict_retries: must be >= 0")
    return errors
