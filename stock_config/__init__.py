"""
stock_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Other components receive the returned
    ``StockSettings`` (or pieces of it) as arguments and never read files
    or environment variables themselves.

Architecture position:
    Configuration -- sits beside ``stock_kernel`` and ``stock_sync``.  The
    kernel MUST NEVER import from ``stock_config``; the CLI and the worker
    entrypoints translate settings into constructor arguments.

Resolution order:
    1. ``path`` argument, else the ``STOCK_CONFIG_FILE`` environment
       variable, else built-in defaults.
    2. ``STOCK_DATABASE_URL``, ``STOCK_ERP_URL``, ``STOCK_ERP_USERNAME`` and
       ``STOCK_ERP_PASSWORD`` override the file.
    3. Values are validated; every problem is reported in one
       ``ConfigValidationError``.

Audit relevance:
    Every successful call emits a ``stock_config_loaded`` log entry naming
    the source file and the effective (non-secret) settings.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from stock_config.loader import (
    ConfigValidationError,
    apply_env_overrides,
    load_yaml_file,
    parse_settings,
    validate_settings,
)
from stock_config.schema import (
    DatabaseSettings,
    ErpSettings,
    ReservationSettings,
    StockSettings,
    SyncSettings,
)

_logger = logging.getLogger("stock_kernel.config")

CONFIG_FILE_ENV = "STOCK_CONFIG_FILE"


def get_active_config(
    path: Path | str | None = None,
    environ: dict[str, str] | None = None,
) -> StockSettings:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML settings file.  Defaults to ``$STOCK_CONFIG_FILE``, and
            to built-in defaults when neither is set.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Frozen ``StockSettings``.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ConfigValidationError: If keys are unknown or values are invalid.
    """
    env = dict(os.environ) if environ is None else environ
    resolved = path or env.get(CONFIG_FILE_ENV)

    if resolved:
        source = str(resolved)
        settings = parse_settings(load_yaml_file(Path(resolved)), source=source)
    else:
        source = None
        settings = StockSettings()

    settings = apply_env_overrides(settings, env)
    errors = validate_settings(settings)
    if errors:
        raise ConfigValidationError(errors, source)

    _logger.info(
        "stock_config_loaded",
        extra={
            "source": source or "<defaults>",
            "database_dialect": settings.database.url.split(":", 1)[0],
            "erp_base_url": settings.erp.base_url,
            "sync_max_workers": settings.sync.max_workers,
            "sync_max_consecutive_failures": settings.sync.max_consecutive_failures,
        },
    )
    return settings


__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "ErpSettings",
    "ReservationSettings",
    "StockSettings",
    "SyncSettings",
    "get_active_config",
]
