"""
StockSettings schema.

Typed, frozen view of the YAML configuration file.  The loader parses the
file into these types; ``get_active_config()`` hands them to the runtime.
Nothing here reads files or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """SQLAlchemy engine settings.  Pool settings are ignored for SQLite."""

    url: str = "sqlite:///stock.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30


@dataclass(frozen=True)
class ErpSettings:
    """AutoCount bridge endpoint and credentials."""

    base_url: str = "http://localhost:8080"
    username: str = ""
    password: str = field(default="", repr=False)
    timeout_seconds: float = 10.0
    default_location: str = "HQ"


@dataclass(frozen=True)
class SyncSettings:
    """Worker pool and retry/backoff settings for the sync orchestrator."""

    max_workers: int = 4
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 3600.0
    max_consecutive_failures: int = 5
    poll_interval_seconds: float = 5.0
    batch_size: int = 50
    jitter: float = 0.0
    stale_after_seconds: float = 300.0


@dataclass(frozen=True)
class ReservationSettings:
    max_conflict_retries: int = 3


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockSettings:
    """Root configuration object returned by ``get_active_config()``."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    erp: ErpSettings = field(default_factory=ErpSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    reservations: ReservationSettings = field(default_factory=ReservationSettings)
    source: str | None = None  # path of the YAML file, None for defaults
