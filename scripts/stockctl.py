#!/usr/bin/env python3
"""
Operator console for the stock ledger and its ERP sync log.

Usage:
    python3 scripts/stockctl.py [--config stock.yaml] <command> [options]

Commands:
    init-db                 Create the schema (idempotent).
    sync-status             Counts by sync status and the latest failures.
    retry <sync_log_id>     Retry one entry now (no-op if it already has an ERP document).
    retry-failed            Retry every failed entry whose backoff has elapsed.
    run-worker              Run the sync dispatcher until interrupted.
    verify-ledger           Compare every item's counter with its ledger sum.

Examples:
    # First deployment
    STOCK_DATABASE_URL=sqlite:///stock.db python3 scripts/stockctl.py init-db

    # Inspect and nudge the sync log
    python3 scripts/stockctl.py --config stock.yaml sync-status --limit 20
    python3 scripts/stockctl.py --config stock.yaml retry 6f1c0e0c-...

Exit codes:
    0 success, 1 operation failed or ledger mismatch, 2 usage/config error.
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from collections.abc import Sequence
from pathlib import Path
from uuid import UUID


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stock ledger operator console.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML settings file (default: $STOCK_CONFIG_FILE, then built-in defaults)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables")

    status = sub.add_parser("sync-status", help="Show sync log counts and failures")
    status.add_argument("--limit", type=int, default=10, help="Failures to list")

    retry = sub.add_parser("retry", help="Retry one sync log entry")
    retry.add_argument("sync_log_id", type=UUID)

    retry_failed = sub.add_parser("retry-failed", help="Retry all due failed entries")
    retry_failed.add_argument("--limit", type=int, default=100)

    worker = sub.add_parser("run-worker", help="Run the sync worker pool")
    worker.add_argument(
        "--once",
        action="store_true",
        help="Process one pass of due entries and exit",
    )

    sub.add_parser("verify-ledger", help="Check counters against the ledger")
    return parser.parse_args(argv)


def _build_orchestrator(settings, session_factory):
    from stock_sync.erp_gateway import HttpErpGateway
    from stock_sync.orchestrator import SyncOrchestrator
    from stock_sync.retry_policy import RetryPolicy

    gateway = HttpErpGateway(
        settings.erp.base_url,
        settings.erp.username,
        settings.erp.password,
        timeout_seconds=settings.erp.timeout_seconds,
    )
    policy = RetryPolicy(
        base_delay_seconds=settings.sync.base_delay_seconds,
        max_delay_seconds=settings.sync.max_delay_seconds,
        max_consecutive_failures=settings.sync.max_consecutive_failures,
        jitter=settings.sync.jitter,
    )
    return SyncOrchestrator(
        session_factory,
        gateway,
        policy,
        max_workers=settings.sync.max_workers,
        batch_size=settings.sync.batch_size,
        poll_interval_seconds=settings.sync.poll_interval_seconds,
        stale_after_seconds=settings.sync.stale_after_seconds,
    )


def _print_summary(summary) -> None:
    print(
        f"  attempted={summary.attempted} succeeded={summary.succeeded} "
        f"failed={summary.failed} permanently_failed={summary.permanently_failed}"
    )


def _cmd_init_db(args, settings, kernel) -> int:
    from stock_kernel.db.engine import create_tables

    create_tables()
    print(f"Schema ready at {settings.database.url.split('@')[-1]}")
    return 0


def _cmd_sync_status(args, settings, kernel) -> int:
    counts = kernel.sync_counts()
    print("Sync log:")
    for status in sorted(counts):
        print(f"  {status:<20} {counts[status]}")
    failures = kernel.failed_syncs(limit=args.limit)
    if failures:
        print(f"Latest failures (up to {args.limit}):")
        for entry in failures:
            retry_at = entry.next_retry_at.isoformat() if entry.next_retry_at else "-"
            print(
                f"  {entry.id}  {entry.sync_type:<20} {entry.sync_status:<18} "
                f"retries={entry.retry_count} next={retry_at}  {entry.error_message or ''}"
            )
    return 0


def _cmd_retry(args, settings, kernel) -> int:
    from stock_kernel.domain.enums import SyncStatus
    from stock_kernel.exceptions import SyncLogNotFoundError

    orchestrator = _build_orchestrator(settings, kernel.session_factory)
    try:
        record = orchestrator.retry(args.sync_log_id)
    except SyncLogNotFoundError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    print(f"{record.id}: {record.sync_status} erp_doc_no={record.erp_doc_no or '-'}")
    if record.error_message and record.sync_status != SyncStatus.SUCCESS.value:
        print(f"  error: {record.error_message}")
    return 0 if record.sync_status == SyncStatus.SUCCESS.value else 1


def _cmd_retry_failed(args, settings, kernel) -> int:
    orchestrator = _build_orchestrator(settings, kernel.session_factory)
    summary = orchestrator.retry_all_failed(limit=args.limit)
    print("Retried failed sync entries:")
    _print_summary(summary)
    return 0 if summary.failed == 0 and summary.permanently_failed == 0 else 1


def _cmd_run_worker(args, settings, kernel) -> int:
    orchestrator = _build_orchestrator(settings, kernel.session_factory)
    if args.once:
        summary = orchestrator.process_due()
        print("Processed due sync entries:")
        _print_summary(summary)
        return 0

    stopped = threading.Event()

    def _handle_signal(signum, frame):
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    orchestrator.start()
    print(
        f"Sync worker running ({settings.sync.max_workers} workers, "
        f"poll every {settings.sync.poll_interval_seconds}s). Ctrl-C to stop."
    )
    try:
        stopped.wait()
    finally:
        orchestrator.stop()
    print("Sync worker stopped.")
    return 0


def _cmd_verify_ledger(args, settings, kernel) -> int:
    checks = kernel.check_ledger()
    mismatches = [c for c in checks if not c.consistent]
    print(f"Checked {len(checks)} item(s); {len(mismatches)} mismatch(es).")
    for check in mismatches:
        print(
            f"  {check.sku} ({check.item_id}): counter={check.stock_quantity} "
            f"ledger={check.ledger_sum}"
        )
    return 1 if mismatches else 0


_COMMANDS = {
    "init-db": _cmd_init_db,
    "sync-status": _cmd_sync_status,
    "retry": _cmd_retry,
    "retry-failed": _cmd_retry_failed,
    "run-worker": _cmd_run_worker,
    "verify-ledger": _cmd_verify_ledger,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from stock_config import ConfigValidationError, get_active_config
    from stock_kernel.db.engine import get_session_factory, init_engine_from_url
    from stock_kernel.kernel import StockKernel
    from stock_kernel.logging_config import configure_logging

    configure_logging(level=args.log_level)

    try:
        settings = get_active_config(args.config)
    except (ConfigValidationError, FileNotFoundError) as exc:
        print(f"ERROR: Failed to load config: {exc}", file=sys.stderr)
        return 2

    init_engine_from_url(
        settings.database.url,
        echo=settings.database.echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_timeout=settings.database.pool_timeout,
    )
    kernel = StockKernel(
        get_session_factory(),
        max_conflict_retries=settings.reservations.max_conflict_retries,
    )
    return _COMMANDS[args.command](args, settings, kernel)


if __name__ == "__main__":
    sys.exit(main())
