#!/usr/bin/env python3
"""Run one BHB sync cycle (or the scheduler loop) against the local store."""
from __future__ import annotations

import argparse
import json
import os
import sys

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from backend.apps.receivables.errors import ConfigurationError, SyncAlreadyRunningError  # noqa: E402
from backend.apps.receivables.scheduler import SyncScheduler  # noqa: E402
from backend.apps.receivables.service import build_service  # noqa: E402
from backend.core.config import settings  # noqa: E402
from backend.core.observability import init_observability  # noqa: E402

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_BUSY = 3


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Pull BHB debtors and receipts into the local store")
    p.add_argument("--entity", choices=("debtors", "invoices", "both"), default="both")
    p.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    p.add_argument("--triggered-by", default="cli")
    p.add_argument("--init-db", action="store_true", default=False, help="Create tables before syncing")
    p.add_argument(
        "--loop",
        action="store_true",
        default=False,
        help="Keep running and sync every SYNC_INTERVAL_MINUTES",
    )
    args = p.parse_args(argv)

    init_observability(enable_metrics=settings.enable_metrics)
    if args.database_url:
        settings.database_url = args.database_url

    service = build_service(settings)
    if args.init_db:
        service.store.create_schema()

    if args.loop:
        return _run_loop(service)

    try:
        report = service.trigger_sync(entity_type=args.entity, triggered_by=args.triggered_by)
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except SyncAlreadyRunningError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_BUSY

    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    return EXIT_OK if report.status == "success" else EXIT_FAILED


def _run_loop(service) -> int:
    if settings.SYNC_INTERVAL_MINUTES <= 0:
        print("SYNC_INTERVAL_MINUTES must be > 0 for --loop", file=sys.stderr)
        return EXIT_CONFIG
    scheduler = SyncScheduler(service.orchestrator, settings.SYNC_INTERVAL_MINUTES)
    scheduler.run_once()
    scheduler.start()
    try:
        while scheduler.running:
            scheduler.join(timeout=1.0)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
