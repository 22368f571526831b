#!/usr/bin/env python3
"""Print cached receivables, unmatched counterparties or cleanup candidates as JSON."""
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import date

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from agents.mahnwesen import DunningConfig, DunningPolicies, DunningRuleSet  # noqa: E402
from backend.apps.receivables.service import DUNNING_FILTERS, build_service, no_rules  # noqa: E402
from backend.core.config import settings  # noqa: E402
from backend.core.observability import init_observability  # noqa: E402


def _default_rules(customer):
    return DunningRuleSet()


def _build_report(service, args) -> list | dict:
    if args.what == "invoices":
        today = date.fromisoformat(args.today) if args.today else None
        views = service.list_invoices(status=args.status, dunning=args.dunning, today=today)
        return [view.to_dict() for view in views]
    if args.what == "unmatched":
        return [
            {
                "counterparty_name": row.counterparty_name,
                "invoice_count": row.invoice_count,
                "amount_open": str(row.amount_open),
            }
            for row in service.list_unmatched_counterparties()
        ]
    if args.what == "cleanup":
        return service.preview_placeholder_cleanup()
    return service.list_sync_logs(limit=args.limit)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Read-only receivables report from the local store")
    p.add_argument("--what", choices=("invoices", "unmatched", "cleanup", "logs"), default="invoices")
    p.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    p.add_argument("--status", choices=("paid", "unpaid", "all"), default="unpaid")
    p.add_argument("--dunning", choices=DUNNING_FILTERS, default=None)
    p.add_argument("--today", default=None, help="Evaluation date YYYY-MM-DD (default: today)")
    p.add_argument(
        "--default-rules",
        action="store_true",
        default=False,
        help="Apply the default dunning stages to every customer",
    )
    p.add_argument("--limit", type=int, default=20, help="Number of sync log rows")
    args = p.parse_args(argv)

    init_observability(enable_metrics=False)
    if args.database_url:
        settings.database_url = args.database_url

    try:
        service = build_service(settings, rules_provider=_default_rules if args.default_rules else no_rules)
        service.policies = DunningPolicies(DunningConfig.from_env())
        report = _build_report(service, args)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(json.dumps(report, indent=2, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
