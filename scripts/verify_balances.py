#!/usr/bin/env python3
"""Audit stored balances of a budget and optionally repair them."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from envelope_budget import config
from envelope_budget.audit import AuditReport, summarize_audit
from envelope_budget.errors import BudgetEngineError
from envelope_budget.models import Month
from envelope_budget.months import mark_months_stale
from envelope_budget.recalculation import RecalculationProgress, fetch_months, trigger_recalculation
from envelope_budget.storage import SqliteDocumentStore

logger = logging.getLogger("verify_balances")


def _print_progress(progress: RecalculationProgress) -> None:
    month = f" {progress.current_month}" if progress.current_month else ""
    print(f"  [{progress.percent_complete:3d}%] {progress.phase}{month}")


def _print_report(report: AuditReport) -> None:
    print(f"Budget {report.budget_id}: {report.months_checked} month(s) checked")
    for name, count in report.summary().items():
        if name != 'months_checked':
            print(f"  {name}: {count}")
    if not report.total_available_matches:
        print(
            f"  total_available stored {report.stored_total_available:.2f}, "
            f"expected {report.expected_total_available:.2f}"
        )

    sections = [
        ("Category formula violations", report.category_formula_violations),
        ("Account formula violations", report.account_formula_violations),
        ("Category chain breaks", report.category_chain_breaks),
        ("Account chain breaks", report.account_chain_breaks),
        ("Stored balance mismatches", report.balance_mismatches),
    ]
    for title, frame in sections:
        if not frame.empty:
            print(f"\n{title}:")
            print(frame.head(20).to_string(index=False))


async def _load_months(store: SqliteDocumentStore, budget_id: str, ordinals: List[int]) -> List[Month]:
    fetched = await fetch_months(store, budget_id, ordinals)
    return [month for _, month in sorted(fetched.items()) if month is not None]


async def run(db_path: str, budget_id: str, recalculate: bool = False) -> int:
    store = SqliteDocumentStore(db_path)
    budget = await store.read_budget(budget_id)
    if budget is None:
        print(f"Budget not found: {budget_id}")
        return 1

    if recalculate and budget.ordinals():
        changed = mark_months_stale(budget, budget.ordinals()[0])
        await store.write_budget(
            budget_id,
            {'month_map': {str(o): budget.month_map[o].to_dict() for o in changed}},
        )
        print(f"Recalculating {len(budget.ordinals())} month(s)...")
        result = await trigger_recalculation(store, budget_id, on_progress=_print_progress)
        print(f"Updated {result.months_updated} of {result.months_processed} month(s)")
        budget = await store.read_budget(budget_id)

    months = await _load_months(store, budget_id, budget.ordinals())
    report = summarize_audit(budget, months)
    _print_report(report)
    if report.is_clean:
        print("\nAll balances verified.")
        return 0
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Verify stored budget balances.')
    parser.add_argument('--db', default=config.get_db_path(), help='Path to the SQLite document store')
    parser.add_argument('--budget', required=True, help='Budget id to verify')
    parser.add_argument(
        '--recalculate',
        action='store_true',
        help='Mark every month stale and recalculate before auditing',
    )
    parser.add_argument('--log-level', default=None, help='Logging level (default: ENVELOPE_BUDGET_LOG_LEVEL or INFO)')
    args = parser.parse_args(argv)

    config.configure_logging(args.log_level)
    if args.db == config.get_db_path():
        config.ensure_data_directories()
    try:
        return asyncio.run(run(args.db, args.budget, recalculate=args.recalculate))
    except BudgetEngineError as e:
        logger.error("Verification failed: %s", e)
        return 2


if __name__ == '__main__':
    raise SystemExit(main())
