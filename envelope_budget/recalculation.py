"""Recalculation orchestrator.

Walks a budget's months forward from the earliest stale month, recomputes
every category and account row, carries end balances into the next month and
persists the results. Runs are phased and report progress after every phase
transition and after every recalculated month::

    reading-budget -> fetching-months -> recalculating -> saving -> complete

Any failure reports the ``error`` phase and is raised with ``.phase`` set.
Stale flags are only cleared by a run that completes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .balances import (
    account_transaction_maps,
    calculate_total_available,
    carried_end_balance,
    category_transaction_maps,
    compute_account_end_balance,
    compute_account_net_change,
    compute_end_balance,
    window_income,
)
from .config import get_recalc_batch_size
from .errors import BudgetEngineError, PersistenceError, RecalculationError, ValidationError
from .models import (
    AccountMonthBalance,
    CategoryMonthBalance,
    Month,
    MonthMapEntry,
    MonthStatus,
    is_no_account,
    is_no_category,
    month_label,
    ordinal_to_year_month,
)
from .settings import get_config_value
from .storage import DocumentStore

logger = logging.getLogger(__name__)

PHASE_READING_BUDGET = 'reading-budget'
PHASE_FETCHING_MONTHS = 'fetching-months'
PHASE_RECALCULATING = 'recalculating'
PHASE_SAVING = 'saving'
PHASE_COMPLETE = 'complete'
PHASE_ERROR = 'error'

_DEFAULT_MILESTONES = {
    'reading_budget': 5,
    'fetching_months': 10,
    'months_fetched': 30,
    'recalculating_start': 30,
    'recalculating_span': 40,
    'saving_months': 75,
    'saving_budget': 92,
    'complete': 100,
}


def _milestones() -> Dict[str, int]:
    configured = get_config_value('engine', 'recalculation', 'progress', default={}) or {}
    return {**_DEFAULT_MILESTONES, **configured}


@dataclass
class RecalculationProgress:
    """Snapshot handed to ``on_progress`` callbacks."""

    phase: str
    months_fetched: int = 0
    total_months_to_fetch: int = 0
    months_processed: int = 0
    total_months: int = 0
    current_month: Optional[str] = None
    percent_complete: int = 0


@dataclass
class RecalculationResult:
    budget_id: str
    months_processed: int = 0
    months_updated: int = 0
    categories_touched: int = 0
    accounts_touched: int = 0
    start_ordinal: Optional[int] = None
    category_balances: Dict[str, float] = field(default_factory=dict)
    account_balances: Dict[str, float] = field(default_factory=dict)
    total_available: Optional[float] = None
    months: List[Month] = field(default_factory=list)
    missing_categories: List[str] = field(default_factory=list)
    missing_accounts: List[str] = field(default_factory=list)


ProgressCallback = Callable[[RecalculationProgress], None]


@dataclass(frozen=True)
class PreviousMonthSnapshot:
    """Carried balances handed from one month to the next."""

    category_balances: Mapping[str, float] = field(default_factory=dict)
    account_balances: Mapping[str, float] = field(default_factory=dict)


EMPTY_SNAPSHOT = PreviousMonthSnapshot()


def extract_snapshot(month: Month) -> PreviousMonthSnapshot:
    return PreviousMonthSnapshot(
        category_balances={
            category_id: carried_end_balance(row, month.are_allocations_finalized)
            for category_id, row in month.category_balances.items()
        },
        account_balances={account_id: row.end_balance for account_id, row in month.account_balances.items()},
    )


def _ordered_ids(*sources: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for source in sources:
        for key in source:
            seen.setdefault(key, None)
    return list(seen)


def recalculate_month(
    month: Month,
    snapshot: PreviousMonthSnapshot = EMPTY_SNAPSHOT,
    *,
    previous_window_income: Optional[float] = None,
    opening_category_balances: Optional[Mapping[str, float]] = None,
    opening_account_balances: Optional[Mapping[str, float]] = None,
) -> Month:
    """Recompute every row of one month from its transactions.

    Pure: ``month`` is not modified and a new :class:`Month` is returned.

    Args:
        month: Month to recompute; its ``allocated`` values are kept
        snapshot: Carried balances of the previous month
        previous_window_income: Income of the trailing window month. ``None``
            keeps the month's stored ``previous_month_income``
        opening_category_balances: Start balances for categories missing
            from ``snapshot``; only given when the chain starts at the
            budget's first month
        opening_account_balances: Same as above, for accounts

    Returns:
        The recomputed month. Rows that exist only in ``snapshot`` are
        carried forward as zero-activity rows. Rows are created for
        categories and accounts that only appear in transactions.
    """
    result = month.copy()
    opening_categories = opening_category_balances or {}
    opening_accounts = opening_account_balances or {}

    spent, transfers, adjustments = category_transaction_maps(month)
    category_ids = _ordered_ids(
        month.category_balances, snapshot.category_balances, spent, transfers, adjustments,
    )
    category_rows: Dict[str, CategoryMonthBalance] = {}
    for category_id in category_ids:
        if is_no_category(category_id):
            continue
        existing = month.category_balances.get(category_id)
        if category_id in snapshot.category_balances:
            start = snapshot.category_balances[category_id]
        else:
            start = opening_categories.get(category_id, 0.0)
        row = CategoryMonthBalance(
            category_id=category_id,
            start_balance=start,
            allocated=existing.allocated if existing is not None else 0.0,
            spent=spent.get(category_id, 0.0),
            transfers=transfers.get(category_id, 0.0),
            adjustments=adjustments.get(category_id, 0.0),
        )
        row.end_balance = compute_end_balance(row)
        category_rows[category_id] = row

    income, expenses, account_transfers, account_adjustments = account_transaction_maps(month)
    account_ids = _ordered_ids(
        month.account_balances, snapshot.account_balances,
        income, expenses, account_transfers, account_adjustments,
    )
    account_rows: Dict[str, AccountMonthBalance] = {}
    for account_id in account_ids:
        if is_no_account(account_id):
            continue
        if account_id in snapshot.account_balances:
            start = snapshot.account_balances[account_id]
        else:
            start = opening_accounts.get(account_id, 0.0)
        row = AccountMonthBalance(
            account_id=account_id,
            start_balance=start,
            income=income.get(account_id, 0.0),
            expenses=expenses.get(account_id, 0.0),
            transfers=account_transfers.get(account_id, 0.0),
            adjustments=account_adjustments.get(account_id, 0.0),
        )
        row.net_change = compute_account_net_change(row)
        row.end_balance = compute_account_end_balance(row)
        account_rows[account_id] = row

    result.category_balances = category_rows
    result.account_balances = account_rows
    if previous_window_income is not None:
        result.previous_month_income = previous_window_income
    return result


def _month_changed(before: Month, after: Month) -> bool:
    return (
        before.category_balances != after.category_balances
        or before.account_balances != after.account_balances
        or before.previous_month_income != after.previous_month_income
    )


def _month_inputs(month: Month) -> tuple:
    """Everything a recalculation reads from a month and never writes."""
    return (
        {category_id: row.allocated for category_id, row in month.category_balances.items()},
        month.are_allocations_finalized,
        [i.to_dict() for i in month.income],
        [e.to_dict() for e in month.expenses],
        [t.to_dict() for t in month.transfers],
        [a.to_dict() for a in month.adjustments],
    )


def _chunks(items: Sequence[Month], size: int) -> Iterable[Sequence[Month]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def fetch_months(
    store: DocumentStore,
    budget_id: str,
    ordinals: Sequence[int],
    on_fetched: Optional[Callable[[int], None]] = None,
) -> Dict[int, Optional[Month]]:
    """Read several months concurrently.

    Args:
        store: Document store to read from
        budget_id: Budget owning the months
        ordinals: Month ordinals to read
        on_fetched: Called with the running count after each read finishes

    Returns:
        ``ordinal -> Month`` with ``None`` for missing documents
    """
    fetched = 0

    async def _read(ordinal: int) -> Optional[Month]:
        nonlocal fetched
        month = await store.read_month(budget_id, *ordinal_to_year_month(ordinal))
        fetched += 1
        if on_fetched is not None:
            on_fetched(fetched)
        return month

    months = await asyncio.gather(*(_read(o) for o in ordinals))
    return dict(zip(ordinals, months))


class _Run:
    """State of one recalculation run for one budget."""

    def __init__(
        self,
        store: DocumentStore,
        budget_id: str,
        triggering_month_ordinal: Optional[int],
        on_progress: Optional[ProgressCallback],
        batch_size: int,
    ) -> None:
        self.store = store
        self.budget_id = budget_id
        self.triggering_month_ordinal = triggering_month_ordinal
        self.on_progress = on_progress
        self.batch_size = batch_size
        self.milestones = _milestones()
        self.progress = RecalculationProgress(phase=PHASE_READING_BUDGET)

    def report(self, **changes) -> None:
        for key, value in changes.items():
            setattr(self.progress, key, value)
        if self.on_progress is not None:
            self.on_progress(replace(self.progress))

    async def execute(self) -> RecalculationResult:
        try:
            return await self._execute()
        except (RecalculationError, PersistenceError) as e:
            if e.phase is None:
                e.phase = self.progress.phase
            self._fail(e)
            raise
        except Exception as e:
            error = RecalculationError(str(e) or type(e).__name__, phase=self.progress.phase)
            self._fail(error)
            raise error from e

    def _fail(self, error: BudgetEngineError) -> None:
        logger.error("Recalculation failed for budget %s: %s", self.budget_id, error)
        self.report(phase=PHASE_ERROR)

    async def _execute(self) -> RecalculationResult:
        m = self.milestones
        result = RecalculationResult(budget_id=self.budget_id)

        # reading-budget
        self.report(phase=PHASE_READING_BUDGET, percent_complete=m['reading_budget'])
        logger.info("Recalculating budget %s: reading budget", self.budget_id)
        budget = await self.store.read_budget(self.budget_id)
        if budget is None:
            raise RecalculationError(f"Budget '{self.budget_id}' not found")

        existing = budget.ordinals()
        candidates = budget.stale_ordinals()
        if self.triggering_month_ordinal is not None:
            candidates.append(self.triggering_month_ordinal)
        start = None
        if candidates and existing:
            lowest = min(candidates)
            start = next((o for o in existing if o >= lowest), None)
        if start is None:
            logger.info("Budget %s has no months needing recalculation", self.budget_id)
            self.report(phase=PHASE_COMPLETE, percent_complete=m['complete'])
            return result
        result.start_ordinal = start

        # fetching-months
        self.report(phase=PHASE_FETCHING_MONTHS, percent_complete=m['fetching_months'])
        to_process = [o for o in existing if o >= start]
        expected = list(range(start, to_process[-1] + 1))
        missing = sorted(set(expected) - set(to_process))
        if start != existing[0] and start - 1 not in budget.month_map:
            missing.insert(0, start - 1)
        if missing:
            labels = ', '.join(month_label(*ordinal_to_year_month(o)) for o in missing)
            raise RecalculationError(f"Month sequence has gaps: {labels} missing")

        predecessor = start - 1 if start != existing[0] else None
        months_back = budget.percentage_income_months_back
        window = set()
        if months_back >= 1:
            window = {o - months_back for o in to_process if o - months_back in budget.month_map}
        fetch_ordinals = sorted(set(to_process) | window | ({predecessor} if predecessor is not None else set()))

        span = m['months_fetched'] - m['fetching_months']
        total_fetch = len(fetch_ordinals)
        self.report(total_months_to_fetch=total_fetch, months_fetched=0)

        def _on_fetched(count: int) -> None:
            self.report(
                months_fetched=count,
                percent_complete=m['fetching_months'] + int(span * count / total_fetch),
            )

        fetched = await fetch_months(self.store, self.budget_id, fetch_ordinals, _on_fetched)
        required = to_process + ([predecessor] if predecessor is not None else [])
        absent = [o for o in required if fetched.get(o) is None]
        if absent:
            labels = ', '.join(month_label(*ordinal_to_year_month(o)) for o in absent)
            raise RecalculationError(f"Month documents missing from store: {labels}")
        months_by_ordinal: Dict[int, Month] = {o: mo for o, mo in fetched.items() if mo is not None}
        logger.info(
            "Budget %s: fetched %d month(s), recalculating %d from %s",
            self.budget_id, len(months_by_ordinal), len(to_process), month_label(*ordinal_to_year_month(start)),
        )

        # recalculating
        for ordinal in to_process:
            budget.month_map[ordinal].status = MonthStatus.RECALCULATING
        self.report(
            phase=PHASE_RECALCULATING,
            total_months=len(to_process),
            months_processed=0,
            percent_complete=m['recalculating_start'],
        )
        if predecessor is not None:
            snapshot = extract_snapshot(months_by_ordinal[predecessor])
            opening_categories = opening_accounts = None
        else:
            snapshot = EMPTY_SNAPSHOT
            opening_categories = {cid: c.opening_balance for cid, c in budget.categories.items()}
            opening_accounts = {aid: a.opening_balance for aid, a in budget.accounts.items()}

        now = datetime.now().isoformat()
        recalculated: List[Month] = []
        for index, ordinal in enumerate(to_process):
            original = months_by_ordinal[ordinal]
            month = recalculate_month(
                original,
                snapshot,
                previous_window_income=window_income(months_by_ordinal, ordinal, months_back),
                opening_category_balances=opening_categories if index == 0 else None,
                opening_account_balances=opening_accounts if index == 0 else None,
            )
            if _month_changed(original, month):
                month.updated_at = now
            logger.debug("Recalculated %s for budget %s", month.label, self.budget_id)
            months_by_ordinal[ordinal] = month
            recalculated.append(month)
            snapshot = extract_snapshot(month)
            self.report(
                months_processed=index + 1,
                current_month=month.label,
                percent_complete=m['recalculating_start'] + int(m['recalculating_span'] * (index + 1) / len(to_process)),
            )

        category_balances: Dict[str, float] = {}
        for category_id, balance in snapshot.category_balances.items():
            if category_id in budget.categories:
                category_balances[category_id] = balance
            else:
                result.missing_categories.append(category_id)
        account_balances: Dict[str, float] = {}
        for account_id, balance in snapshot.account_balances.items():
            if account_id in budget.accounts:
                account_balances[account_id] = balance
            else:
                result.missing_accounts.append(account_id)
        for category_id in result.missing_categories:
            logger.warning("Budget %s: category %s not found, balance not stored", self.budget_id, category_id)
        for account_id in result.missing_accounts:
            logger.warning("Budget %s: account %s not found, balance not stored", self.budget_id, account_id)

        # saving
        self.report(phase=PHASE_SAVING, current_month=None, percent_complete=m['saving_months'])
        checked = sorted(required)
        current = await fetch_months(self.store, self.budget_id, checked)
        changed_from = next(
            (o for o in checked if current.get(o) is None or _month_inputs(current[o]) != _month_inputs(fetched[o])),
            None,
        )
        if changed_from is not None:
            logger.warning(
                "Budget %s: %s changed during recalculation, recalculating again from there",
                self.budget_id, month_label(*ordinal_to_year_month(changed_from)),
            )
            request_follow_up(self.budget_id, changed_from)
            recalculated = [month for month in recalculated if month.ordinal < changed_from]

        for chunk in _chunks(recalculated, self.batch_size):
            await self.store.write_month_balances(list(chunk))
        self.report(percent_complete=m['saving_budget'])

        partial: Dict[str, Any] = {}
        if changed_from is None:
            for category_id, balance in category_balances.items():
                budget.categories[category_id].balance = balance
            for account_id, balance in account_balances.items():
                budget.accounts[account_id].balance = balance
            total_available = calculate_total_available(budget)
            partial = {
                'categories': {cid: {'balance': b} for cid, b in category_balances.items()},
                'accounts': {aid: {'balance': b} for aid, b in account_balances.items()},
                'total_available': total_available,
            }
        else:
            category_balances, account_balances = {}, {}
            total_available = None
        for ordinal in to_process:
            fresh = changed_from is None or ordinal < changed_from
            budget.month_map[ordinal] = MonthMapEntry(status=MonthStatus.FRESH if fresh else MonthStatus.STALE)
        partial['month_map'] = {str(o): budget.month_map[o].to_dict() for o in to_process}
        await self.store.write_budget(self.budget_id, partial)

        result.months_processed = len(recalculated)
        result.months_updated = sum(1 for mo in recalculated if _month_changed(fetched[mo.ordinal], mo))
        result.categories_touched = len(category_balances)
        result.accounts_touched = len(account_balances)
        result.category_balances = category_balances
        result.account_balances = account_balances
        result.total_available = total_available
        result.months = recalculated

        self.report(phase=PHASE_COMPLETE, percent_complete=m['complete'])
        logger.info(
            "Recalculated budget %s: %d month(s) processed, %d updated",
            self.budget_id, result.months_processed, result.months_updated,
        )
        return result


# Runs in flight, keyed by budget id
_in_progress: Dict[str, 'asyncio.Future[RecalculationResult]'] = {}

# Queued follow-up runs, keyed by budget id. The value is the month the
# follow-up must start at, or None to start at the earliest stale month.
_follow_ups: Dict[str, Optional[int]] = {}


def is_recalculation_in_progress(budget_id: str) -> bool:
    task = _in_progress.get(budget_id)
    return task is not None and not task.done()


def request_follow_up(budget_id: str, from_ordinal: Optional[int] = None) -> None:
    """Queue one more run for a budget once its current run finishes.

    Repeated requests collapse into a single follow-up starting at the
    earliest month requested.
    """
    if budget_id in _follow_ups:
        queued = _follow_ups[budget_id]
        if queued is None:
            _follow_ups[budget_id] = from_ordinal
        elif from_ordinal is not None:
            _follow_ups[budget_id] = min(queued, from_ordinal)
    else:
        _follow_ups[budget_id] = from_ordinal


async def _drive(store: DocumentStore, budget_id: str, run: _Run) -> RecalculationResult:
    try:
        result = await run.execute()
        while budget_id in _follow_ups:
            from_ordinal = _follow_ups.pop(budget_id)
            logger.info("Running queued recalculation for budget %s", budget_id)
            again = await _Run(store, budget_id, from_ordinal, None, run.batch_size).execute()
            if again.start_ordinal is not None:
                result = again
        return result
    except BudgetEngineError:
        # Stale flags survive a failed run, so the next trigger picks them up
        _follow_ups.pop(budget_id, None)
        raise


async def trigger_recalculation(
    store: DocumentStore,
    budget_id: str,
    *,
    triggering_month_ordinal: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    batch_size: Optional[int] = None,
) -> RecalculationResult:
    """Bring a budget's months and balances back into agreement.

    Only one run per budget is ever in flight. A call made while a run is
    already going awaits that run and returns its result; its own
    ``on_progress`` callback is not invoked. When such a call names a
    ``triggering_month_ordinal`` the month was changed after the running
    run may have read it, so one more run from that month is queued behind
    the current one and the call returns once it has finished.

    Args:
        store: Document store holding the budget and its months
        budget_id: Budget to recalculate
        triggering_month_ordinal: Month known to have changed. The run starts
            at the earlier of this and the earliest stale month
        on_progress: Receives a :class:`RecalculationProgress` snapshot after
            every phase transition and every recalculated month
        batch_size: Maximum months per write call. Defaults to
            :func:`config.get_recalc_batch_size`

    Returns:
        The :class:`RecalculationResult` of the last run that recalculated
        anything

    Raises:
        RecalculationError: If balances could not be recomputed
        PersistenceError: If the store failed
        ValidationError: If ``batch_size`` is not positive
    """
    running = _in_progress.get(budget_id)
    if running is not None and not running.done():
        if triggering_month_ordinal is not None:
            logger.info(
                "Recalculation already in progress for budget %s, queueing another from %s",
                budget_id, month_label(*ordinal_to_year_month(triggering_month_ordinal)),
            )
            request_follow_up(budget_id, triggering_month_ordinal)
        else:
            logger.info("Recalculation already in progress for budget %s, joining it", budget_id)
        return await asyncio.shield(running)

    size = get_recalc_batch_size() if batch_size is None else int(batch_size)
    if size < 1:
        raise ValidationError(f"batch_size must be positive, got {batch_size}")

    run = _Run(store, budget_id, triggering_month_ordinal, on_progress, size)
    task = asyncio.ensure_future(_drive(store, budget_id, run))
    _in_progress[budget_id] = task

    def _release(finished: 'asyncio.Future[RecalculationResult]') -> None:
        if _in_progress.get(budget_id) is finished:
            del _in_progress[budget_id]

    task.add_done_callback(_release)
    return await asyncio.shield(task)
