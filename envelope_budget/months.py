"""Month lifecycle helpers: ordinals, staleness marking and month creation."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .balances import carried_end_balance, window_income
from .errors import NotFoundError, ValidationError
from .models import (
    AccountMonthBalance,
    Budget,
    CategoryMonthBalance,
    Month,
    MonthMapEntry,
    MonthStatus,
    is_no_account,
    is_no_category,
    month_label,
    month_ordinal,
    ordinal_to_year_month,
)
from .storage import DocumentStore

logger = logging.getLogger(__name__)

__all__ = [
    'month_ordinal',
    'ordinal_to_year_month',
    'month_label',
    'previous_year_month',
    'next_year_month',
    'mark_months_stale',
    'mark_months_needing_recalculation',
    'can_create_month',
    'create_month',
    'get_or_create_month',
]


def previous_year_month(year: int, month: int) -> tuple:
    return ordinal_to_year_month(month_ordinal(year, month) - 1)


def next_year_month(year: int, month: int) -> tuple:
    return ordinal_to_year_month(month_ordinal(year, month) + 1)


def mark_months_stale(budget: Budget, from_ordinal: int) -> List[int]:
    """Flag ``from_ordinal`` and every later existing month as stale.

    Only the in-memory budget is changed; the caller persists it.

    Returns:
        Ordinals whose status actually changed, ascending
    """
    changed = []
    for ordinal in budget.ordinals():
        if ordinal < from_ordinal:
            continue
        entry = budget.month_map[ordinal]
        if entry.status != MonthStatus.STALE:
            entry.status = MonthStatus.STALE
            changed.append(ordinal)
    return changed


async def mark_months_needing_recalculation(
    store: DocumentStore,
    budget_id: str,
    year: int,
    month: int,
) -> List[int]:
    """Persist stale flags for a month and all months after it."""
    budget = await store.read_budget(budget_id)
    if budget is None:
        raise NotFoundError('budget', budget_id)
    changed = mark_months_stale(budget, month_ordinal(year, month))
    if changed:
        await store.write_budget(
            budget_id,
            {'month_map': {str(o): budget.month_map[o].to_dict() for o in changed}},
        )
        logger.info(
            "Marked %d month(s) stale from %s for budget %s",
            len(changed), month_label(year, month), budget_id,
        )
    return changed


def can_create_month(budget: Budget, year: int, month: int) -> bool:
    """Whether a month may be added without leaving a gap in the sequence.

    The first month of a budget can be anything; after that only the month
    right after the latest, or right before the earliest, may be created.
    """
    ordinal = month_ordinal(year, month)
    ordinals = budget.ordinals()
    if not ordinals or ordinal in budget.month_map:
        return True
    return ordinal == ordinals[-1] + 1 or ordinal == ordinals[0] - 1


async def create_month(store: DocumentStore, budget_id: str, year: int, month: int) -> Month:
    """Create a month document seeded from its predecessor.

    Start balances are the previous month's carried balances. A month with no
    predecessor starts every category and account at its opening balance.
    The new month is registered as fresh in the budget's month_map.

    Raises:
        NotFoundError: If the budget does not exist
        ValidationError: If the month already exists or would leave a gap
    """
    budget = await store.read_budget(budget_id)
    if budget is None:
        raise NotFoundError('budget', budget_id)

    ordinal = month_ordinal(year, month)
    if ordinal in budget.month_map:
        raise ValidationError(f"{month_label(year, month)} already exists")
    if not can_create_month(budget, year, month):
        raise ValidationError(
            f"Cannot create {month_label(year, month)}: months must be added next to existing ones"
        )

    previous: Optional[Month] = None
    if ordinal - 1 in budget.month_map:
        previous = await store.read_month(budget_id, *ordinal_to_year_month(ordinal - 1))

    window_month: Optional[Month] = None
    window_ordinal = ordinal - budget.percentage_income_months_back
    if budget.percentage_income_months_back >= 1 and window_ordinal in budget.month_map:
        if previous is not None and window_ordinal == previous.ordinal:
            window_month = previous
        else:
            window_month = await store.read_month(budget_id, *ordinal_to_year_month(window_ordinal))

    now = datetime.now().isoformat()
    new_month = Month(budget_id=budget_id, year=year, month=month, created_at=now, updated_at=now)
    new_month.previous_month_income = window_income(
        {window_ordinal: window_month} if window_month is not None else {},
        ordinal,
        budget.percentage_income_months_back,
    )

    if previous is not None:
        for category_id, row in previous.category_balances.items():
            start = carried_end_balance(row, previous.are_allocations_finalized)
            new_month.category_balances[category_id] = CategoryMonthBalance(
                category_id=category_id, start_balance=start, end_balance=start,
            )
        for account_id, row in previous.account_balances.items():
            new_month.account_balances[account_id] = AccountMonthBalance(
                account_id=account_id, start_balance=row.end_balance, end_balance=row.end_balance,
            )

    # Categories and accounts the predecessor never saw
    first_month = not budget.month_map or ordinal < min(budget.month_map)
    for category_id, category in budget.categories.items():
        if is_no_category(category_id) or category_id in new_month.category_balances:
            continue
        start = category.opening_balance if first_month else 0.0
        new_month.category_balances[category_id] = CategoryMonthBalance(
            category_id=category_id, start_balance=start, end_balance=start,
        )
    for account_id, account in budget.accounts.items():
        if is_no_account(account_id) or account_id in new_month.account_balances:
            continue
        start = account.opening_balance if first_month else 0.0
        new_month.account_balances[account_id] = AccountMonthBalance(
            account_id=account_id, start_balance=start, end_balance=start,
        )

    await store.write_months([new_month])
    await store.write_budget(budget_id, {'month_map': {str(ordinal): MonthMapEntry().to_dict()}})
    logger.info("Created %s for budget %s", new_month.label, budget_id)
    return new_month


async def get_or_create_month(store: DocumentStore, budget_id: str, year: int, month: int) -> Month:
    existing = await store.read_month(budget_id, year, month)
    if existing is not None:
        return existing
    return await create_month(store, budget_id, year, month)
