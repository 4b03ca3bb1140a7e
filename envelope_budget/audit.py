"""Ledger frames and balance verification.

Flattens month rows into pandas DataFrames so stored balances can be checked
against the row formulas, the month-to-month chain and the budget's stored
all-time balances.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd

from .balances import calculate_total_available, carried_end_balance
from .models import Budget, Month, MonthMapEntry, MonthStatus
from .settings import get_config_value

DEFAULT_TOLERANCE = float(get_config_value('engine', 'audit', 'tolerance', default=0.01))

CATEGORY_COLUMNS = [
    'ordinal', 'label', 'category_id', 'start_balance', 'allocated', 'spent',
    'transfers', 'adjustments', 'end_balance', 'carried_balance', 'finalized',
]
ACCOUNT_COLUMNS = [
    'ordinal', 'label', 'account_id', 'start_balance', 'income', 'expenses',
    'transfers', 'adjustments', 'net_change', 'end_balance', 'finalized',
]


def category_ledger_frame(months: Iterable[Month]) -> pd.DataFrame:
    """One row per (month, category) balance row, sorted chronologically."""
    records = []
    for month in months:
        for category_id, row in month.category_balances.items():
            records.append({
                'ordinal': month.ordinal,
                'label': month.label,
                'category_id': category_id,
                'start_balance': row.start_balance,
                'allocated': row.allocated,
                'spent': row.spent,
                'transfers': row.transfers,
                'adjustments': row.adjustments,
                'end_balance': row.end_balance,
                'carried_balance': carried_end_balance(row, month.are_allocations_finalized),
                'finalized': month.are_allocations_finalized,
            })
    if not records:
        return pd.DataFrame(columns=CATEGORY_COLUMNS)
    return pd.DataFrame.from_records(records, columns=CATEGORY_COLUMNS).sort_values(
        ['ordinal', 'category_id'], kind='stable'
    ).reset_index(drop=True)


def account_ledger_frame(months: Iterable[Month]) -> pd.DataFrame:
    """One row per (month, account) balance row, sorted chronologically."""
    records = []
    for month in months:
        for account_id, row in month.account_balances.items():
            records.append({
                'ordinal': month.ordinal,
                'label': month.label,
                'account_id': account_id,
                'start_balance': row.start_balance,
                'income': row.income,
                'expenses': row.expenses,
                'transfers': row.transfers,
                'adjustments': row.adjustments,
                'net_change': row.net_change,
                'end_balance': row.end_balance,
                'finalized': month.are_allocations_finalized,
            })
    if not records:
        return pd.DataFrame(columns=ACCOUNT_COLUMNS)
    return pd.DataFrame.from_records(records, columns=ACCOUNT_COLUMNS).sort_values(
        ['ordinal', 'account_id'], kind='stable'
    ).reset_index(drop=True)


def _is_account_frame(frame: pd.DataFrame) -> bool:
    return 'account_id' in frame.columns


def find_formula_violations(frame: pd.DataFrame, tolerance: Optional[float] = None) -> pd.DataFrame:
    """Rows whose ``end_balance`` disagrees with the row formula.

    Works on both category and account ledger frames. The returned frame
    carries an extra ``expected_end_balance`` column.
    """
    tol = DEFAULT_TOLERANCE if tolerance is None else tolerance
    if frame.empty:
        return frame.assign(expected_end_balance=pd.Series(dtype=float))

    if _is_account_frame(frame):
        movement = frame['income'] + frame['expenses'] + frame['transfers'] + frame['adjustments']
    else:
        movement = frame['allocated'] + frame['spent'] + frame['transfers'] + frame['adjustments']
    expected = (frame['start_balance'] + movement).round(2)
    mask = ~np.isclose(expected.to_numpy(dtype=float), frame['end_balance'].to_numpy(dtype=float), atol=tol, rtol=0)
    return frame.loc[mask].assign(expected_end_balance=expected[mask]).reset_index(drop=True)


def _stale_ordinals(month_map: Optional[Mapping[int, MonthMapEntry]]) -> List[int]:
    if not month_map:
        return []
    return [o for o, entry in month_map.items() if entry.status != MonthStatus.FRESH]


def find_chain_breaks(
    frame: pd.DataFrame,
    month_map: Optional[Mapping[int, MonthMapEntry]] = None,
    tolerance: Optional[float] = None,
) -> pd.DataFrame:
    """Adjacent month pairs where a start balance is not the prior carried balance.

    Category chains are only checked between months that are both finalized;
    account chains are checked between any two consecutive months. Months
    flagged stale in ``month_map`` are excluded.

    Returns:
        DataFrame with the entity id, both ordinals, the start balance found
        and the balance expected from the previous month
    """
    tol = DEFAULT_TOLERANCE if tolerance is None else tolerance
    account_frame = _is_account_frame(frame)
    entity = 'account_id' if account_frame else 'category_id'
    columns = [entity, 'previous_ordinal', 'ordinal', 'label', 'start_balance', 'expected_start_balance']
    if frame.empty:
        return pd.DataFrame(columns=columns)

    working = frame.sort_values([entity, 'ordinal'], kind='stable').copy()
    carried = 'end_balance' if account_frame else 'carried_balance'
    grouped = working.groupby(entity, sort=False)
    working['previous_ordinal'] = grouped['ordinal'].shift(1)
    working['expected_start_balance'] = grouped[carried].shift(1)
    working['previous_finalized'] = grouped['finalized'].shift(1)

    adjacent = working['previous_ordinal'].notna() & (working['ordinal'] - working['previous_ordinal'] == 1)
    if not account_frame:
        adjacent &= working['finalized'].eq(True) & working['previous_finalized'].eq(True)
    stale = _stale_ordinals(month_map)
    if stale:
        adjacent &= ~working['ordinal'].isin(stale) & ~working['previous_ordinal'].isin(stale)

    candidates = working.loc[adjacent]
    if candidates.empty:
        return pd.DataFrame(columns=columns)
    mismatch = ~np.isclose(
        candidates['start_balance'].to_numpy(dtype=float),
        candidates['expected_start_balance'].to_numpy(dtype=float),
        atol=tol,
        rtol=0,
    )
    breaks = candidates.loc[mismatch, columns].copy()
    breaks['previous_ordinal'] = breaks['previous_ordinal'].astype(int)
    return breaks.reset_index(drop=True)


def category_balance_mismatches(
    budget: Budget,
    months: Iterable[Month],
    tolerance: Optional[float] = None,
) -> pd.DataFrame:
    """Categories whose stored balance differs from the latest carried balance."""
    tol = DEFAULT_TOLERANCE if tolerance is None else tolerance
    columns = ['category_id', 'name', 'stored_balance', 'expected_balance', 'difference']
    ordered = sorted(months, key=lambda m: m.ordinal)
    if not ordered:
        return pd.DataFrame(columns=columns)

    latest = ordered[-1]
    records = []
    for category_id, row in latest.category_balances.items():
        category = budget.categories.get(category_id)
        if category is None:
            continue
        records.append({
            'category_id': category_id,
            'name': category.name,
            'stored_balance': category.balance,
            'expected_balance': carried_end_balance(row, latest.are_allocations_finalized),
        })
    if not records:
        return pd.DataFrame(columns=columns)

    frame = pd.DataFrame.from_records(records)
    frame['difference'] = (frame['stored_balance'] - frame['expected_balance']).round(2)
    mask = ~np.isclose(frame['stored_balance'], frame['expected_balance'], atol=tol, rtol=0)
    return frame.loc[mask, columns].reset_index(drop=True)


@dataclass
class AuditReport:
    budget_id: str
    months_checked: int
    category_formula_violations: pd.DataFrame
    account_formula_violations: pd.DataFrame
    category_chain_breaks: pd.DataFrame
    account_chain_breaks: pd.DataFrame
    balance_mismatches: pd.DataFrame
    stale_months: List[int] = field(default_factory=list)
    stored_total_available: float = 0.0
    expected_total_available: float = 0.0

    @property
    def total_available_matches(self) -> bool:
        return bool(np.isclose(self.stored_total_available, self.expected_total_available, atol=DEFAULT_TOLERANCE))

    @property
    def problem_count(self) -> int:
        count = (
            len(self.category_formula_violations)
            + len(self.account_formula_violations)
            + len(self.category_chain_breaks)
            + len(self.account_chain_breaks)
            + len(self.balance_mismatches)
        )
        return count + (0 if self.total_available_matches else 1)

    @property
    def is_clean(self) -> bool:
        return self.problem_count == 0

    def summary(self) -> Dict[str, int]:
        return {
            'months_checked': self.months_checked,
            'stale_months': len(self.stale_months),
            'category_formula_violations': len(self.category_formula_violations),
            'account_formula_violations': len(self.account_formula_violations),
            'category_chain_breaks': len(self.category_chain_breaks),
            'account_chain_breaks': len(self.account_chain_breaks),
            'balance_mismatches': len(self.balance_mismatches),
        }


def summarize_audit(budget: Budget, months: Iterable[Month], tolerance: Optional[float] = None) -> AuditReport:
    """Run every check over a budget and its months.

    Example:
        >>> report = summarize_audit(budget, months)
        >>> report.is_clean
        True
    """
    months = list(months)
    categories = category_ledger_frame(months)
    accounts = account_ledger_frame(months)
    return AuditReport(
        budget_id=budget.id,
        months_checked=len(months),
        category_formula_violations=find_formula_violations(categories, tolerance),
        account_formula_violations=find_formula_violations(accounts, tolerance),
        category_chain_breaks=find_chain_breaks(categories, budget.month_map, tolerance),
        account_chain_breaks=find_chain_breaks(accounts, budget.month_map, tolerance),
        balance_mismatches=category_balance_mismatches(budget, months, tolerance),
        stale_months=budget.stale_ordinals(),
        stored_total_available=budget.total_available,
        expected_total_available=calculate_total_available(budget),
    )
