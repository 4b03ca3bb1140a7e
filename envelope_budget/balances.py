"""Balance model: pure functions deriving month and all-time balances.

Nothing here performs I/O. Every quantity is rounded to cents after each
operation, and debt (a negative balance) is never clamped away.

Category row invariant::

    end_balance = start_balance + allocated + spent + transfers + adjustments

Account row invariant::

    net_change = income + expenses + transfers + adjustments
    end_balance = start_balance + net_change
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from .currency import round_currency
from .models import (
    Account,
    AccountGroup,
    AccountMonthBalance,
    Budget,
    Category,
    CategoryMonthBalance,
    Month,
    is_no_account,
    is_no_category,
)


@dataclass(frozen=True)
class DebtSplit:
    """How an allocation is explained against an existing debt."""

    to_debt: float
    to_balance: float


def derive_allocation_amount(
    category: Category,
    previous_window_income: float,
    manual_amount: float = 0.0,
) -> float:
    """Resolve a category's allocation from its default monthly rule.

    Args:
        category: Category whose rule is applied
        previous_window_income: Income total of the trailing window month
        manual_amount: Amount used when the category has no rule

    Returns:
        ``percent / 100 * income`` for percentage rules, the fixed amount for
        fixed rules, otherwise ``manual_amount``; always rounded to cents

    Example:
        >>> cat = Category(id='c', default_monthly_type='percentage', default_monthly_amount=10)
        >>> derive_allocation_amount(cat, 2000.0)
        200.0
    """
    if category.is_percentage:
        return round_currency(
            round_currency(category.default_monthly_amount) / 100 * round_currency(previous_window_income)
        )
    if category.is_fixed:
        return round_currency(category.default_monthly_amount)
    return round_currency(manual_amount)


def split_allocation_against_debt(allocation_amount: float, current_stored_balance: float) -> DebtSplit:
    """Explain how much of an allocation pays down debt.

    This is presentation only: the end balance arithmetic never looks at it.
    """
    amount = round_currency(allocation_amount)
    balance = round_currency(current_stored_balance)
    if balance < 0:
        debt = abs(balance)
        return DebtSplit(
            to_debt=round_currency(min(amount, debt)),
            to_balance=round_currency(max(0.0, amount - debt)),
        )
    return DebtSplit(to_debt=0.0, to_balance=amount)


def compute_end_balance(row: CategoryMonthBalance) -> float:
    total = round_currency(row.start_balance + row.allocated)
    total = round_currency(total + row.spent)
    total = round_currency(total + row.transfers)
    return round_currency(total + row.adjustments)


def compute_account_net_change(row: AccountMonthBalance) -> float:
    total = round_currency(row.income + row.expenses)
    total = round_currency(total + row.transfers)
    return round_currency(total + row.adjustments)


def compute_account_end_balance(row: AccountMonthBalance) -> float:
    return round_currency(row.start_balance + compute_account_net_change(row))


def carried_end_balance(row: CategoryMonthBalance, allocations_finalized: bool) -> float:
    """Balance a category row hands to the following month.

    Saved-but-unfinalized allocations are visible on the row but do not move
    money until the month is finalized.
    """
    if allocations_finalized:
        return round_currency(row.end_balance)
    return round_currency(row.end_balance - row.allocated)


def category_transaction_maps(month: Month) -> Tuple[Dict[str, float], Dict[str, float], Dict[str, float]]:
    """Sum a month's transactions per category.

    Returns:
        Tuple of ``(spent, transfers, adjustments)`` maps keyed by category id.
        Transfers out of a category count negative, transfers in positive.
    """
    spent: Dict[str, float] = {}
    transfers: Dict[str, float] = {}
    adjustments: Dict[str, float] = {}

    for expense in month.expenses:
        if is_no_category(expense.category_id):
            continue
        spent[expense.category_id] = spent.get(expense.category_id, 0.0) + expense.amount

    for transfer in month.transfers:
        if not is_no_category(transfer.from_category_id):
            key = transfer.from_category_id
            transfers[key] = transfers.get(key, 0.0) - transfer.amount
        if not is_no_category(transfer.to_category_id):
            key = transfer.to_category_id
            transfers[key] = transfers.get(key, 0.0) + transfer.amount

    for adjustment in month.adjustments:
        if is_no_category(adjustment.category_id):
            continue
        adjustments[adjustment.category_id] = adjustments.get(adjustment.category_id, 0.0) + adjustment.amount

    return (
        {k: round_currency(v) for k, v in spent.items()},
        {k: round_currency(v) for k, v in transfers.items()},
        {k: round_currency(v) for k, v in adjustments.items()},
    )


def account_transaction_maps(
    month: Month,
) -> Tuple[Dict[str, float], Dict[str, float], Dict[str, float], Dict[str, float]]:
    """Sum a month's transactions per account.

    Returns:
        Tuple of ``(income, expenses, transfers, adjustments)`` maps keyed by
        account id
    """
    income: Dict[str, float] = {}
    expenses: Dict[str, float] = {}
    transfers: Dict[str, float] = {}
    adjustments: Dict[str, float] = {}

    for entry in month.income:
        if not is_no_account(entry.account_id):
            income[entry.account_id] = income.get(entry.account_id, 0.0) + entry.amount
    for entry in month.expenses:
        if not is_no_account(entry.account_id):
            expenses[entry.account_id] = expenses.get(entry.account_id, 0.0) + entry.amount
    for entry in month.transfers:
        if not is_no_account(entry.from_account_id):
            transfers[entry.from_account_id] = transfers.get(entry.from_account_id, 0.0) - entry.amount
        if not is_no_account(entry.to_account_id):
            transfers[entry.to_account_id] = transfers.get(entry.to_account_id, 0.0) + entry.amount
    for entry in month.adjustments:
        if not is_no_account(entry.account_id):
            adjustments[entry.account_id] = adjustments.get(entry.account_id, 0.0) + entry.amount

    def _rounded(values: Dict[str, float]) -> Dict[str, float]:
        return {k: round_currency(v) for k, v in values.items()}

    return _rounded(income), _rounded(expenses), _rounded(transfers), _rounded(adjustments)


def window_income(months_by_ordinal: Mapping[int, Month], ordinal: int, months_back: int) -> float:
    """Income total of the month ``months_back`` months before ``ordinal``.

    Returns ``0.0`` when the window month is not available or
    ``months_back`` is less than one.
    """
    if months_back < 1:
        return 0.0
    source = months_by_ordinal.get(ordinal - months_back)
    if source is None:
        return 0.0
    return source.total_income


def is_account_on_budget(account: Account, account_groups: Mapping[str, AccountGroup]) -> bool:
    """Whether an account counts towards the budget.

    Account group settings, when set, override the account's own flags.
    """
    group: Optional[AccountGroup] = None
    if account.account_group_id:
        group = account_groups.get(account.account_group_id)
    on_budget = group.on_budget if group is not None and group.on_budget is not None else account.on_budget
    is_active = group.is_active if group is not None and group.is_active is not None else account.is_active
    return bool(on_budget and is_active)


def calculate_total_available(budget: Budget) -> float:
    """Money still available to allocate ("ready to assign").

    On-budget, active account balances minus positive category balances.
    Negative category balances are overspending and are not added back.
    """
    account_total = 0.0
    for account in budget.accounts.values():
        if is_account_on_budget(account, budget.account_groups):
            account_total = round_currency(account_total + account.balance)
    positive_categories = 0.0
    for category in budget.categories.values():
        if category.balance > 0:
            positive_categories = round_currency(positive_categories + category.balance)
    return round_currency(account_total - positive_categories)
