"""Document models for budgets and months.

Every model round-trips through plain dictionaries (``to_dict`` /
``from_dict``) so the persistence collaborator only ever deals with JSON-like
documents. Numeric fields that are missing from a stored document load as
``0.0`` and are rounded to cents on the way in.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from .currency import round_currency, sum_currency
from .settings import get_config_value

MONTH_NAMES: List[str] = get_config_value(
    'engine', 'month_names',
    default=['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec'],
)
NO_CATEGORY_ID: str = get_config_value('engine', 'special_ids', 'no_category', default='__NO_CATEGORY__')
NO_ACCOUNT_ID: str = get_config_value('engine', 'special_ids', 'no_account', default='__NO_ACCOUNT__')
DEFAULT_MONTHS_BACK: int = int(get_config_value('engine', 'budget', 'percentage_income_months_back', default=1))

FIXED = 'fixed'
PERCENTAGE = 'percentage'


def is_no_category(category_id: Optional[str]) -> bool:
    """True for the special category that never tracks a balance."""
    return not category_id or category_id == NO_CATEGORY_ID


def is_no_account(account_id: Optional[str]) -> bool:
    """True for the special account that never tracks a balance."""
    return not account_id or account_id == NO_ACCOUNT_ID


def month_ordinal(year: int, month: int) -> int:
    """Chronological key for a calendar month (``year * 12 + month``)."""
    if not 1 <= int(month) <= 12:
        raise ValueError(f"Month must be between 1 and 12, got {month}")
    return int(year) * 12 + int(month)


def ordinal_to_year_month(ordinal: int) -> tuple:
    """Inverse of :func:`month_ordinal`."""
    year, index = divmod(int(ordinal) - 1, 12)
    return year, index + 1


def month_label(year: int, month: int) -> str:
    return f"{MONTH_NAMES[month - 1]} {year}"


def _opt_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


# ---------------------------------------------------------------------------
# Budget-level entities
# ---------------------------------------------------------------------------


@dataclass
class Category:
    id: str
    name: str = ''
    category_group_id: Optional[str] = None
    sort_order: int = 0
    description: Optional[str] = None
    default_monthly_type: Optional[str] = None
    default_monthly_amount: Optional[float] = None
    balance: float = 0.0
    opening_balance: float = 0.0

    @property
    def is_percentage(self) -> bool:
        return self.default_monthly_type == PERCENTAGE and self.default_monthly_amount is not None

    @property
    def is_fixed(self) -> bool:
        return self.default_monthly_type == FIXED and self.default_monthly_amount is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'category_group_id': self.category_group_id,
            'sort_order': self.sort_order,
            'description': self.description,
            'default_monthly_type': self.default_monthly_type,
            'default_monthly_amount': self.default_monthly_amount,
            'balance': round_currency(self.balance),
            'opening_balance': round_currency(self.opening_balance),
        }

    @classmethod
    def from_dict(cls, category_id: str, data: Dict[str, Any]) -> 'Category':
        amount = data.get('default_monthly_amount')
        return cls(
            id=category_id,
            name=data.get('name') or '',
            category_group_id=data.get('category_group_id'),
            sort_order=int(data.get('sort_order') or 0),
            description=data.get('description'),
            default_monthly_type=data.get('default_monthly_type'),
            default_monthly_amount=None if amount is None else float(amount),
            balance=round_currency(data.get('balance')),
            opening_balance=round_currency(data.get('opening_balance')),
        )


@dataclass
class AccountGroup:
    id: str
    name: str = ''
    sort_order: int = 0
    expected_balance: str = 'positive'
    on_budget: Optional[bool] = None
    is_active: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'sort_order': self.sort_order,
            'expected_balance': self.expected_balance,
            'on_budget': self.on_budget,
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, group_id: str, data: Dict[str, Any]) -> 'AccountGroup':
        return cls(
            id=group_id,
            name=data.get('name') or '',
            sort_order=int(data.get('sort_order') or 0),
            expected_balance=data.get('expected_balance') or 'positive',
            on_budget=_opt_bool(data.get('on_budget')),
            is_active=_opt_bool(data.get('is_active')),
        )


@dataclass
class Account:
    id: str
    nickname: str = ''
    account_group_id: Optional[str] = None
    sort_order: int = 0
    balance: float = 0.0
    opening_balance: float = 0.0
    on_budget: bool = True
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nickname': self.nickname,
            'account_group_id': self.account_group_id,
            'sort_order': self.sort_order,
            'balance': round_currency(self.balance),
            'opening_balance': round_currency(self.opening_balance),
            'on_budget': self.on_budget,
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, account_id: str, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=account_id,
            nickname=data.get('nickname') or '',
            account_group_id=data.get('account_group_id'),
            sort_order=int(data.get('sort_order') or 0),
            balance=round_currency(data.get('balance')),
            opening_balance=round_currency(data.get('opening_balance')),
            on_budget=data.get('on_budget') is not False,
            is_active=data.get('is_active') is not False,
        )


# ---------------------------------------------------------------------------
# Month rows
# ---------------------------------------------------------------------------


@dataclass
class CategoryMonthBalance:
    category_id: str
    start_balance: float = 0.0
    allocated: float = 0.0
    spent: float = 0.0
    transfers: float = 0.0
    adjustments: float = 0.0
    end_balance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_balance': self.start_balance,
            'allocated': self.allocated,
            'spent': self.spent,
            'transfers': self.transfers,
            'adjustments': self.adjustments,
            'end_balance': self.end_balance,
        }

    @classmethod
    def from_dict(cls, category_id: str, data: Dict[str, Any]) -> 'CategoryMonthBalance':
        return cls(
            category_id=category_id,
            start_balance=round_currency(data.get('start_balance')),
            allocated=round_currency(data.get('allocated')),
            spent=round_currency(data.get('spent')),
            transfers=round_currency(data.get('transfers')),
            adjustments=round_currency(data.get('adjustments')),
            end_balance=round_currency(data.get('end_balance')),
        )


@dataclass
class AccountMonthBalance:
    account_id: str
    start_balance: float = 0.0
    income: float = 0.0
    expenses: float = 0.0
    transfers: float = 0.0
    adjustments: float = 0.0
    net_change: float = 0.0
    end_balance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_balance': self.start_balance,
            'income': self.income,
            'expenses': self.expenses,
            'transfers': self.transfers,
            'adjustments': self.adjustments,
            'net_change': self.net_change,
            'end_balance': self.end_balance,
        }

    @classmethod
    def from_dict(cls, account_id: str, data: Dict[str, Any]) -> 'AccountMonthBalance':
        return cls(
            account_id=account_id,
            start_balance=round_currency(data.get('start_balance')),
            income=round_currency(data.get('income')),
            expenses=round_currency(data.get('expenses')),
            transfers=round_currency(data.get('transfers')),
            adjustments=round_currency(data.get('adjustments')),
            net_change=round_currency(data.get('net_change')),
            end_balance=round_currency(data.get('end_balance')),
        )


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass
class Income:
    id: str
    amount: float
    account_id: Optional[str] = None
    date: Optional[str] = None
    payee: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': self.amount,
            'account_id': self.account_id,
            'date': self.date,
            'payee': self.payee,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Income':
        return cls(
            id=str(data.get('id', '')),
            amount=round_currency(data.get('amount')),
            account_id=data.get('account_id'),
            date=data.get('date'),
            payee=data.get('payee'),
            description=data.get('description'),
        )


@dataclass
class Expense:
    """A spend entry. Negative amounts are money out, positive are refunds."""

    id: str
    amount: float
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    date: Optional[str] = None
    payee: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': self.amount,
            'category_id': self.category_id,
            'account_id': self.account_id,
            'date': self.date,
            'payee': self.payee,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Expense':
        return cls(
            id=str(data.get('id', '')),
            amount=round_currency(data.get('amount')),
            category_id=data.get('category_id'),
            account_id=data.get('account_id'),
            date=data.get('date'),
            payee=data.get('payee'),
            description=data.get('description'),
        )


@dataclass
class Transfer:
    """Moves money between accounts and/or categories. Amount is positive."""

    id: str
    amount: float
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    from_category_id: Optional[str] = None
    to_category_id: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': self.amount,
            'from_account_id': self.from_account_id,
            'to_account_id': self.to_account_id,
            'from_category_id': self.from_category_id,
            'to_category_id': self.to_category_id,
            'date': self.date,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transfer':
        return cls(
            id=str(data.get('id', '')),
            amount=round_currency(data.get('amount')),
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            from_category_id=data.get('from_category_id'),
            to_category_id=data.get('to_category_id'),
            date=data.get('date'),
            description=data.get('description'),
        )


@dataclass
class Adjustment:
    """Manual correction applied directly to an account and/or category."""

    id: str
    amount: float
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': self.amount,
            'account_id': self.account_id,
            'category_id': self.category_id,
            'date': self.date,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Adjustment':
        return cls(
            id=str(data.get('id', '')),
            amount=round_currency(data.get('amount')),
            account_id=data.get('account_id'),
            category_id=data.get('category_id'),
            date=data.get('date'),
            description=data.get('description'),
        )


# ---------------------------------------------------------------------------
# Month document
# ---------------------------------------------------------------------------


@dataclass
class Month:
    budget_id: str
    year: int
    month: int
    income: List[Income] = field(default_factory=list)
    expenses: List[Expense] = field(default_factory=list)
    transfers: List[Transfer] = field(default_factory=list)
    adjustments: List[Adjustment] = field(default_factory=list)
    category_balances: Dict[str, CategoryMonthBalance] = field(default_factory=dict)
    account_balances: Dict[str, AccountMonthBalance] = field(default_factory=dict)
    are_allocations_finalized: bool = False
    previous_month_income: float = 0.0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def ordinal(self) -> int:
        return month_ordinal(self.year, self.month)

    @property
    def label(self) -> str:
        return month_label(self.year, self.month)

    @property
    def total_income(self) -> float:
        return sum_currency(i.amount for i in self.income)

    @property
    def total_expenses(self) -> float:
        return sum_currency(e.amount for e in self.expenses)

    def copy(self) -> 'Month':
        """Deep-enough copy: rows and transaction lists are fresh objects."""
        return replace(
            self,
            income=[replace(i) for i in self.income],
            expenses=[replace(e) for e in self.expenses],
            transfers=[replace(t) for t in self.transfers],
            adjustments=[replace(a) for a in self.adjustments],
            category_balances={k: replace(v) for k, v in self.category_balances.items()},
            account_balances={k: replace(v) for k, v in self.account_balances.items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'budget_id': self.budget_id,
            'year': self.year,
            'month': self.month,
            'year_month_ordinal': self.ordinal,
            'income': [i.to_dict() for i in self.income],
            'expenses': [e.to_dict() for e in self.expenses],
            'transfers': [t.to_dict() for t in self.transfers],
            'adjustments': [a.to_dict() for a in self.adjustments],
            'category_balances': {k: v.to_dict() for k, v in self.category_balances.items()},
            'account_balances': {k: v.to_dict() for k, v in self.account_balances.items()},
            'are_allocations_finalized': self.are_allocations_finalized,
            'previous_month_income': self.previous_month_income,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Month':
        return cls(
            budget_id=data.get('budget_id') or '',
            year=int(data['year']),
            month=int(data['month']),
            income=[Income.from_dict(i) for i in data.get('income') or []],
            expenses=[Expense.from_dict(e) for e in data.get('expenses') or []],
            transfers=[Transfer.from_dict(t) for t in data.get('transfers') or []],
            adjustments=[Adjustment.from_dict(a) for a in data.get('adjustments') or []],
            category_balances={
                k: CategoryMonthBalance.from_dict(k, v)
                for k, v in (data.get('category_balances') or {}).items()
            },
            account_balances={
                k: AccountMonthBalance.from_dict(k, v)
                for k, v in (data.get('account_balances') or {}).items()
            },
            are_allocations_finalized=bool(data.get('are_allocations_finalized', False)),
            previous_month_income=round_currency(data.get('previous_month_income')),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
        )


# ---------------------------------------------------------------------------
# Month map and budget document
# ---------------------------------------------------------------------------


class MonthStatus(str, Enum):
    FRESH = 'fresh'
    STALE = 'stale'
    RECALCULATING = 'recalculating'


@dataclass
class MonthMapEntry:
    status: MonthStatus = MonthStatus.FRESH

    @property
    def needs_recalculation(self) -> bool:
        return self.status != MonthStatus.FRESH

    def to_dict(self) -> Dict[str, Any]:
        return {'status': self.status.value}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MonthMapEntry':
        data = data or {}
        raw = data.get('status')
        if raw is None and data.get('needs_recalculation'):
            raw = MonthStatus.STALE.value
        try:
            status = MonthStatus(raw or MonthStatus.FRESH.value)
        except ValueError:
            status = MonthStatus.STALE
        # A run that died mid-flight never cleared its months
        if status == MonthStatus.RECALCULATING:
            status = MonthStatus.STALE
        return cls(status=status)


@dataclass
class Budget:
    id: str
    name: str = ''
    categories: Dict[str, Category] = field(default_factory=dict)
    accounts: Dict[str, Account] = field(default_factory=dict)
    account_groups: Dict[str, AccountGroup] = field(default_factory=dict)
    category_groups: List[Dict[str, Any]] = field(default_factory=list)
    month_map: Dict[int, MonthMapEntry] = field(default_factory=dict)
    percentage_income_months_back: int = DEFAULT_MONTHS_BACK
    total_available: float = 0.0

    def ordinals(self) -> List[int]:
        return sorted(self.month_map)

    def stale_ordinals(self) -> List[int]:
        return sorted(o for o, entry in self.month_map.items() if entry.needs_recalculation)

    def copy(self) -> 'Budget':
        return Budget.from_dict(self.id, self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'categories': {k: v.to_dict() for k, v in self.categories.items()},
            'accounts': {k: v.to_dict() for k, v in self.accounts.items()},
            'account_groups': {k: v.to_dict() for k, v in self.account_groups.items()},
            'category_groups': [dict(g) for g in self.category_groups],
            'month_map': {str(k): v.to_dict() for k, v in sorted(self.month_map.items())},
            'percentage_income_months_back': self.percentage_income_months_back,
            'total_available': round_currency(self.total_available),
        }

    @classmethod
    def from_dict(cls, budget_id: str, data: Dict[str, Any]) -> 'Budget':
        months_back = data.get('percentage_income_months_back')
        return cls(
            id=budget_id,
            name=data.get('name') or '',
            categories={k: Category.from_dict(k, v) for k, v in (data.get('categories') or {}).items()},
            accounts={k: Account.from_dict(k, v) for k, v in (data.get('accounts') or {}).items()},
            account_groups={
                k: AccountGroup.from_dict(k, v) for k, v in (data.get('account_groups') or {}).items()
            },
            category_groups=[dict(g) for g in data.get('category_groups') or []],
            month_map={int(k): MonthMapEntry.from_dict(v) for k, v in (data.get('month_map') or {}).items()},
            percentage_income_months_back=DEFAULT_MONTHS_BACK if months_back is None else int(months_back),
            total_available=round_currency(data.get('total_available')),
        )
