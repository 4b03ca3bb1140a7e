"""Live balance projection for the month currently open for editing.

The projector combines a persisted month with in-progress draft allocations
and answers "what would the balances be" without touching persisted state.
It is synchronous, does no I/O and is cheap enough to call on every render.
"""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from dataclasses import replace
from typing import Callable, Dict, Iterator, Mapping, Optional

from .balances import compute_end_balance
from .currency import round_currency
from .models import Category, CategoryMonthBalance, Month

AllocationResolver = Callable[[str], float]


class LiveBalances(MappingABC):
    """Read-only, lazily computed ``category_id -> CategoryMonthBalance`` view.

    Rows are computed on first access and memoized. The object holds no
    reference that lets it mutate the month or categories it was built from.
    """

    def __init__(
        self,
        month: Optional[Month],
        categories: Mapping[str, Category],
        is_draft_mode: bool,
        allocations_finalized: bool,
        get_allocation_amount: AllocationResolver,
    ) -> None:
        self._persisted: Dict[str, CategoryMonthBalance] = dict(month.category_balances) if month else {}
        self._categories = categories
        self.is_draft_mode = is_draft_mode
        self.allocations_finalized = allocations_finalized
        self._resolve = get_allocation_amount
        self._rows: Dict[str, CategoryMonthBalance] = {}

    # Mapping protocol -------------------------------------------------------

    def __getitem__(self, category_id: str) -> CategoryMonthBalance:
        if category_id not in self._categories and category_id not in self._persisted:
            raise KeyError(category_id)
        row = self._rows.get(category_id)
        if row is None:
            row = self._project(category_id)
            self._rows[category_id] = row
        return row

    def __iter__(self) -> Iterator[str]:
        yield from self._categories
        for category_id in self._persisted:
            if category_id not in self._categories:
                yield category_id

    def __len__(self) -> int:
        return len(set(self._categories) | set(self._persisted))

    # Projection -------------------------------------------------------------

    def _project(self, category_id: str) -> CategoryMonthBalance:
        existing = self._persisted.get(category_id)
        if not self.is_draft_mode:
            if existing is not None:
                return replace(existing)
            return CategoryMonthBalance(category_id=category_id)

        base = existing or CategoryMonthBalance(category_id=category_id)
        row = CategoryMonthBalance(
            category_id=category_id,
            start_balance=base.start_balance,
            allocated=round_currency(self._resolve(category_id)),
            spent=base.spent,
            transfers=base.transfers,
            adjustments=base.adjustments,
        )
        row.end_balance = compute_end_balance(row)
        return row

    def saved_allocation(self, category_id: str) -> float:
        existing = self._persisted.get(category_id)
        return existing.allocated if existing is not None else 0.0

    def all_time_balance(self, category_id: str) -> float:
        """Category balance across all history, including this month's view.

        For an unfinalized month the stored balance does not yet contain this
        month's allocation, so the projected (draft or saved) allocation is
        added. For a finalized month the stored balance already contains the
        saved allocation; in draft mode only the difference is applied.
        """
        category = self._categories.get(category_id)
        stored = category.balance if category is not None else 0.0
        allocated = self[category_id].allocated
        if not self.allocations_finalized:
            return round_currency(stored + allocated)
        if self.is_draft_mode:
            return round_currency(stored + allocated - self.saved_allocation(category_id))
        return round_currency(stored)

    def total_allocated(self) -> float:
        total = 0.0
        for category_id in self:
            total = round_currency(total + self[category_id].allocated)
        return total


def project_live_balances(
    month: Optional[Month],
    categories: Mapping[str, Category],
    is_draft_mode: bool,
    allocations_finalized: bool,
    get_allocation_amount: AllocationResolver,
) -> LiveBalances:
    """Build the live balance view for a month.

    Args:
        month: Persisted month, or ``None`` if it has not been created yet
        categories: Budget categories keyed by id
        is_draft_mode: Whether draft allocations should replace saved ones
        allocations_finalized: Whether the viewed month is finalized
        get_allocation_amount: Resolver for a category's draft allocation

    Returns:
        A lazily evaluated :class:`LiveBalances` mapping
    """
    return LiveBalances(month, categories, is_draft_mode, allocations_finalized, get_allocation_amount)
