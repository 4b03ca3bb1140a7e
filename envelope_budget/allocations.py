"""Allocation session: interactive editing of one month's allocations.

A session wraps one month of one budget and moves through explicit states::

    unfinalized / viewing-finalized --edit--> editing
    editing --save--> saved-unfinalized   (month not finalized)
    editing --save--> finalized           (re-editing a finalized month)
    editing / saved-unfinalized --finalize--> finalized
    editing --cancel--> state before edit
    any saved state --delete--> unfinalized

Typed amounts are validated when entered, so a ``ValidationError`` never
reaches the recalculation orchestrator.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from .balances import compute_end_balance, derive_allocation_amount
from .currency import parse_amount, round_currency
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import Budget, Category, CategoryMonthBalance, Month, is_no_category
from .months import mark_months_needing_recalculation
from .projector import LiveBalances, project_live_balances
from .recalculation import ProgressCallback, RecalculationResult, trigger_recalculation
from .storage import DocumentStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNFINALIZED = 'unfinalized'
    EDITING = 'editing'
    SAVED_UNFINALIZED = 'saved-unfinalized'
    VIEWING_FINALIZED = 'viewing-finalized'
    FINALIZED = 'finalized'


def initial_state(month: Month) -> SessionState:
    """State a session opens in for a persisted month."""
    if month.are_allocations_finalized:
        return SessionState.VIEWING_FINALIZED
    if any(row.allocated != 0 for row in month.category_balances.values()):
        return SessionState.SAVED_UNFINALIZED
    return SessionState.UNFINALIZED


def seed_draft_allocations(month: Month, categories: Dict[str, Category]) -> Dict[str, str]:
    """Initial draft text for every editable category.

    Percentage categories are derived and never typed, so they are skipped.
    An existing allocation above zero wins over the category default; with
    neither the draft is blank.
    """
    drafts: Dict[str, str] = {}
    for category_id, category in categories.items():
        if is_no_category(category_id) or category.is_percentage:
            continue
        row = month.category_balances.get(category_id)
        if row is not None and row.allocated > 0:
            drafts[category_id] = f"{row.allocated:.2f}"
        elif category.default_monthly_amount is not None and category.default_monthly_amount > 0:
            drafts[category_id] = f"{round_currency(category.default_monthly_amount):.2f}"
        else:
            drafts[category_id] = ''
    return drafts


class AllocationSession:
    """Editing session for one month's allocations.

    Args:
        store: Document store used by the persisting transitions
        budget: Budget the month belongs to
        month: Persisted month being viewed
    """

    def __init__(self, store: DocumentStore, budget: Budget, month: Month) -> None:
        if month.budget_id and month.budget_id != budget.id:
            raise ValidationError(f"{month.label} belongs to budget '{month.budget_id}', not '{budget.id}'")
        self.store = store
        self.budget = budget
        self.month = month
        self.state = initial_state(month)
        self.draft_allocations: Dict[str, str] = {}
        self._state_before_edit: Optional[SessionState] = None

    # State helpers ----------------------------------------------------------

    @property
    def is_draft_mode(self) -> bool:
        return self.state == SessionState.EDITING

    def _require(self, operation: str, *allowed: SessionState) -> None:
        if self.state not in allowed:
            raise InvalidTransitionError(operation, self.state.value)

    def _editable_categories(self) -> Dict[str, Category]:
        return {cid: c for cid, c in self.budget.categories.items() if not is_no_category(cid)}

    # Draft amounts ----------------------------------------------------------

    def set_draft_amount(self, category_id: str, text: Union[str, float]) -> None:
        """Record typed allocation text for a category.

        Numbers are accepted too and stored as two-decimal text.

        Raises:
            InvalidTransitionError: If the session is not editing
            NotFoundError: If the category does not exist
            ValidationError: If the text is not a valid amount, or the
                category's allocation is derived from income
        """
        self._require('change', SessionState.EDITING)
        category = self.budget.categories.get(category_id)
        if category is None or is_no_category(category_id):
            raise NotFoundError('category', category_id)
        if category.is_percentage:
            raise ValidationError(f"Allocation for '{category.name or category_id}' is derived from income")
        amount = parse_amount(text)
        if amount is None:
            self.draft_allocations[category_id] = ''
        elif isinstance(text, str):
            self.draft_allocations[category_id] = text.strip()
        else:
            self.draft_allocations[category_id] = f"{amount:.2f}"

    def get_allocation_amount(self, category_id: str) -> float:
        """Resolved allocation for a category under the current state.

        Outside editing this is the saved allocation. While editing,
        percentage categories are derived from the month's window income,
        typed text is used as typed and blank text falls back to the
        category's default rule.
        """
        if not self.is_draft_mode:
            row = self.month.category_balances.get(category_id)
            return row.allocated if row is not None else 0.0

        category = self.budget.categories.get(category_id)
        if category is None:
            return 0.0
        window_income = self.month.previous_month_income
        if category.is_percentage:
            return derive_allocation_amount(category, window_income)
        typed = parse_amount(self.draft_allocations.get(category_id, ''))
        if typed is not None:
            return typed
        return derive_allocation_amount(category, window_income)

    # Derived values ---------------------------------------------------------

    @property
    def available_now(self) -> float:
        return round_currency(self.budget.total_available)

    @property
    def current_draft_total(self) -> float:
        total = 0.0
        for category_id in self._editable_categories():
            total = round_currency(total + self.get_allocation_amount(category_id))
        return total

    @property
    def previously_saved_total(self) -> float:
        """Finalized allocation total; unfinalized allocations never moved money."""
        if not self.month.are_allocations_finalized:
            return 0.0
        total = 0.0
        for row in self.month.category_balances.values():
            total = round_currency(total + row.allocated)
        return total

    @property
    def draft_change_amount(self) -> float:
        return round_currency(self.current_draft_total - self.previously_saved_total)

    @property
    def available_after_apply(self) -> float:
        return round_currency(self.available_now - self.draft_change_amount)

    def live_balances(self) -> LiveBalances:
        return project_live_balances(
            self.month,
            self.budget.categories,
            self.is_draft_mode,
            self.month.are_allocations_finalized,
            self.get_allocation_amount,
        )

    # Transitions ------------------------------------------------------------

    def edit(self) -> None:
        self._require(
            'edit',
            SessionState.UNFINALIZED,
            SessionState.SAVED_UNFINALIZED,
            SessionState.VIEWING_FINALIZED,
            SessionState.FINALIZED,
        )
        self._state_before_edit = self.state
        self.draft_allocations = seed_draft_allocations(self.month, self._editable_categories())
        self.state = SessionState.EDITING

    def cancel(self) -> None:
        self._require('cancel', SessionState.EDITING)
        self.draft_allocations = {}
        self.state = self._state_before_edit or initial_state(self.month)
        self._state_before_edit = None

    async def save(
        self,
        recalculate: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[RecalculationResult]:
        """Persist draft amounts as the month's allocations.

        For an unfinalized month the allocations are a working copy and do
        not move money. Saving a finalized month that is being re-edited
        changes committed allocations, so later months are marked stale and
        recalculated. Unlike saving an unfinalized month, that path rewrites
        stored category balances and the budget's ``total_available``.
        """
        self._require('save', SessionState.EDITING)
        if self.month.are_allocations_finalized:
            return await self._commit(finalized=True, recalculate=recalculate, on_progress=on_progress)
        await self._write_allocations(self._resolved_allocations(), finalized=False)
        self._finish_edit(SessionState.SAVED_UNFINALIZED)
        logger.info("Saved draft allocations for %s", self.month.label)
        return None

    async def finalize(
        self,
        recalculate: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[RecalculationResult]:
        """Commit allocations and carry them into every later month.

        Returns:
            The recalculation result, or ``None`` when ``recalculate`` is off
        """
        self._require('finalize', SessionState.EDITING, SessionState.SAVED_UNFINALIZED)
        return await self._commit(finalized=True, recalculate=recalculate, on_progress=on_progress)

    async def delete(
        self,
        recalculate: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[RecalculationResult]:
        """Clear every allocation of the month and unfinalize it."""
        self._require(
            'delete',
            SessionState.EDITING,
            SessionState.SAVED_UNFINALIZED,
            SessionState.VIEWING_FINALIZED,
            SessionState.FINALIZED,
        )
        zeros = {category_id: 0.0 for category_id in self.month.category_balances}
        return await self._commit(finalized=False, recalculate=recalculate, on_progress=on_progress, amounts=zeros)

    # Long-form names
    edit_allocations = edit
    save_allocations = save
    finalize_allocations = finalize
    cancel_edits = cancel
    delete_allocations = delete

    # Persistence ------------------------------------------------------------

    def _resolved_allocations(self) -> Dict[str, float]:
        if self.state == SessionState.EDITING:
            return {cid: self.get_allocation_amount(cid) for cid in self._editable_categories()}
        return {cid: row.allocated for cid, row in self.month.category_balances.items()}

    def _finish_edit(self, state: SessionState) -> None:
        self.draft_allocations = {}
        self._state_before_edit = None
        self.state = state

    async def _write_allocations(self, amounts: Dict[str, float], finalized: bool) -> Month:
        # Start from the stored month; a recalculation may have moved its rows
        updated = await self.store.read_month(self.budget.id, self.month.year, self.month.month)
        if updated is None:
            raise NotFoundError('month', self.month.label)
        for category_id, amount in amounts.items():
            row = updated.category_balances.get(category_id)
            if row is None:
                if round_currency(amount) == 0:
                    continue
                row = CategoryMonthBalance(category_id=category_id)
                updated.category_balances[category_id] = row
            row.allocated = round_currency(amount)
            row.end_balance = compute_end_balance(row)
        updated.are_allocations_finalized = finalized
        updated.updated_at = datetime.now().isoformat()
        await self.store.write_months([updated])
        self.month = updated
        return updated

    async def _commit(
        self,
        finalized: bool,
        recalculate: bool,
        on_progress: Optional[ProgressCallback],
        amounts: Optional[Dict[str, float]] = None,
    ) -> Optional[RecalculationResult]:
        if amounts is None:
            amounts = self._resolved_allocations()
        await self._write_allocations(amounts, finalized=finalized)

        changed: List[int] = await mark_months_needing_recalculation(
            self.store, self.budget.id, self.month.year, self.month.month,
        )
        self._finish_edit(SessionState.FINALIZED if finalized else SessionState.UNFINALIZED)
        logger.info(
            "%s allocations for %s, %d month(s) marked stale",
            'Committed' if finalized else 'Cleared', self.month.label, len(changed),
        )

        if not recalculate:
            await self.refresh()
            return None
        result = await trigger_recalculation(
            self.store,
            self.budget.id,
            triggering_month_ordinal=self.month.ordinal,
            on_progress=on_progress,
        )
        await self.refresh()
        return result

    async def refresh(self) -> None:
        """Reload the budget and month from the store."""
        budget = await self.store.read_budget(self.budget.id)
        if budget is None:
            raise NotFoundError('budget', self.budget.id)
        month = await self.store.read_month(self.budget.id, self.month.year, self.month.month)
        if month is None:
            raise NotFoundError('month', self.month.label)
        self.budget = budget
        self.month = month
