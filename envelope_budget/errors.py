"""Error kinds raised by the budget engine.

``ValidationError`` is raised for bad user input and stays at the allocation
session boundary. ``PersistenceError`` and ``RecalculationError`` abort a
recalculation run and carry the phase in which they happened, so callers can
report it and retry. ``NotFoundError`` marks a referenced category or account
that no longer exists.
"""

from __future__ import annotations

from typing import Optional


class BudgetEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(BudgetEngineError, ValueError):
    """Malformed input, such as non-numeric allocation text."""


class InvalidTransitionError(ValidationError):
    """An allocation session operation was requested from the wrong state."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(f"Cannot {operation} allocations while session is '{state}'")
        self.operation = operation
        self.state = state


class NotFoundError(BudgetEngineError, KeyError):
    """A referenced category, account or document does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} '{entity_id}' not found")
        self.kind = kind
        self.entity_id = entity_id

    def __str__(self) -> str:
        return str(self.args[0])


class _PhasedError(BudgetEngineError):
    def __init__(self, message: str, *, phase: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase

    def __str__(self) -> str:
        if self.phase:
            return f"[{self.phase}] {self.message}"
        return self.message


class PersistenceError(_PhasedError):
    """Reading from or writing to the document store failed."""


class RecalculationError(_PhasedError):
    """Balances could not be brought back into agreement (e.g. a month gap)."""
