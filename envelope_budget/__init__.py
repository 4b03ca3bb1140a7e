"""Top-level package for the envelope budget engine.

The engine keeps a budget's category and account balances consistent across
months. The primary modules are:

* ``balances`` - pure balance arithmetic (end balances, allocation rules)
* ``projector`` - live balances for a month being edited
* ``allocations`` - the allocation editing session for one month
* ``recalculation`` - the forward-cascading recalculation orchestrator
* ``storage`` - document store interface with in-memory and SQLite backends
* ``audit`` - pandas ledger frames for verifying stored balances

To audit a local store from the command line you can execute:

```bash
python scripts/verify_balances.py --budget <budget-id>
```
"""

from .allocations import AllocationSession, SessionState
from .errors import (
    BudgetEngineError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RecalculationError,
    ValidationError,
)
from .models import Budget, Category, Account, AccountGroup, Month, MonthStatus
from .projector import project_live_balances
from .recalculation import RecalculationProgress, RecalculationResult, trigger_recalculation
from .storage import DocumentStore, InMemoryDocumentStore, SqliteDocumentStore

__all__ = [
    "AllocationSession",
    "SessionState",
    "BudgetEngineError",
    "InvalidTransitionError",
    "NotFoundError",
    "PersistenceError",
    "RecalculationError",
    "ValidationError",
    "Budget",
    "Category",
    "Account",
    "AccountGroup",
    "Month",
    "MonthStatus",
    "project_live_balances",
    "RecalculationProgress",
    "RecalculationResult",
    "trigger_recalculation",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
