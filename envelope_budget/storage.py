"""Document store collaborators used by the engine.

The engine reads a month, writes a batch of months, reads a budget and
writes a partial budget. Recalculated rows go through
``write_month_balances``, which merges them onto the stored month instead of
replacing it. ``DocumentStore`` defines these as coroutines;
``InMemoryDocumentStore`` backs tests and ``SqliteDocumentStore`` keeps JSON
documents in a local SQLite file.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .balances import compute_end_balance
from .errors import PersistenceError
from .models import Budget, Month, month_ordinal

logger = logging.getLogger(__name__)

# Top-level budget fields whose entries are merged per id instead of replaced
_MERGED_ENTITY_FIELDS = ('categories', 'accounts', 'account_groups')


def merge_budget_document(existing: Dict[str, Any], partial: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a partial budget update to a stored budget document.

    Entity maps (categories, accounts, account groups) merge field by field
    so ``{"categories": {"c1": {"balance": 5}}}`` only touches that balance.
    ``month_map`` entries merge per ordinal. Other keys are replaced.
    """
    merged = copy.deepcopy(existing)
    for key, value in partial.items():
        if key in _MERGED_ENTITY_FIELDS and isinstance(value, dict):
            target = merged.setdefault(key, {})
            for entity_id, fields in value.items():
                current = target.get(entity_id) or {}
                target[entity_id] = {**current, **copy.deepcopy(fields)}
        elif key == 'month_map' and isinstance(value, dict):
            target = merged.setdefault('month_map', {})
            for ordinal, entry in value.items():
                target[str(ordinal)] = copy.deepcopy(entry)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_month_balances(current: Month, computed: Month) -> Month:
    """Apply recalculated rows to the month document as it is stored now.

    Only the recalculated values are taken from ``computed``: category and
    account rows and ``previous_month_income``. Allocations, the finalized
    flag and transactions stay as stored, and each category's end balance
    is recomputed against the stored allocation.
    """
    merged = current.copy()
    category_rows = {}
    for category_id, row in computed.category_balances.items():
        row = replace(row)
        stored = current.category_balances.get(category_id)
        if stored is not None:
            row.allocated = stored.allocated
        row.end_balance = compute_end_balance(row)
        category_rows[category_id] = row
    for category_id, row in current.category_balances.items():
        category_rows.setdefault(category_id, replace(row))
    account_rows = {k: replace(v) for k, v in computed.account_balances.items()}
    for account_id, row in current.account_balances.items():
        account_rows.setdefault(account_id, replace(row))

    merged.category_balances = category_rows
    merged.account_balances = account_rows
    merged.previous_month_income = computed.previous_month_income
    merged.updated_at = computed.updated_at or current.updated_at
    return merged


class DocumentStore(ABC):
    """Persistence operations the engine depends on.

    Implementations are assumed eventually consistent; the only multi-document
    guarantee is best-effort batching in :meth:`write_months`.
    """

    @abstractmethod
    async def read_month(self, budget_id: str, year: int, month: int) -> Optional[Month]:
        ...

    @abstractmethod
    async def write_months(self, months: Sequence[Month]) -> None:
        ...

    @abstractmethod
    async def read_budget(self, budget_id: str) -> Optional[Budget]:
        ...

    @abstractmethod
    async def write_budget(self, budget_id: str, partial: Dict[str, Any]) -> None:
        ...

    async def write_month_balances(self, months: Sequence[Month]) -> None:
        """Write recalculated rows without replacing the rest of each month.

        The default reads every month and writes the merged documents back;
        stores that can do this atomically override it.
        """
        current = await asyncio.gather(*(self.read_month(m.budget_id, m.year, m.month) for m in months))
        await self.write_months([
            merge_month_balances(stored, computed) if stored is not None else computed
            for stored, computed in zip(current, months)
        ])

    async def save_budget(self, budget: Budget) -> None:
        """Write a full budget document."""
        await self.write_budget(budget.id, budget.to_dict())


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store.

    Documents are stored serialized, so callers never share mutable state
    with the store. ``latency`` yields to the event loop on every call, which
    lets tests interleave concurrent callers.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._budgets: Dict[str, Dict[str, Any]] = {}
        self._months: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.month_reads = 0
        self.budget_reads = 0
        self.budget_writes = 0
        self.month_write_batches: List[int] = []

    async def _tick(self) -> None:
        await asyncio.sleep(self.latency)

    async def read_month(self, budget_id: str, year: int, month: int) -> Optional[Month]:
        await self._tick()
        self.month_reads += 1
        data = self._months.get((budget_id, month_ordinal(year, month)))
        return Month.from_dict(copy.deepcopy(data)) if data is not None else None

    async def write_months(self, months: Sequence[Month]) -> None:
        await self._tick()
        self.month_write_batches.append(len(months))
        for month in months:
            self._months[(month.budget_id, month.ordinal)] = month.to_dict()

    async def write_month_balances(self, months: Sequence[Month]) -> None:
        await self._tick()
        self.month_write_batches.append(len(months))
        for month in months:
            key = (month.budget_id, month.ordinal)
            stored = self._months.get(key)
            if stored is not None:
                month = merge_month_balances(Month.from_dict(copy.deepcopy(stored)), month)
            self._months[key] = month.to_dict()

    async def read_budget(self, budget_id: str) -> Optional[Budget]:
        await self._tick()
        self.budget_reads += 1
        data = self._budgets.get(budget_id)
        return Budget.from_dict(budget_id, copy.deepcopy(data)) if data is not None else None

    async def write_budget(self, budget_id: str, partial: Dict[str, Any]) -> None:
        await self._tick()
        self.budget_writes += 1
        self._budgets[budget_id] = merge_budget_document(self._budgets.get(budget_id, {}), partial)

    def month_document(self, budget_id: str, year: int, month: int) -> Optional[Dict[str, Any]]:
        """Raw stored document, for assertions."""
        data = self._months.get((budget_id, month_ordinal(year, month)))
        return copy.deepcopy(data) if data is not None else None


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS budgets (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS months (
    budget_id TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    year INTEGER NOT NULL,
    month INTEGER NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT,
    PRIMARY KEY (budget_id, ordinal)
);

CREATE INDEX IF NOT EXISTS ix_months_budget ON months (budget_id);
"""


class SqliteDocumentStore(DocumentStore):
    """JSON documents in a SQLite file.

    Each operation opens its own connection inside a worker thread so the
    event loop never blocks on disk I/O.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)
        self._initialized = False
        self._init_lock = threading.Lock()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        self._initialized = True

    def _ensure_db(self) -> None:
        # Worker threads may race on first use
        with self._init_lock:
            if not self._initialized:
                self.init_db()

    async def _run(self, description: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (sqlite3.Error, OSError, ValueError) as e:
            logger.error("Store operation failed (%s): %s", description, e)
            raise PersistenceError(f"Failed {description}: {e}") from e

    # Months -----------------------------------------------------------------

    def _read_month_sync(self, budget_id: str, year: int, month: int) -> Optional[Month]:
        self._ensure_db()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT data FROM months WHERE budget_id = ? AND ordinal = ?",
                (budget_id, month_ordinal(year, month)),
            ).fetchone()
        if row is None:
            return None
        return Month.from_dict(json.loads(row[0]))

    def _write_months_sync(self, months: Sequence[Month]) -> None:
        self._ensure_db()
        now = datetime.now().isoformat()
        records = [
            (m.budget_id, m.ordinal, m.year, m.month, json.dumps(m.to_dict(), sort_keys=True), now)
            for m in months
        ]
        with self.connect() as conn:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO months (budget_id, ordinal, year, month, data, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (budget_id, ordinal) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    records,
                )

    def _write_month_balances_sync(self, months: Sequence[Month]) -> None:
        self._ensure_db()
        now = datetime.now().isoformat()
        with self.connect() as conn:
            with conn:
                for computed in months:
                    row = conn.execute(
                        "SELECT data FROM months WHERE budget_id = ? AND ordinal = ?",
                        (computed.budget_id, computed.ordinal),
                    ).fetchone()
                    month = computed
                    if row is not None:
                        month = merge_month_balances(Month.from_dict(json.loads(row[0])), computed)
                    conn.execute(
                        """
                        INSERT INTO months (budget_id, ordinal, year, month, data, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT (budget_id, ordinal) DO UPDATE SET
                            data = excluded.data,
                            updated_at = excluded.updated_at
                        """,
                        (month.budget_id, month.ordinal, month.year, month.month,
                         json.dumps(month.to_dict(), sort_keys=True), now),
                    )

    async def read_month(self, budget_id: str, year: int, month: int) -> Optional[Month]:
        return await self._run(f"reading month {year}/{month}", self._read_month_sync, budget_id, year, month)

    async def write_months(self, months: Sequence[Month]) -> None:
        if not months:
            return
        await self._run(f"writing {len(months)} month(s)", self._write_months_sync, list(months))

    async def write_month_balances(self, months: Sequence[Month]) -> None:
        if not months:
            return
        await self._run(
            f"writing balances of {len(months)} month(s)", self._write_month_balances_sync, list(months),
        )

    # Budgets ----------------------------------------------------------------

    def _read_budget_document(self, conn: sqlite3.Connection, budget_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT data FROM budgets WHERE id = ?", (budget_id,)).fetchone()
        return json.loads(row[0]) if row is not None else None

    def _read_budget_sync(self, budget_id: str) -> Optional[Budget]:
        self._ensure_db()
        with self.connect() as conn:
            data = self._read_budget_document(conn, budget_id)
        return Budget.from_dict(budget_id, data) if data is not None else None

    def _write_budget_sync(self, budget_id: str, partial: Dict[str, Any]) -> None:
        self._ensure_db()
        with self.connect() as conn:
            with conn:
                existing = self._read_budget_document(conn, budget_id) or {}
                merged = merge_budget_document(existing, partial)
                conn.execute(
                    """
                    INSERT INTO budgets (id, data, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
                    """,
                    (budget_id, json.dumps(merged, sort_keys=True), datetime.now().isoformat()),
                )

    async def read_budget(self, budget_id: str) -> Optional[Budget]:
        return await self._run(f"reading budget {budget_id}", self._read_budget_sync, budget_id)

    async def write_budget(self, budget_id: str, partial: Dict[str, Any]) -> None:
        await self._run(f"writing budget {budget_id}", self._write_budget_sync, budget_id, partial)

    def list_budget_ids(self) -> List[str]:
        self._ensure_db()
        with self.connect() as conn:
            return [row[0] for row in conn.execute("SELECT id FROM budgets ORDER BY id")]
