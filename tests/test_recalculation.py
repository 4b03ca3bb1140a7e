import asyncio
import logging

import pytest

from envelope_budget.errors import PersistenceError, RecalculationError, ValidationError
from envelope_budget.models import (
    Account,
    AccountMonthBalance,
    Budget,
    Category,
    CategoryMonthBalance,
    Expense,
    Income,
    Month,
    MonthMapEntry,
    MonthStatus,
    month_ordinal,
)
from envelope_budget.recalculation import (
    EMPTY_SNAPSHOT,
    PreviousMonthSnapshot,
    extract_snapshot,
    is_recalculation_in_progress,
    recalculate_month,
    trigger_recalculation,
)
from envelope_budget.storage import InMemoryDocumentStore

JAN = month_ordinal(2024, 1)


def _budget(ordinals, stale=()):
    return Budget(
        id='b1',
        categories={
            'groceries': Category(id='groceries', name='Groceries'),
            'vacation': Category(id='vacation', name='Vacation'),
        },
        accounts={'checking': Account(id='checking', nickname='Checking')},
        month_map={
            o: MonthMapEntry(MonthStatus.STALE if o in stale else MonthStatus.FRESH) for o in ordinals
        },
    )


def _month(month, allocations, expenses=(), income=0.0, finalized=True):
    return Month(
        budget_id='b1',
        year=2024,
        month=month,
        income=[Income(id=f'i{month}', amount=income, account_id='checking')] if income else [],
        expenses=[
            Expense(id=f'e{month}-{n}', amount=amount, category_id=category_id, account_id='checking')
            for n, (category_id, amount) in enumerate(expenses)
        ],
        category_balances={
            category_id: CategoryMonthBalance(category_id=category_id, allocated=amount)
            for category_id, amount in allocations.items()
        },
        are_allocations_finalized=finalized,
    )


def _seed(store, budget, months):
    async def seed():
        await store.save_budget(budget)
        await store.write_months(months)

    asyncio.run(seed())
    store.month_write_batches.clear()


def _three_months(store, stale=(JAN, JAN + 1, JAN + 2)):
    months = [
        _month(1, {'groceries': 100.0}, expenses=[('groceries', -30.0)], income=1000.0),
        _month(2, {'groceries': 50.0}),
        _month(3, {'groceries': 50.0}),
    ]
    _seed(store, _budget([JAN, JAN + 1, JAN + 2], stale=stale), months)


def test_forward_cascade_updates_later_months_and_clears_flags():
    store = InMemoryDocumentStore()
    _three_months(store)
    progress = []

    result = asyncio.run(trigger_recalculation(store, 'b1', on_progress=progress.append))

    budget = asyncio.run(store.read_budget('b1'))
    march = asyncio.run(store.read_month('b1', 2024, 3))
    february = asyncio.run(store.read_month('b1', 2024, 2))

    assert february.category_balances['groceries'].start_balance == 70.0
    assert february.category_balances['groceries'].end_balance == 120.0
    assert march.category_balances['groceries'].start_balance == 120.0
    assert march.category_balances['groceries'].end_balance == 170.0
    assert march.account_balances['checking'].end_balance == 970.0
    assert budget.stale_ordinals() == []
    assert budget.categories['groceries'].balance == 170.0
    assert budget.accounts['checking'].balance == 970.0
    assert budget.total_available == 800.0

    assert result.months_processed == 3
    assert result.months_updated == 3
    assert result.categories_touched == 1
    assert result.accounts_touched == 1
    assert result.start_ordinal == JAN

    phases = [p.phase for p in progress]
    assert phases[0] == 'reading-budget'
    assert phases[-1] == 'complete'
    order = ['reading-budget', 'fetching-months', 'recalculating', 'saving', 'complete']
    assert [p for p in order if p in phases] == order
    assert [phases.index(p) for p in order] == sorted(phases.index(p) for p in order)
    percents = [p.percent_complete for p in progress]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert progress[-1].months_processed == 3
    assert 'Mar 2024' in [p.current_month for p in progress]


def test_triggering_month_limits_the_run_and_reads_its_predecessor():
    store = InMemoryDocumentStore()
    _three_months(store, stale=())

    result = asyncio.run(trigger_recalculation(store, 'b1', triggering_month_ordinal=JAN + 1))

    assert result.months_processed == 2
    assert [m.month for m in result.months] == [2, 3]
    # January was never recalculated, so its stale zero rows carry forward
    assert result.months[0].category_balances['groceries'].start_balance == 0.0
    assert store.month_document('b1', 2024, 1)['category_balances']['groceries']['end_balance'] == 0.0


def test_category_introduced_later_starts_at_zero_and_carries_forward():
    store = InMemoryDocumentStore()
    months = [
        _month(1, {'groceries': 100.0}),
        _month(2, {'groceries': 0.0, 'vacation': 200.0}, expenses=[('vacation', -20.0)]),
        _month(3, {'groceries': 0.0}),
    ]
    _seed(store, _budget([JAN, JAN + 1, JAN + 2], stale=[JAN]), months)

    asyncio.run(trigger_recalculation(store, 'b1'))

    february = asyncio.run(store.read_month('b1', 2024, 2))
    march = asyncio.run(store.read_month('b1', 2024, 3))
    budget = asyncio.run(store.read_budget('b1'))
    assert february.category_balances['vacation'].start_balance == 0.0
    assert february.category_balances['vacation'].end_balance == 180.0
    assert march.category_balances['vacation'] == CategoryMonthBalance(
        category_id='vacation', start_balance=180.0, end_balance=180.0,
    )
    assert budget.categories['vacation'].balance == 180.0


def test_unfinalized_allocation_does_not_carry_forward():
    store = InMemoryDocumentStore()
    months = [
        _month(1, {'groceries': 100.0}),
        _month(2, {'groceries': 40.0}, finalized=False),
        _month(3, {'groceries': 0.0}, finalized=False),
    ]
    _seed(store, _budget([JAN, JAN + 1, JAN + 2], stale=[JAN]), months)

    asyncio.run(trigger_recalculation(store, 'b1'))

    february = asyncio.run(store.read_month('b1', 2024, 2))
    march = asyncio.run(store.read_month('b1', 2024, 3))
    assert february.category_balances['groceries'].end_balance == 140.0
    assert march.category_balances['groceries'].start_balance == 100.0


def test_window_income_is_stored_on_each_month():
    store = InMemoryDocumentStore()
    months = [
        _month(1, {}, income=2500.0),
        _month(2, {}, income=2600.0),
    ]
    _seed(store, _budget([JAN, JAN + 1], stale=[JAN]), months)

    asyncio.run(trigger_recalculation(store, 'b1'))

    assert asyncio.run(store.read_month('b1', 2024, 1)).previous_month_income == 0.0
    assert asyncio.run(store.read_month('b1', 2024, 2)).previous_month_income == 2500.0


def test_recalculation_is_idempotent():
    store = InMemoryDocumentStore()
    _three_months(store)

    first = asyncio.run(trigger_recalculation(store, 'b1'))
    second = asyncio.run(trigger_recalculation(store, 'b1', triggering_month_ordinal=JAN))

    assert second.months_updated == 0
    assert second.category_balances == first.category_balances
    assert [m.category_balances for m in second.months] == [m.category_balances for m in first.months]


def test_nothing_stale_completes_without_reading_months():
    store = InMemoryDocumentStore()
    _three_months(store, stale=())
    progress = []

    result = asyncio.run(trigger_recalculation(store, 'b1', on_progress=progress.append))

    assert result.months_processed == 0
    assert store.month_reads == 0
    assert progress[-1].phase == 'complete'
    assert progress[-1].percent_complete == 100


def test_concurrent_triggers_collapse_into_one_run():
    store = InMemoryDocumentStore(latency=0.01)
    _three_months(store)
    writes_before = store.budget_writes

    async def race():
        return await asyncio.gather(
            trigger_recalculation(store, 'b1'),
            trigger_recalculation(store, 'b1'),
        )

    first, second = asyncio.run(race())

    assert first is second
    assert store.budget_reads == 1
    assert store.budget_writes == writes_before + 1
    assert not is_recalculation_in_progress('b1')


def test_trigger_for_a_changed_month_during_a_run_queues_one_more_run():
    store = InMemoryDocumentStore(latency=0.01)
    _three_months(store)
    writes_before = store.budget_writes

    async def race():
        return await asyncio.gather(
            trigger_recalculation(store, 'b1'),
            trigger_recalculation(store, 'b1', triggering_month_ordinal=JAN + 2),
            trigger_recalculation(store, 'b1', triggering_month_ordinal=JAN + 1),
        )

    first, second, third = asyncio.run(race())

    assert first is second is third
    assert first.start_ordinal == JAN + 1
    assert [m.month for m in first.months] == [2, 3]
    assert store.budget_reads == 2
    assert store.budget_writes == writes_before + 2
    assert not is_recalculation_in_progress('b1')


class _EditingStore(InMemoryDocumentStore):
    """Changes February's allocation right after the run has fetched it."""

    edit_after_reads = None

    async def read_month(self, budget_id, year, month):
        result = await super().read_month(budget_id, year, month)
        if self.month_reads == self.edit_after_reads:
            february = self._months[('b1', JAN + 1)]
            february['category_balances']['groceries']['allocated'] = 80.0
        return result


def test_month_changed_during_a_run_is_kept_and_recalculated_again(caplog):
    store = _EditingStore()
    _three_months(store)
    store.edit_after_reads = store.month_reads + 3

    with caplog.at_level(logging.WARNING, logger='envelope_budget.recalculation'):
        result = asyncio.run(trigger_recalculation(store, 'b1'))

    february = asyncio.run(store.read_month('b1', 2024, 2))
    march = asyncio.run(store.read_month('b1', 2024, 3))
    budget = asyncio.run(store.read_budget('b1'))

    assert 'changed during recalculation' in caplog.text
    assert result.start_ordinal == JAN + 1
    assert february.category_balances['groceries'].allocated == 80.0
    assert february.category_balances['groceries'].end_balance == 150.0
    assert march.category_balances['groceries'].end_balance == 200.0
    assert budget.categories['groceries'].balance == 200.0
    assert budget.stale_ordinals() == []


def test_writes_are_batched():
    store = InMemoryDocumentStore()
    months = [_month(m, {'groceries': 10.0}) for m in range(1, 6)]
    _seed(store, _budget([JAN + i for i in range(5)], stale=[JAN]), months)

    asyncio.run(trigger_recalculation(store, 'b1', batch_size=2))

    assert store.month_write_batches == [2, 2, 1]


def test_batch_size_must_be_positive():
    store = InMemoryDocumentStore()
    _three_months(store)

    with pytest.raises(ValidationError):
        asyncio.run(trigger_recalculation(store, 'b1', batch_size=0))


class _FailingWriteStore(InMemoryDocumentStore):
    fail = False

    async def write_month_balances(self, months):
        if self.fail:
            raise PersistenceError('disk full')
        await super().write_month_balances(months)


def test_failed_save_reports_phase_and_keeps_stale_flags():
    store = _FailingWriteStore()
    _three_months(store)
    store.fail = True
    progress = []

    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(trigger_recalculation(store, 'b1', on_progress=progress.append))

    assert excinfo.value.phase == 'saving'
    assert progress[-1].phase == 'error'
    budget = asyncio.run(store.read_budget('b1'))
    assert budget.stale_ordinals() == [JAN, JAN + 1, JAN + 2]
    assert not is_recalculation_in_progress('b1')


def test_gap_in_month_sequence_is_a_recalculation_error():
    store = InMemoryDocumentStore()
    months = [_month(1, {'groceries': 10.0}), _month(3, {'groceries': 10.0})]
    _seed(store, _budget([JAN, JAN + 2], stale=[JAN]), months)

    with pytest.raises(RecalculationError) as excinfo:
        asyncio.run(trigger_recalculation(store, 'b1'))

    assert excinfo.value.phase == 'fetching-months'
    assert 'Feb 2024' in str(excinfo.value)
    assert asyncio.run(store.read_budget('b1')).stale_ordinals() == [JAN]


def test_missing_month_document_is_a_recalculation_error():
    store = InMemoryDocumentStore()
    _seed(store, _budget([JAN, JAN + 1], stale=[JAN]), [_month(1, {'groceries': 10.0})])

    with pytest.raises(RecalculationError) as excinfo:
        asyncio.run(trigger_recalculation(store, 'b1'))

    assert excinfo.value.phase == 'fetching-months'


def test_unknown_budget_fails_while_reading_budget():
    with pytest.raises(RecalculationError) as excinfo:
        asyncio.run(trigger_recalculation(InMemoryDocumentStore(), 'missing'))

    assert excinfo.value.phase == 'reading-budget'


def test_missing_category_is_logged_and_not_written(caplog):
    store = InMemoryDocumentStore()
    _seed(store, _budget([JAN], stale=[JAN]), [_month(1, {'groceries': 10.0, 'ghost': 5.0})])

    with caplog.at_level(logging.WARNING, logger='envelope_budget.recalculation'):
        result = asyncio.run(trigger_recalculation(store, 'b1'))

    assert result.missing_categories == ['ghost']
    assert 'ghost' not in result.category_balances
    assert 'ghost' in caplog.text
    assert 'ghost' not in asyncio.run(store.read_budget('b1')).categories


def test_first_month_uses_opening_balances():
    store = InMemoryDocumentStore()
    budget = _budget([JAN], stale=[JAN])
    budget.categories['groceries'].opening_balance = 25.0
    budget.accounts['checking'].opening_balance = 500.0
    _seed(store, budget, [_month(1, {'groceries': 10.0}, expenses=[('groceries', -5.0)])])

    result = asyncio.run(trigger_recalculation(store, 'b1'))

    january = result.months[0]
    assert january.category_balances['groceries'].start_balance == 25.0
    assert january.category_balances['groceries'].end_balance == 30.0
    assert january.account_balances['checking'].end_balance == 495.0


def test_recalculate_month_is_pure_and_carries_snapshot_rows():
    month = _month(2, {'groceries': 20.0}, expenses=[('groceries', -5.0)])
    month.account_balances['checking'] = AccountMonthBalance(account_id='checking', end_balance=1.0)
    snapshot = PreviousMonthSnapshot(
        category_balances={'groceries': 10.0, 'vacation': 300.0},
        account_balances={'checking': 100.0},
    )

    result = recalculate_month(month, snapshot, previous_window_income=900.0)

    assert result is not month
    assert month.category_balances['groceries'].end_balance == 0.0
    assert result.category_balances['groceries'].end_balance == 25.0
    assert result.category_balances['vacation'].end_balance == 300.0
    assert result.account_balances['checking'].expenses == -5.0
    assert result.account_balances['checking'].end_balance == 95.0
    assert result.previous_month_income == 900.0
    assert extract_snapshot(result).category_balances == {'groceries': 25.0, 'vacation': 300.0}


def test_recalculate_month_without_snapshot_starts_at_zero():
    result = recalculate_month(_month(1, {'groceries': 20.0}, finalized=False), EMPTY_SNAPSHOT)

    assert result.category_balances['groceries'].start_balance == 0.0
    assert result.category_balances['groceries'].end_balance == 20.0
    assert extract_snapshot(result).category_balances == {'groceries': 0.0}
