import asyncio

from envelope_budget.audit import (
    account_ledger_frame,
    category_balance_mismatches,
    category_ledger_frame,
    find_chain_breaks,
    find_formula_violations,
    summarize_audit,
)
from envelope_budget.models import (
    Account,
    AccountMonthBalance,
    Budget,
    Category,
    CategoryMonthBalance,
    Month,
    MonthMapEntry,
    MonthStatus,
    month_ordinal,
)
from envelope_budget.recalculation import trigger_recalculation
from envelope_budget.storage import InMemoryDocumentStore

JAN = month_ordinal(2024, 1)


def _row(category_id, start, allocated, spent=0.0, end=None):
    end_balance = start + allocated + spent if end is None else end
    return CategoryMonthBalance(
        category_id=category_id, start_balance=start, allocated=allocated, spent=spent, end_balance=end_balance,
    )


def _months():
    return [
        Month(budget_id='b1', year=2024, month=1, are_allocations_finalized=True,
              category_balances={'rent': _row('rent', 0.0, 100.0)},
              account_balances={'checking': AccountMonthBalance(account_id='checking', income=500.0,
                                                                net_change=500.0, end_balance=500.0)}),
        Month(budget_id='b1', year=2024, month=2, are_allocations_finalized=True,
              category_balances={'rent': _row('rent', 100.0, 100.0, spent=-50.0)},
              account_balances={'checking': AccountMonthBalance(account_id='checking', start_balance=500.0,
                                                                expenses=-50.0, net_change=-50.0,
                                                                end_balance=450.0)}),
        Month(budget_id='b1', year=2024, month=3, are_allocations_finalized=False,
              category_balances={'rent': _row('rent', 150.0, 25.0)},
              account_balances={'checking': AccountMonthBalance(account_id='checking', start_balance=450.0,
                                                                end_balance=450.0)}),
    ]


def _budget():
    return Budget(
        id='b1',
        categories={'rent': Category(id='rent', name='Rent', balance=150.0)},
        accounts={'checking': Account(id='checking', balance=450.0)},
        month_map={JAN + i: MonthMapEntry() for i in range(3)},
        total_available=300.0,
    )


def test_ledger_frames_have_one_row_per_month_row():
    categories = category_ledger_frame(_months())
    accounts = account_ledger_frame(_months())

    assert len(categories) == 3
    assert list(categories['ordinal']) == [JAN, JAN + 1, JAN + 2]
    assert categories.loc[2, 'carried_balance'] == 150.0
    assert categories.loc[2, 'end_balance'] == 175.0
    assert list(accounts['end_balance']) == [500.0, 450.0, 450.0]


def test_empty_frames():
    assert category_ledger_frame([]).empty
    assert find_formula_violations(category_ledger_frame([])).empty
    assert find_chain_breaks(account_ledger_frame([])).empty


def test_clean_ledger_has_no_findings():
    report = summarize_audit(_budget(), _months())

    assert report.is_clean
    assert report.summary()['months_checked'] == 3


def test_formula_violation_is_reported():
    months = _months()
    months[1].category_balances['rent'].end_balance = 999.0

    violations = find_formula_violations(category_ledger_frame(months))

    assert len(violations) == 1
    assert violations.loc[0, 'ordinal'] == JAN + 1
    assert violations.loc[0, 'expected_end_balance'] == 150.0


def test_account_formula_violation_is_reported():
    months = _months()
    months[2].account_balances['checking'].end_balance = 10.0

    violations = find_formula_violations(account_ledger_frame(months))

    assert list(violations['account_id']) == ['checking']


def test_chain_break_only_between_finalized_fresh_months():
    months = _months()
    months[1].category_balances['rent'] = _row('rent', 80.0, 100.0, spent=-50.0)
    frame = category_ledger_frame(months)

    breaks = find_chain_breaks(frame)
    assert len(breaks) == 1
    assert breaks.loc[0, 'previous_ordinal'] == JAN
    assert breaks.loc[0, 'expected_start_balance'] == 100.0

    stale_map = {JAN: MonthMapEntry(), JAN + 1: MonthMapEntry(MonthStatus.STALE)}
    assert find_chain_breaks(frame, stale_map).empty

    # March is unfinalized, so its start is not checked against February
    months[2].category_balances['rent'] = _row('rent', 0.0, 25.0)
    assert len(find_chain_breaks(category_ledger_frame(months))) == 1


def test_stored_balance_mismatch():
    budget = _budget()
    budget.categories['rent'].balance = 175.0

    mismatches = category_balance_mismatches(budget, _months())

    assert list(mismatches['category_id']) == ['rent']
    assert mismatches.loc[0, 'expected_balance'] == 150.0
    assert mismatches.loc[0, 'difference'] == 25.0


def test_recalculated_budget_passes_audit():
    store = InMemoryDocumentStore()
    budget = _budget()
    for entry in budget.month_map.values():
        entry.status = MonthStatus.STALE
    months = _months()
    for month in months:
        for row in month.category_balances.values():
            row.end_balance = 0.0

    async def scenario():
        await store.save_budget(budget)
        await store.write_months(months)
        result = await trigger_recalculation(store, 'b1')
        return await store.read_budget('b1'), result.months

    recalculated_budget, recalculated = asyncio.run(scenario())
    report = summarize_audit(recalculated_budget, recalculated)

    assert report.is_clean
    assert report.stale_months == []
