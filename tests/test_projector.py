from envelope_budget.models import Category, CategoryMonthBalance, Month
from envelope_budget.projector import project_live_balances


def _categories():
    return {
        'rent': Category(id='rent', name='Rent', balance=500.0),
        'fun': Category(id='fun', name='Fun', balance=-20.0),
        'new': Category(id='new', name='New'),
    }


def _month(finalized=False):
    return Month(
        budget_id='b1',
        year=2024,
        month=5,
        are_allocations_finalized=finalized,
        category_balances={
            'rent': CategoryMonthBalance(
                category_id='rent', start_balance=400.0, allocated=100.0, end_balance=500.0,
            ),
            'fun': CategoryMonthBalance(
                category_id='fun', start_balance=10.0, allocated=30.0, spent=-60.0, end_balance=-20.0,
            ),
        },
    )


def _no_drafts(category_id):
    raise AssertionError('resolver must not be called outside draft mode')


def test_not_draft_mode_matches_persisted_rows_exactly():
    month = _month()
    live = project_live_balances(month, _categories(), False, False, _no_drafts)

    for category_id, row in month.category_balances.items():
        assert live[category_id] == row
        assert live[category_id] is not row
    assert live['new'] == CategoryMonthBalance(category_id='new')


def test_draft_mode_recomputes_allocated_and_end_balance():
    drafts = {'rent': 250.0, 'fun': 0.0, 'new': 12.345}
    live = project_live_balances(_month(), _categories(), True, False, lambda cid: drafts[cid])

    assert live['rent'].allocated == 250.0
    assert live['rent'].end_balance == 650.0
    assert live['fun'].start_balance == 10.0
    assert live['fun'].end_balance == -50.0
    assert live['new'].allocated == 12.35
    assert live['new'].end_balance == 12.35


def test_month_not_created_yet_projects_zero_rows():
    live = project_live_balances(None, _categories(), True, False, lambda cid: 40.0)

    assert live['rent'].start_balance == 0.0
    assert live['rent'].end_balance == 40.0
    assert len(live) == 3


def test_all_time_balance_for_unfinalized_month_adds_this_months_allocation():
    saved = project_live_balances(_month(), _categories(), False, False, _no_drafts)
    assert saved.all_time_balance('rent') == 600.0

    draft = project_live_balances(_month(), _categories(), True, False, lambda cid: 10.0)
    assert draft.all_time_balance('rent') == 510.0
    assert draft.all_time_balance('fun') == -10.0


def test_all_time_balance_for_finalized_month_previews_only_the_difference():
    viewing = project_live_balances(_month(True), _categories(), False, True, _no_drafts)
    assert viewing.all_time_balance('rent') == 500.0

    editing = project_live_balances(_month(True), _categories(), True, True, lambda cid: 150.0)
    assert editing.all_time_balance('rent') == 550.0
    assert editing.all_time_balance('fun') == 100.0


def test_rows_are_lazy_and_memoized():
    calls = []

    def resolver(category_id):
        calls.append(category_id)
        return 1.0

    live = project_live_balances(_month(), _categories(), True, False, resolver)
    assert calls == []
    first = live['rent']
    assert live['rent'] is first
    assert calls == ['rent']


def test_projection_does_not_mutate_inputs():
    month = _month()
    categories = _categories()
    live = project_live_balances(month, categories, True, False, lambda cid: 999.0)
    _ = [live[cid] for cid in live]

    assert month.category_balances['rent'].allocated == 100.0
    assert categories['rent'].balance == 500.0


def test_total_allocated():
    live = project_live_balances(_month(), _categories(), True, False, lambda cid: 10.005)
    assert live.total_allocated() == 30.03
