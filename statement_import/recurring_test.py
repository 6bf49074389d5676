"""Tests for recurring expense scheduling and matching."""

import datetime
from decimal import Decimal

import pytest

from statement_import import recurring
from statement_import import store as store_lib
from statement_import.store import (
    ACCOUNTS,
    RECURRING_EXPENSE_OVERRIDES,
    RECURRING_EXPENSES,
    TRANSACTIONS,
    MemoryStore,
    RecurringExpense,
    Transaction,
)


def make_expense(interval_months=1, start_date=datetime.date(2024, 1, 1)):
    return RecurringExpense(
        user_id='u1', name='Czynsz', amount=Decimal('1500.00'),
        start_date=start_date, interval_months=interval_months)


def add_transaction(store, description, date, type='expense', user_id='u1', **kwargs):
    return store.insert(TRANSACTIONS, Transaction(
        user_id=user_id,
        account_id='a1',
        amount=Decimal('49.99'),
        description=description,
        transaction_date=date,
        type=type,
        **kwargs
    ))


def generated_rows(store, month):
    return store.select(TRANSACTIONS, where=[
        ('is_recurring_generated', '=', True),
        ('generated_month', '=', month),
    ])


@pytest.fixture
def store():
    return MemoryStore()


class TestIsExpenseDueInMonth:

    def test_quarterly(self):
        expense = make_expense(interval_months=3)
        due = [m for m in range(1, 13) if recurring.is_expense_due_in_month(expense, 2024, m)]
        assert due == [1, 4, 7, 10]
        assert recurring.is_expense_due_in_month(expense, 2025, 1)

    def test_monthly_from_start(self):
        expense = make_expense(start_date=datetime.date(2024, 3, 1))
        assert not recurring.is_expense_due_in_month(expense, 2024, 2)
        assert all(recurring.is_expense_due_in_month(expense, 2024, m) for m in range(3, 13))

    def test_before_start(self):
        assert not recurring.is_expense_due_in_month(make_expense(), 2023, 12)

    def test_month_out_of_range(self):
        with pytest.raises(ValueError):
            recurring.is_expense_due_in_month(make_expense(), 2024, 0)
        with pytest.raises(ValueError):
            recurring.is_expense_due_in_month(make_expense(), 2024, 13)


class TestMonthHelpers:

    def test_month_bounds(self):
        assert recurring.month_bounds(2024, 2) == (
            datetime.date(2024, 2, 1), datetime.date(2024, 2, 29))

    def test_first_of_month(self):
        assert recurring.first_of_month('2024-03') == datetime.date(2024, 3, 1)
        assert recurring.first_of_month('2024-03-15') == datetime.date(2024, 3, 1)
        assert recurring.first_of_month(datetime.date(2024, 3, 15)) == datetime.date(2024, 3, 1)

    def test_first_of_month_invalid(self):
        with pytest.raises(ValueError):
            recurring.first_of_month('March')
        with pytest.raises(ValueError):
            recurring.first_of_month('2024-13')

    def test_due_date_is_clamped(self):
        expense = make_expense()
        expense.day_of_month = 31
        assert recurring.due_date(expense, 2024, 2) == datetime.date(2024, 2, 29)


class TestCreateRecurringExpense:

    def test_normalizes_fields(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Netflix', Decimal('-49.99'), '2024-01-17',
            day_of_month=17, match_keywords=['NETFLIX', ' '])
        assert expense.amount == Decimal('49.99')
        assert expense.start_date == datetime.date(2024, 1, 1)
        assert expense.match_keywords == ['netflix']

    def test_invalid_interval(self, store):
        with pytest.raises(ValueError):
            recurring.create_recurring_expense(
                store, 'u1', 'X', Decimal('1'), '2024-01', interval_months=0)


class TestEnsureRecurringTransactions:

    def test_generates_once(self, store):
        rent = recurring.create_recurring_expense(
            store, 'u1', 'Czynsz', Decimal('1500.00'), '2024-01', day_of_month=10,
            category_id='housing')
        recurring.create_recurring_expense(
            store, 'u1', 'Ubezpieczenie', Decimal('300.00'), '2024-01', interval_months=3)

        first = recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        second = recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        assert (first.generated, first.skipped) == (2, 0)
        assert (second.generated, second.skipped) == (0, 2)

        rows = generated_rows(store, '2024-01')
        assert len(rows) == 2
        row = next(r for r in rows if r.recurring_expense_id == rent.id)
        assert row.transaction_date == datetime.date(2024, 1, 10)
        assert row.amount == Decimal('1500.00')
        assert row.payment_status == 'planned'
        assert row.type == 'expense'
        assert row.category_id == 'housing'

        account = store.get(ACCOUNTS, row.account_id)
        assert account.external_id == 'recurring-generated'
        assert account.name == 'Wydatki cykliczne'

    def test_only_due_and_active(self, store):
        recurring.create_recurring_expense(
            store, 'u1', 'Ubezpieczenie', Decimal('300.00'), '2024-01', interval_months=3)
        inactive = recurring.create_recurring_expense(
            store, 'u1', 'Siłownia', Decimal('120.00'), '2024-01')
        recurring.deactivate_recurring_expense(store, 'u1', inactive.id)

        result = recurring.ensure_recurring_transactions(store, 'u1', 2024, 2)
        assert result.generated == 0
        assert generated_rows(store, '2024-02') == []

    def test_day_clamped_to_month_end(self, store):
        recurring.create_recurring_expense(
            store, 'u1', 'Czynsz', Decimal('1500.00'), '2024-01', day_of_month=31)
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 2)
        assert generated_rows(store, '2024-02')[0].transaction_date == datetime.date(2024, 2, 29)

    def test_override_amount(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Prąd', Decimal('200.00'), '2024-01')
        recurring.set_override(store, 'u1', expense.id, '2024-03',
                               override_amount=Decimal('250.50'))
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 3)
        assert generated_rows(store, '2024-03')[0].amount == Decimal('250.50')

    def test_skipped_month(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Prąd', Decimal('200.00'), '2024-01')
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 3)
        assert len(generated_rows(store, '2024-03')) == 1

        recurring.set_override(store, 'u1', expense.id, '2024-03', is_skipped=True)
        result = recurring.ensure_recurring_transactions(store, 'u1', 2024, 3)
        assert result.generated == 0
        # The planned placeholder is removed
        assert generated_rows(store, '2024-03') == []

    def test_concurrent_insert_counts_as_generated(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Prąd', Decimal('200.00'), '2024-01')
        # A row holding the unique key that the existence check does not see
        add_transaction(store, 'Prąd', datetime.date(2024, 1, 1), user_id='u2',
                        recurring_expense_id=expense.id, generated_month='2024-01')
        result = recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        assert (result.generated, result.skipped) == (0, 1)

    def test_no_expenses(self, store):
        result = recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        assert (result.generated, result.skipped) == (0, 0)
        assert store.select(ACCOUNTS) == []


class TestRematchTransactions:

    def test_one_match_per_month(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Netflix', Decimal('49.99'), '2024-01',
            category_id='subscriptions', match_keywords=['netflix'])
        later = add_transaction(store, 'NETFLIX.COM', datetime.date(2024, 1, 20))
        earlier = add_transaction(store, 'NETFLIX.COM', datetime.date(2024, 1, 5))
        february = add_transaction(store, 'netflix', datetime.date(2024, 2, 5))

        result = recurring.rematch_transactions(store, 'u1')
        assert result.scanned == 3
        assert result.matched == 2

        assert store.get(TRANSACTIONS, earlier.id).recurring_expense_id == expense.id
        assert store.get(TRANSACTIONS, earlier.id).category_id == 'subscriptions'
        assert store.get(TRANSACTIONS, later.id).recurring_expense_id is None
        assert store.get(TRANSACTIONS, february.id).recurring_expense_id == expense.id
        assert (store.get(RECURRING_EXPENSES, expense.id).last_occurrence_date
                == datetime.date(2024, 2, 5))

    def test_merchant_name_is_searched(self, store):
        recurring.create_recurring_expense(
            store, 'u1', 'Spotify', Decimal('19.99'), '2024-01', match_keywords=['spotify'])
        add_transaction(store, 'Płatność kartą', datetime.date(2024, 1, 5),
                        merchant_name='SPOTIFY AB')
        assert recurring.rematch_transactions(store, 'u1').matched == 1

    def test_existing_link_occupies_month(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Netflix', Decimal('49.99'), '2024-01', match_keywords=['netflix'])
        add_transaction(store, 'NETFLIX', datetime.date(2024, 1, 3),
                        recurring_expense_id=expense.id)
        candidate = add_transaction(store, 'NETFLIX', datetime.date(2024, 1, 20))

        assert recurring.rematch_transactions(store, 'u1').matched == 0
        assert store.get(TRANSACTIONS, candidate.id).recurring_expense_id is None

    def test_placeholder_occupies_month(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Netflix', Decimal('49.99'), '2024-01', match_keywords=['netflix'])
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        txn = add_transaction(store, 'NETFLIX', datetime.date(2024, 1, 20))

        assert recurring.rematch_transactions(store, 'u1').matched == 0
        assert store.get(TRANSACTIONS, txn.id).recurring_expense_id is None
        linked = store.select(TRANSACTIONS, where=[('recurring_expense_id', '=', expense.id)])
        assert [(t.is_recurring_generated, t.payment_status) for t in linked] == [
            (True, 'planned')]

    def test_placeholder_month_still_matches_other_months(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Netflix', Decimal('49.99'), '2024-01', match_keywords=['netflix'])
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        txn = add_transaction(store, 'NETFLIX', datetime.date(2024, 2, 5))

        assert recurring.rematch_transactions(store, 'u1').matched == 1
        assert store.get(TRANSACTIONS, txn.id).recurring_expense_id == expense.id

    def test_not_due_and_income_are_ignored(self, store):
        recurring.create_recurring_expense(
            store, 'u1', 'Ubezpieczenie', Decimal('300.00'), '2024-01',
            interval_months=3, match_keywords=['pzu'])
        add_transaction(store, 'PZU SA', datetime.date(2024, 2, 10))
        add_transaction(store, 'PZU zwrot', datetime.date(2024, 4, 10), type='income')

        result = recurring.rematch_transactions(store, 'u1')
        assert result.scanned == 1
        assert result.matched == 0

    def test_expenses_without_keywords(self, store):
        recurring.create_recurring_expense(store, 'u1', 'Czynsz', Decimal('1500'), '2024-01')
        add_transaction(store, 'Czynsz', datetime.date(2024, 1, 10))
        assert recurring.rematch_transactions(store, 'u1') == recurring.RematchResult(0, 0)

    def test_second_run_changes_nothing(self, store):
        recurring.create_recurring_expense(
            store, 'u1', 'Netflix', Decimal('49.99'), '2024-01', match_keywords=['netflix'])
        add_transaction(store, 'NETFLIX', datetime.date(2024, 1, 5))
        add_transaction(store, 'NETFLIX', datetime.date(2024, 1, 25))

        assert recurring.rematch_transactions(store, 'u1').matched == 1
        assert recurring.rematch_transactions(store, 'u1').matched == 0

    def test_lock_table_is_pruned(self, store):
        with recurring.user_lock('u1'):
            assert 'u1' in recurring._user_locks
        recurring.rematch_transactions(store, 'u1')
        assert 'u1' not in recurring._user_locks


class TestOverrides:

    def test_upsert_per_month(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Prąd', Decimal('200.00'), '2024-01')
        recurring.set_override(store, 'u1', expense.id, '2024-03', is_skipped=True)
        recurring.set_override(store, 'u1', expense.id, datetime.date(2024, 3, 20),
                               override_amount=Decimal('220.00'), notes='podwyżka')

        overrides = store.select(RECURRING_EXPENSE_OVERRIDES)
        assert len(overrides) == 1
        assert overrides[0].override_month == datetime.date(2024, 3, 1)
        assert overrides[0].override_amount == Decimal('220.00')
        assert overrides[0].is_skipped is False
        assert overrides[0].notes == 'podwyżka'

    def test_delete(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Prąd', Decimal('200.00'), '2024-01')
        recurring.set_override(store, 'u1', expense.id, '2024-03', is_skipped=True)
        assert recurring.delete_override(store, 'u1', expense.id, '2024-03') == 1
        assert store.select(RECURRING_EXPENSE_OVERRIDES) == []

    def test_other_users_expense(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Prąd', Decimal('200.00'), '2024-01')
        with pytest.raises(store_lib.NotFoundError):
            recurring.set_override(store, 'u2', expense.id, '2024-03', is_skipped=True)


class TestConvertToRecurring:

    def test_defaults_from_transaction(self, store):
        txn = add_transaction(store, 'Płatność kartą', datetime.date(2024, 3, 17),
                              merchant_name='NETFLIX', category_id='subscriptions')
        expense = recurring.convert_to_recurring(store, 'u1', txn.id,
                                                 match_keywords=['netflix'])
        assert expense.name == 'NETFLIX'
        assert expense.amount == Decimal('49.99')
        assert expense.day_of_month == 17
        assert expense.interval_months == 1
        assert expense.start_date == datetime.date(2024, 3, 1)
        assert expense.category_id == 'subscriptions'
        assert expense.last_occurrence_date == datetime.date(2024, 3, 17)

        linked = store.get(TRANSACTIONS, txn.id)
        assert linked.recurring_expense_id == expense.id
        assert linked.payment_status == 'completed'

    def test_explicit_values(self, store):
        txn = add_transaction(store, 'Opłata', datetime.date(2024, 3, 17), category_id='x')
        expense = recurring.convert_to_recurring(
            store, 'u1', txn.id, name='Abonament', amount=Decimal('60'),
            category_id=None, day_of_month=1, interval_months=12)
        assert expense.name == 'Abonament'
        assert expense.amount == Decimal('60')
        assert expense.category_id is None
        assert expense.interval_months == 12

    def test_already_linked(self, store):
        txn = add_transaction(store, 'NETFLIX', datetime.date(2024, 3, 17),
                              recurring_expense_id='r1')
        with pytest.raises(ValueError):
            recurring.convert_to_recurring(store, 'u1', txn.id)

    def test_other_users_transaction(self, store):
        txn = add_transaction(store, 'NETFLIX', datetime.date(2024, 3, 17), user_id='u2')
        with pytest.raises(store_lib.NotFoundError):
            recurring.convert_to_recurring(store, 'u1', txn.id)


class TestLinkTransaction:

    def test_completes_placeholder(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Czynsz', Decimal('1500.00'), '2024-01', category_id='housing')
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        txn = add_transaction(store, 'Przelew czynsz', datetime.date(2024, 1, 8))

        linked = recurring.link_transaction(store, 'u1', txn.id, expense.id)
        assert linked.recurring_expense_id == expense.id
        assert linked.category_id == 'housing'
        assert generated_rows(store, '2024-01')[0].payment_status == 'completed'
        assert (store.get(RECURRING_EXPENSES, expense.id).last_occurrence_date
                == datetime.date(2024, 1, 8))

    def test_generated_rows_cannot_be_linked(self, store):
        expense = recurring.create_recurring_expense(
            store, 'u1', 'Czynsz', Decimal('1500.00'), '2024-01')
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)
        placeholder = generated_rows(store, '2024-01')[0]
        with pytest.raises(ValueError):
            recurring.link_transaction(store, 'u1', placeholder.id, expense.id)


class TestMonthStatus:

    def test_statuses(self, store):
        today = datetime.date(2024, 1, 20)
        paid = recurring.create_recurring_expense(
            store, 'u1', 'Netflix', Decimal('49.99'), '2024-01', day_of_month=5)
        overdue = recurring.create_recurring_expense(
            store, 'u1', 'Czynsz', Decimal('1500.00'), '2024-01', day_of_month=10)
        confirmed = recurring.create_recurring_expense(
            store, 'u1', 'Prąd', Decimal('200.00'), '2024-01', day_of_month=12)
        skipped = recurring.create_recurring_expense(
            store, 'u1', 'Siłownia', Decimal('120.00'), '2024-01', day_of_month=15)
        upcoming = recurring.create_recurring_expense(
            store, 'u1', 'Telefon', Decimal('60.00'), '2024-01', day_of_month=20)

        add_transaction(store, 'NETFLIX', datetime.date(2024, 1, 5),
                        recurring_expense_id=paid.id)
        recurring.set_override(store, 'u1', confirmed.id, '2024-01',
                               is_manually_confirmed=True, override_amount=Decimal('180.00'))
        recurring.set_override(store, 'u1', skipped.id, '2024-01', is_skipped=True)
        # A planned placeholder is not a payment
        recurring.ensure_recurring_transactions(store, 'u1', 2024, 1)

        statuses = {
            s.expense.id: s
            for s in recurring.month_status(store, 'u1', 2024, 1, today=today)
        }
        assert statuses[paid.id].is_paid
        assert not statuses[paid.id].is_overdue

        assert statuses[overdue.id].is_overdue
        assert statuses[overdue.id].due_date == datetime.date(2024, 1, 10)

        assert statuses[confirmed.id].is_paid
        assert statuses[confirmed.id].effective_amount == Decimal('180.00')

        assert statuses[skipped.id].is_skipped
        assert not statuses[skipped.id].is_overdue

        assert statuses[upcoming.id].is_due_today
        assert not statuses[upcoming.id].is_due_date_passed
        assert not statuses[upcoming.id].is_paid
