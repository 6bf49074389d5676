"""Recurring expenses: scheduling, monthly placeholders and matching.

A recurring expense is a template ("Czynsz, 1500 PLN, every month on the 10th")
anchored at the first day of its start month. It is due in every month whose
distance from the start month is a non-negative multiple of `interval_months`.

For each due month the scheduler inserts one *generated* transaction, a
planned placeholder carrying `generated_month='YYYY-MM'`. Real transactions
are linked to an expense either by keyword matching (at import time or by the
re-match pass) or explicitly. Keyword matching links nothing to a month that
already has a linked row, placeholder included. Placeholders become
`completed` only through an explicit link.

Per-month overrides, keyed by (expense, first day of month), can skip the
month or change the amount of its placeholder.
"""

import calendar
import contextlib
import datetime
import logging
import re
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from . import store as store_lib
from .categorization import search_text
from .source import EXPENSE

logger = logging.getLogger(__name__)


RECURRING_ACCOUNT_ID = 'recurring-generated'
RECURRING_ACCOUNT_NAME = 'Wydatki cykliczne'

MonthLike = Union[str, datetime.date]


# =============================================================================
# Month arithmetic
# =============================================================================

def _check_month(month: int):
    if not 1 <= month <= 12:
        raise ValueError(f'Month must be within 1..12, got {month}')


def month_key(date: datetime.date) -> str:
    return f'{date.year:04d}-{date.month:02d}'


def month_bounds(year: int, month: int) -> Tuple[datetime.date, datetime.date]:
    """Return the first and last day of a month."""
    _check_month(month)
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, 1), datetime.date(year, month, last_day)


def first_of_month(value: MonthLike) -> datetime.date:
    """Normalize 'YYYY-MM', 'YYYY-MM-DD' or a date to the first day of its month."""
    if isinstance(value, datetime.date):
        return datetime.date(value.year, value.month, 1)
    match = re.match(r'^(\d{4})-(\d{2})(?:-\d{2})?$', value.strip())
    if not match:
        raise ValueError(f'Invalid month: {value!r}')
    year, month = int(match.group(1)), int(match.group(2))
    _check_month(month)
    return datetime.date(year, month, 1)


def _month_index(year: int, month: int) -> int:
    return year * 12 + month


def is_expense_due_in_month(expense: store_lib.RecurringExpense, year: int, month: int) -> bool:
    """Check whether `expense` falls due in the given month (1-12)."""
    _check_month(month)
    interval = expense.interval_months or 1
    start = expense.start_date
    months_since_start = _month_index(year, month) - _month_index(start.year, start.month)
    return months_since_start >= 0 and months_since_start % interval == 0


def due_date(expense: store_lib.RecurringExpense, year: int, month: int) -> datetime.date:
    """Day of payment in a month, clamped to the month's last day."""
    _, last = month_bounds(year, month)
    return datetime.date(year, month, min(expense.day_of_month or 1, last.day))


# =============================================================================
# Expenses and overrides
# =============================================================================

def get_expense(store: store_lib.Store, user_id: str,
                recurring_expense_id: str) -> store_lib.RecurringExpense:
    """Load an expense owned by `user_id`; NotFoundError otherwise."""
    expense = store.first(store_lib.RECURRING_EXPENSES, where=[
        ('id', '=', recurring_expense_id),
        ('user_id', '=', user_id),
    ])
    if expense is None:
        raise store_lib.NotFoundError(f'Recurring expense not found: {recurring_expense_id}')
    return expense


def create_recurring_expense(store: store_lib.Store, user_id: str, name: str,
                             amount: Decimal, start_date: MonthLike,
                             currency: str = 'PLN',
                             category_id: Optional[str] = None,
                             day_of_month: Optional[int] = None,
                             interval_months: int = 1,
                             match_keywords: Iterable[str] = ()) -> store_lib.RecurringExpense:
    if not user_id:
        raise ValueError('user_id is required')
    if interval_months < 1:
        raise ValueError('interval_months must be at least 1')
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ValueError('day_of_month must be within 1..31')
    expense = store.insert(store_lib.RECURRING_EXPENSES, store_lib.RecurringExpense(
        user_id=user_id,
        name=name,
        amount=abs(amount),
        currency=currency,
        category_id=category_id,
        day_of_month=day_of_month or 1,
        interval_months=interval_months,
        start_date=first_of_month(start_date),
        match_keywords=[k.strip().lower() for k in match_keywords if k.strip()],
    ))
    logger.info('recurring: created %s (%s)', expense.name, expense.id)
    return expense


def deactivate_recurring_expense(store: store_lib.Store, user_id: str,
                                 recurring_expense_id: str) -> store_lib.RecurringExpense:
    """Stop future generation; history stays linked."""
    get_expense(store, user_id, recurring_expense_id)
    return store.update(store_lib.RECURRING_EXPENSES, recurring_expense_id, is_active=False)


def set_override(store: store_lib.Store, user_id: str, recurring_expense_id: str,
                 month: MonthLike, override_amount: Optional[Decimal] = None,
                 is_skipped: bool = False, is_manually_confirmed: bool = False,
                 notes: Optional[str] = None) -> store_lib.RecurringExpenseOverride:
    """Create or replace the override of one expense for one month."""
    get_expense(store, user_id, recurring_expense_id)
    override = store_lib.RecurringExpenseOverride(
        recurring_expense_id=recurring_expense_id,
        override_month=first_of_month(month),
        override_amount=override_amount,
        is_skipped=is_skipped,
        is_manually_confirmed=is_manually_confirmed,
        notes=notes or None,
    )
    return store.upsert(store_lib.RECURRING_EXPENSE_OVERRIDES, override,
                        on_conflict=('recurring_expense_id', 'override_month'))


def delete_override(store: store_lib.Store, user_id: str, recurring_expense_id: str,
                    month: MonthLike) -> int:
    get_expense(store, user_id, recurring_expense_id)
    return store.delete(store_lib.RECURRING_EXPENSE_OVERRIDES, where=[
        ('recurring_expense_id', '=', recurring_expense_id),
        ('override_month', '=', first_of_month(month)),
    ])


def load_overrides(store: store_lib.Store, expense_ids: Iterable[str],
                   month: datetime.date) -> Dict[str, store_lib.RecurringExpenseOverride]:
    expense_ids = list(expense_ids)
    if not expense_ids:
        return {}
    overrides = store.select(store_lib.RECURRING_EXPENSE_OVERRIDES, where=[
        ('recurring_expense_id', 'in', expense_ids),
        ('override_month', '=', month),
    ])
    return {o.recurring_expense_id: o for o in overrides}


def _active_expenses(store: store_lib.Store, user_id: str) -> List[store_lib.RecurringExpense]:
    return store.select(store_lib.RECURRING_EXPENSES, where=[
        ('user_id', '=', user_id),
        ('is_active', '=', True),
    ])


# =============================================================================
# Generation
# =============================================================================

@dataclass
class GenerationResult:
    generated: int = 0
    # Due expenses left alone: already generated, or skipped for the month
    skipped: int = 0


def ensure_recurring_transactions(store: store_lib.Store, user_id: str,
                                  year: int, month: int) -> GenerationResult:
    """Insert the planned placeholders of one month; safe to call repeatedly.

    Args:
        store: Persistence store.
        user_id: Owner of the expenses.
        year: Calendar year.
        month: Calendar month, 1-12.

    Returns:
        GenerationResult with the number of placeholders inserted and the
        number of due expenses that needed none.
    """
    if not user_id:
        raise ValueError('user_id is required')
    first, _ = month_bounds(year, month)
    key = month_key(first)
    result = GenerationResult()

    expenses = _active_expenses(store, user_id)
    if not expenses:
        return result

    overrides = load_overrides(store, [e.id for e in expenses], first)
    existing = {
        txn.recurring_expense_id
        for txn in store.select(store_lib.TRANSACTIONS, where=[
            ('user_id', '=', user_id),
            ('is_recurring_generated', '=', True),
            ('generated_month', '=', key),
        ])
    }

    skipped_ids = [e.id for e in expenses
                   if e.id in overrides and overrides[e.id].is_skipped]
    if skipped_ids:
        removed = store.delete(store_lib.TRANSACTIONS, where=[
            ('user_id', '=', user_id),
            ('recurring_expense_id', 'in', skipped_ids),
            ('is_recurring_generated', '=', True),
            ('payment_status', '=', store_lib.PAYMENT_PLANNED),
            ('generated_month', '=', key),
        ])
        if removed:
            logger.info('recurring: removed %d placeholders skipped for %s', removed, key)

    to_generate = []
    for expense in expenses:
        if not is_expense_due_in_month(expense, year, month):
            continue
        override = overrides.get(expense.id)
        if expense.id in existing or (override is not None and override.is_skipped):
            result.skipped += 1
            continue
        to_generate.append(expense)

    if not to_generate:
        return result

    account = store_lib.get_or_create_account(
        store, user_id, RECURRING_ACCOUNT_ID, RECURRING_ACCOUNT_NAME)

    for expense in to_generate:
        override = overrides.get(expense.id)
        amount = expense.amount
        if override is not None and override.override_amount is not None:
            amount = override.override_amount
        date = due_date(expense, year, month)
        try:
            store.insert(store_lib.TRANSACTIONS, store_lib.Transaction(
                user_id=user_id,
                account_id=account.id,
                amount=abs(amount),
                currency=expense.currency,
                description=expense.name,
                merchant_name=expense.name,
                category_id=expense.category_id,
                recurring_expense_id=expense.id,
                transaction_date=date,
                booking_date=date,
                type=EXPENSE,
                is_recurring_generated=True,
                payment_status=store_lib.PAYMENT_PLANNED,
                generated_month=key,
            ))
        except store_lib.UniqueViolationError:
            # Generated concurrently by another caller
            logger.debug('recurring: %s already generated for %s', expense.id, key)
            result.skipped += 1
            continue
        result.generated += 1

    logger.info('recurring: %s generated=%d skipped=%d', key, result.generated, result.skipped)
    return result


# =============================================================================
# Matching
# =============================================================================

class RecurringMatcher:
    """Links real expense transactions to active recurring expenses.

    An expense matches when one of its keywords occurs in the transaction's
    merchant and description, the transaction's month is a due month, and no
    transaction is linked to it for that month yet, generated placeholders
    included. Expenses are tried in store order.
    """

    def __init__(self, store: store_lib.Store, user_id: str):
        self.expenses = [e for e in _active_expenses(store, user_id) if e.match_keywords]
        self.occupied: Set[Tuple[str, str]] = set()
        if self.expenses:
            linked = store.select(store_lib.TRANSACTIONS, where=[
                ('user_id', '=', user_id),
                ('recurring_expense_id', 'in', [e.id for e in self.expenses]),
            ])
            for txn in linked:
                self.occupied.add((txn.recurring_expense_id, month_key(txn.transaction_date)))

    def match(self, description: str, merchant_name: Optional[str],
              date: datetime.date) -> Optional[store_lib.RecurringExpense]:
        text = search_text(description, merchant_name)
        key = month_key(date)
        for expense in self.expenses:
            if (expense.id, key) in self.occupied:
                continue
            if not any(keyword.lower() in text for keyword in expense.match_keywords):
                continue
            if not is_expense_due_in_month(expense, date.year, date.month):
                continue
            return expense
        return None

    def claim(self, expense: store_lib.RecurringExpense, date: datetime.date):
        self.occupied.add((expense.id, month_key(date)))


@dataclass
class RematchResult:
    matched: int = 0
    scanned: int = 0


# user_id -> [lock, number of holders and waiters]
_user_locks: Dict[str, list] = {}
_user_locks_guard = threading.Lock()


@contextlib.contextmanager
def user_lock(user_id: str):
    """Serialize work for one user.

    The entry is dropped once nobody holds or waits for it, so the table only
    holds users with work in progress.
    """
    with _user_locks_guard:
        entry = _user_locks.setdefault(user_id, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _user_locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _user_locks[user_id]


def rematch_transactions(store: store_lib.Store, user_id: str) -> RematchResult:
    """Link the user's unlinked expense transactions to recurring expenses.

    Transactions are visited oldest first, so the earliest payment of a month
    wins. Calls for the same user are serialized.
    """
    if not user_id:
        raise ValueError('user_id is required')
    with user_lock(user_id):
        matcher = RecurringMatcher(store, user_id)
        result = RematchResult()
        if not matcher.expenses:
            return result

        transactions = store.select(store_lib.TRANSACTIONS, where=[
            ('user_id', '=', user_id),
            ('type', '=', EXPENSE),
            ('recurring_expense_id', 'is null', None),
        ], order_by='transaction_date')
        result.scanned = len(transactions)

        for txn in transactions:
            expense = matcher.match(txn.description, txn.merchant_name, txn.transaction_date)
            if expense is None:
                continue
            changes = {'recurring_expense_id': expense.id}
            if expense.category_id:
                changes['category_id'] = expense.category_id
            store.update(store_lib.TRANSACTIONS, txn.id, **changes)
            store.update(store_lib.RECURRING_EXPENSES, expense.id,
                         last_occurrence_date=txn.transaction_date)
            matcher.claim(expense, txn.transaction_date)
            result.matched += 1

        logger.info('recurring: re-matched %d of %d transactions', result.matched, result.scanned)
        return result


# =============================================================================
# Linking
# =============================================================================

def _get_transaction(store: store_lib.Store, user_id: str,
                     transaction_id: str) -> store_lib.Transaction:
    txn = store.first(store_lib.TRANSACTIONS, where=[
        ('id', '=', transaction_id),
        ('user_id', '=', user_id),
    ])
    if txn is None:
        raise store_lib.NotFoundError(f'Transaction not found: {transaction_id}')
    return txn


def link_transaction(store: store_lib.Store, user_id: str, transaction_id: str,
                     recurring_expense_id: str) -> store_lib.Transaction:
    """Explicitly link a real transaction and complete that month's placeholder."""
    expense = get_expense(store, user_id, recurring_expense_id)
    txn = _get_transaction(store, user_id, transaction_id)
    if txn.is_recurring_generated:
        raise ValueError('Generated transactions cannot be linked')

    changes = {
        'recurring_expense_id': expense.id,
        'payment_status': store_lib.PAYMENT_COMPLETED,
    }
    if expense.category_id and not txn.category_id:
        changes['category_id'] = expense.category_id
    txn = store.update(store_lib.TRANSACTIONS, txn.id, **changes)

    placeholders = store.select(store_lib.TRANSACTIONS, where=[
        ('user_id', '=', user_id),
        ('recurring_expense_id', '=', expense.id),
        ('is_recurring_generated', '=', True),
        ('generated_month', '=', month_key(txn.transaction_date)),
        ('payment_status', '=', store_lib.PAYMENT_PLANNED),
    ])
    for placeholder in placeholders:
        store.update(store_lib.TRANSACTIONS, placeholder.id,
                     payment_status=store_lib.PAYMENT_COMPLETED)

    last = expense.last_occurrence_date
    if last is None or txn.transaction_date > last:
        store.update(store_lib.RECURRING_EXPENSES, expense.id,
                     last_occurrence_date=txn.transaction_date)
    return txn


_KEEP = object()


def convert_to_recurring(store: store_lib.Store, user_id: str, transaction_id: str,
                         name: Optional[str] = None,
                         amount: Optional[Decimal] = None,
                         currency: Optional[str] = None,
                         category_id=_KEEP,
                         day_of_month: Optional[int] = None,
                         interval_months: Optional[int] = None,
                         match_keywords: Optional[Iterable[str]] = None
                         ) -> store_lib.RecurringExpense:
    """Create a recurring expense modelled on an existing transaction.

    Unset arguments default to the transaction's values: name from merchant or
    description, amount magnitude, currency, category and day of month. The
    expense starts in the transaction's month, and the transaction becomes its
    first completed payment.

    Raises:
        NotFoundError: If the transaction does not belong to the user.
        ValueError: If the transaction is already linked to an expense.
    """
    txn = _get_transaction(store, user_id, transaction_id)
    if txn.recurring_expense_id:
        raise ValueError('Transaction is already linked to a recurring expense')

    expense = create_recurring_expense(
        store, user_id,
        name=name or txn.merchant_name or txn.description,
        amount=abs(amount if amount is not None else txn.amount),
        start_date=txn.transaction_date,
        currency=currency or txn.currency or 'PLN',
        category_id=txn.category_id if category_id is _KEEP else (category_id or None),
        day_of_month=day_of_month if day_of_month is not None else txn.transaction_date.day,
        interval_months=interval_months if interval_months is not None else 1,
        match_keywords=match_keywords or (),
    )
    store.update(store_lib.TRANSACTIONS, txn.id,
                 recurring_expense_id=expense.id,
                 payment_status=store_lib.PAYMENT_COMPLETED)
    return store.update(store_lib.RECURRING_EXPENSES, expense.id,
                        last_occurrence_date=txn.transaction_date)


# =============================================================================
# Month overview
# =============================================================================

@dataclass
class MonthStatus:
    expense: store_lib.RecurringExpense
    due_date: datetime.date
    is_due: bool
    is_skipped: bool
    is_manually_confirmed: bool
    has_linked_transaction: bool
    is_paid: bool
    is_due_date_passed: bool
    is_due_today: bool
    is_overdue: bool
    effective_amount: Decimal
    override: Optional[store_lib.RecurringExpenseOverride] = None


def month_status(store: store_lib.Store, user_id: str, year: int, month: int,
                 today: Optional[datetime.date] = None) -> List[MonthStatus]:
    """Summarize every recurring expense of the user for one month.

    An expense is paid when a real transaction (or a completed placeholder)
    is linked to it in that month, or when the month is manually confirmed.
    It is overdue when due, past its due date, unpaid and not skipped.
    """
    today = today or datetime.date.today()
    first, last = month_bounds(year, month)
    expenses = store.select(store_lib.RECURRING_EXPENSES, where=[('user_id', '=', user_id)])
    overrides = load_overrides(store, [e.id for e in expenses], first)

    linked = store.select(store_lib.TRANSACTIONS, where=[
        ('user_id', '=', user_id),
        ('recurring_expense_id', 'not null', None),
        ('transaction_date', '>=', first),
        ('transaction_date', '<=', last),
    ])
    paid_ids = {
        txn.recurring_expense_id for txn in linked
        if not txn.is_recurring_generated or txn.payment_status == store_lib.PAYMENT_COMPLETED
    }

    statuses = []
    for expense in expenses:
        override = overrides.get(expense.id)
        is_skipped = bool(override and override.is_skipped)
        is_confirmed = bool(override and override.is_manually_confirmed)
        amount = expense.amount
        if override is not None and override.override_amount is not None:
            amount = override.override_amount
        due = due_date(expense, year, month)
        is_due = is_expense_due_in_month(expense, year, month)
        has_linked = expense.id in paid_ids
        is_paid = has_linked or is_confirmed
        is_passed = due < today
        statuses.append(MonthStatus(
            expense=expense,
            due_date=due,
            is_due=is_due,
            is_skipped=is_skipped,
            is_manually_confirmed=is_confirmed,
            has_linked_transaction=has_linked,
            is_paid=is_paid,
            is_due_date_passed=is_passed,
            is_due_today=due == today,
            is_overdue=is_due and is_passed and not is_paid and not is_skipped,
            effective_amount=amount,
            override=override,
        ))
    return statuses
