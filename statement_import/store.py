"""Persistence port for imported transactions and recurring expenses.

The engine never talks to a database directly. Every read and write goes
through a `Store`, a small table-oriented interface:

    store.select(TRANSACTIONS, where=[('user_id', '=', user_id),
                                      ('category_id', 'is null', None)],
                 order_by='transaction_date')
    store.insert(TRANSACTIONS, Transaction(...))
    store.update(TRANSACTIONS, txn.id, category_id=category.id)
    store.upsert(RECURRING_EXPENSE_OVERRIDES, override,
                 on_conflict=('recurring_expense_id', 'override_month'))
    store.delete(TRANSACTIONS, where=[('id', '=', txn.id)])

Rows are the dataclasses below. `select` and friends return copies, so
mutating a returned record never changes stored state; use `update`.

`MemoryStore` keeps everything in process memory. It enforces the same unique
keys a SQL backend would (NULL values never collide) and is what the tests
run against.
"""

import copy
import datetime
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from beancount.core.number import ZERO

logger = logging.getLogger(__name__)


ACCOUNTS = 'accounts'
TRANSACTIONS = 'transactions'
CATEGORIES = 'categories'
CATEGORIZATION_RULES = 'categorization_rules'
RECURRING_EXPENSES = 'recurring_expenses'
RECURRING_EXPENSE_OVERRIDES = 'recurring_expense_overrides'

PAYMENT_COMPLETED = 'completed'
PAYMENT_PLANNED = 'planned'


class StoreError(Exception):
    """Base class for persistence failures."""


class NotFoundError(StoreError):
    pass


class UniqueViolationError(StoreError):
    """Raised when a write would duplicate a unique key."""

    def __init__(self, table: str, columns: Tuple[str, ...], values: Tuple[Any, ...]):
        super().__init__(f'duplicate key in {table} {columns}: {values}')
        self.table = table
        self.columns = columns
        self.values = values


# =============================================================================
# Records
# =============================================================================

@dataclass
class Account:
    user_id: str
    external_id: str
    name: str
    currency: str = 'PLN'
    balance: Decimal = ZERO
    id: Optional[str] = None


@dataclass
class Transaction:
    user_id: str
    account_id: str
    amount: Decimal
    description: str
    transaction_date: datetime.date
    type: str
    currency: str = 'PLN'
    merchant_name: Optional[str] = None
    external_id: Optional[str] = None
    category_id: Optional[str] = None
    recurring_expense_id: Optional[str] = None
    booking_date: Optional[datetime.date] = None
    is_recurring_generated: bool = False
    payment_status: str = PAYMENT_COMPLETED
    # 'YYYY-MM' for generated placeholders
    generated_month: Optional[str] = None
    is_excluded: bool = False
    id: Optional[str] = None


@dataclass
class Category:
    name: str
    user_id: Optional[str] = None  # None for system categories
    color: Optional[str] = None
    id: Optional[str] = None


@dataclass
class CategorizationRule:
    keyword: str
    category_id: str
    is_system: bool = False
    user_id: Optional[str] = None
    id: Optional[str] = None


@dataclass
class RecurringExpense:
    user_id: str
    name: str
    amount: Decimal
    start_date: datetime.date
    currency: str = 'PLN'
    category_id: Optional[str] = None
    day_of_month: Optional[int] = 1
    interval_months: int = 1
    match_keywords: List[str] = field(default_factory=list)
    is_active: bool = True
    last_occurrence_date: Optional[datetime.date] = None
    id: Optional[str] = None


@dataclass
class RecurringExpenseOverride:
    recurring_expense_id: str
    override_month: datetime.date  # always the first day of the month
    override_amount: Optional[Decimal] = None
    is_skipped: bool = False
    is_manually_confirmed: bool = False
    notes: Optional[str] = None
    id: Optional[str] = None


RECORD_TYPES = {
    ACCOUNTS: Account,
    TRANSACTIONS: Transaction,
    CATEGORIES: Category,
    CATEGORIZATION_RULES: CategorizationRule,
    RECURRING_EXPENSES: RecurringExpense,
    RECURRING_EXPENSE_OVERRIDES: RecurringExpenseOverride,
}

UNIQUE_KEYS = {
    TRANSACTIONS: [
        ('recurring_expense_id', 'generated_month'),
        ('user_id', 'external_id'),
    ],
    RECURRING_EXPENSE_OVERRIDES: [
        ('recurring_expense_id', 'override_month'),
    ],
}


# =============================================================================
# Predicates
# =============================================================================

def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == '=':
        return actual is not None and actual == expected
    if op == '!=':
        return actual is not None and actual != expected
    if op == '>=':
        return actual is not None and actual >= expected
    if op == '<=':
        return actual is not None and actual <= expected
    if op == 'in':
        return actual is not None and actual in expected
    if op == 'is null':
        return actual is None
    if op == 'not null':
        return actual is not None
    raise ValueError(f'Unsupported operator: {op!r}')


def matches(record: Any, where: Sequence[tuple]) -> bool:
    """Check a record against `(column, op, value)` predicates (all must hold).

    Comparisons against a None column are false, as in SQL.
    """
    for predicate in where:
        column, op = predicate[0], predicate[1]
        expected = predicate[2] if len(predicate) > 2 else None
        if not hasattr(record, column):
            raise ValueError(f'Unknown column: {column!r}')
        if not _compare(op, getattr(record, column), expected):
            return False
    return True


# =============================================================================
# Store interface
# =============================================================================

class Store(ABC):
    """Abstract keyed-table store."""

    @abstractmethod
    def select(self, table: str, where: Sequence[tuple] = (),
               order_by: Optional[str] = None) -> List[Any]:
        """Return matching records; `order_by='-column'` sorts descending."""
        pass

    @abstractmethod
    def insert(self, table: str, record: Any) -> Any:
        """Insert `record`, assigning an id if it has none; returns the stored copy."""
        pass

    @abstractmethod
    def update(self, table: str, record_id: str, **changes) -> Any:
        pass

    @abstractmethod
    def upsert(self, table: str, record: Any, on_conflict: Sequence[str]) -> Any:
        """Insert, or update the row sharing `record`'s `on_conflict` columns."""
        pass

    @abstractmethod
    def delete(self, table: str, where: Sequence[tuple]) -> int:
        pass

    def get(self, table: str, record_id: str) -> Any:
        rows = self.select(table, where=[('id', '=', record_id)])
        if not rows:
            raise NotFoundError(f'{table}: no record with id {record_id}')
        return rows[0]

    def first(self, table: str, where: Sequence[tuple] = (),
              order_by: Optional[str] = None) -> Optional[Any]:
        rows = self.select(table, where=where, order_by=order_by)
        return rows[0] if rows else None


def get_or_create_account(store: Store, user_id: str, external_id: str, name: str,
                          currency: str = 'PLN') -> Account:
    """Find the user's account by external id, creating it with a zero balance."""
    account = store.first(ACCOUNTS, where=[
        ('user_id', '=', user_id),
        ('external_id', '=', external_id),
    ])
    if account is not None:
        return account
    logger.info('store: creating account %s for user %s', external_id, user_id)
    return store.insert(ACCOUNTS, Account(
        user_id=user_id, external_id=external_id, name=name, currency=currency))


def _sort_key(column: str):
    # None sorts after every value, like NULLS LAST
    def key(record):
        value = getattr(record, column)
        return (value is None, value if value is not None else 0)
    return key


class MemoryStore(Store):
    """In-memory `Store` enforcing the unique keys of `UNIQUE_KEYS`."""

    def __init__(self):
        self._tables: Dict[str, List[Any]] = {name: [] for name in RECORD_TYPES}
        self._lock = threading.RLock()

    def _rows(self, table: str) -> List[Any]:
        if table not in self._tables:
            raise ValueError(f'Unknown table: {table!r}')
        return self._tables[table]

    def _check_type(self, table: str, record: Any):
        expected = RECORD_TYPES[table]
        if not isinstance(record, expected):
            raise ValueError(f'{table} expects {expected.__name__}, got {type(record).__name__}')

    def _check_unique(self, table: str, record: Any, replacing: bool = False):
        others = [row for row in self._rows(table)
                  if not (replacing and row.id == record.id)]
        if any(row.id == record.id for row in others):
            raise UniqueViolationError(table, ('id',), (record.id,))
        for columns in UNIQUE_KEYS.get(table, []):
            values = tuple(getattr(record, c) for c in columns)
            if any(v is None for v in values):
                continue
            for row in others:
                if tuple(getattr(row, c) for c in columns) == values:
                    raise UniqueViolationError(table, columns, values)

    def select(self, table, where=(), order_by=None):
        with self._lock:
            rows = [row for row in self._rows(table) if matches(row, where)]
            if order_by:
                column = order_by.lstrip('-')
                rows.sort(key=_sort_key(column), reverse=order_by.startswith('-'))
            return copy.deepcopy(rows)

    def insert(self, table, record):
        with self._lock:
            self._check_type(table, record)
            stored = copy.deepcopy(record)
            if stored.id is None:
                stored.id = str(uuid.uuid4())
            self._check_unique(table, stored)
            self._rows(table).append(stored)
            logger.debug('store: insert %s %s', table, stored.id)
            return copy.deepcopy(stored)

    def update(self, table, record_id, **changes):
        with self._lock:
            rows = self._rows(table)
            known = {f.name for f in fields(RECORD_TYPES[table])}
            unknown = set(changes) - known
            if unknown:
                raise ValueError(f'Unknown columns for {table}: {sorted(unknown)}')
            for i, row in enumerate(rows):
                if row.id == record_id:
                    updated = replace(row, **changes)
                    self._check_unique(table, updated, replacing=True)
                    rows[i] = updated
                    return copy.deepcopy(updated)
            raise NotFoundError(f'{table}: no record with id {record_id}')

    def upsert(self, table, record, on_conflict):
        with self._lock:
            self._check_type(table, record)
            where = [(column, '=', getattr(record, column)) for column in on_conflict]
            existing = [row for row in self._rows(table) if matches(row, where)]
            if not existing:
                return self.insert(table, record)
            changes = {f.name: getattr(record, f.name)
                       for f in fields(record) if f.name != 'id'}
            return self.update(table, existing[0].id, **changes)

    def delete(self, table, where):
        with self._lock:
            rows = self._rows(table)
            kept = [row for row in rows if not matches(row, where)]
            removed = len(rows) - len(kept)
            self._tables[table] = kept
            if removed:
                logger.debug('store: deleted %d rows from %s', removed, table)
            return removed
