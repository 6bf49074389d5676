"""MT940 bank statement source.

Data format
===========

MT940 is the SWIFT tag-line format many Polish banks offer as a statement
export. A file holds one or more statements, each opened by a `:20:` tag:

    :20:STARTUMS
    :25:PL61109010140000071219812874
    :28C:00001/1
    :60F:C240101PLN1000,00
    :61:2401150115C1234,56NTRFPAYMENT REF
    :86:PRZELEW OD: JAN KOWALSKI/ Wynagrodzenie
    :62F:C240131PLN2234,56

Tags read by this module:

- `:25:` account number
- `:28C:` / `:28:` statement number
- `:60F:` / `:60M:` opening balance, `:62F:` / `:62M:` closing balance
- `:61:` statement line (one transaction)
- `:86:` information to account owner, continued on following unlabeled lines

Parsing
=======

Each statement block is fed line by line to `StatementScanner`, an explicit
state machine whose transitions are listed in `TRANSITIONS`. The positional
layout of the `:61:` and balance fields is described by `mt940.tags` tag
subclasses, the same way bank-specific `:61:` variants are declared on top of
the `mt940` library.

Known gap: the `:61:` booking date carries no year and borrows the year of the
value date, so a booking date in January for a December value date lands in
the wrong year.
"""

import datetime
import enum
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import mt940.tags

from beancount.core.amount import Amount
from beancount.core.number import D, ZERO

from . import (
    DEFAULT_CURRENCY,
    DEFAULT_DESCRIPTION,
    EXPENSE,
    FORMAT_MT940,
    INCOME,
    ParseResult,
    ParsedTransaction,
    failed,
)

logger = logging.getLogger(__name__)


REVERSAL_PREFIX = '[REVERSAL]'

CREDIT_TYPES = ('C', 'RC')
REVERSAL_TYPES = ('RC', 'RD')

# Label patterns used to pull a counterparty out of the :86: text.
# The first pattern that matches wins.
MERCHANT_PATTERNS = [
    re.compile(r'(?:DO|OD|NA RZECZ|ODBIORCA|ZLECENIODAWCA)[:\s]+([^/\n]+)', re.IGNORECASE),
    re.compile(r'(?:PRZELEW|PAYMENT|TRANSFER)[:\s]+([^/\n]+)', re.IGNORECASE),
]

TAG_LINE_RE = re.compile(r'^:(?P<tag>\d{2}[A-Z]?):(?P<value>.*)$')


# =============================================================================
# Field layouts
# =============================================================================

class StatementLine(mt940.tags.Statement):
    """Positional layout of the :61: field.

    :61:2401150115C1234,56NTRFPAYMENT REF
        ~~~~~~ ~~~~ ~~~~~~~~~~~~~~~~~~~~~~
        YYMMDD MMDD type, amount, N + 3-char code, reference

    The type code is C, D, RC or RD and may be missing (treated as D).
    """

    pattern = r'''
        ^
        (?P<value_date>\d{6})
        (?P<booking_date>\d{4})?
        (?P<status>R?[CD])?
        (?P<amount>[\d,.]*)
        (?P<rest>.*)
        $
        '''


class BalanceLine(mt940.tags.Tag):
    """Layout shared by :60F: / :60M: / :62F: / :62M: balances.

    :60F:C240101PLN1000,00
         ~~~~~~~~~~~~~~~~~
         C/D, YYMMDD, currency, amount
    """

    id = 60
    pattern = r'''
        ^
        (?P<status>[CD])
        (?P<date>\d{6})
        (?P<currency>[A-Z]{3})
        (?P<amount>[\d,.]+)
        '''


STATEMENT_LINE = StatementLine()
BALANCE_LINE = BalanceLine()


# =============================================================================
# Data structures
# =============================================================================

@dataclass
class Mt940Transaction:
    """A :61: record together with its :86: description lines."""
    value_date: datetime.date
    booking_date: Optional[datetime.date]
    amount: Decimal
    type: str  # 'C', 'D', 'RC' or 'RD'
    reference: str
    description: List[str] = field(default_factory=list)


@dataclass
class Mt940Statement:
    """One statement block (everything from a :20: tag up to the next one)."""
    account_number: Optional[str] = None
    statement_number: Optional[str] = None
    opening_balance: Optional[Amount] = None
    opening_date: Optional[datetime.date] = None
    closing_balance: Optional[Amount] = None
    closing_date: Optional[datetime.date] = None
    transactions: List[Mt940Transaction] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


# =============================================================================
# Value parsing
# =============================================================================

def parse_mt940_date(text: str) -> datetime.date:
    """Parse YYMMDD (year pivot at 50) or YYYYMMDD.

    Raises:
        ValueError: For any other length or an impossible calendar date.
    """
    text = text.strip()
    if len(text) == 6 and text.isdigit():
        year = int(text[:2])
        full_year = 2000 + year if year <= 50 else 1900 + year
        return datetime.date(full_year, int(text[2:4]), int(text[4:6]))
    if len(text) == 8 and text.isdigit():
        return datetime.date(int(text[:4]), int(text[4:6]), int(text[6:8]))
    raise ValueError(f'Unsupported MT940 date: {text!r}')


def parse_mt940_amount(text: str) -> Decimal:
    """Parse an MT940 amount such as "1234,56", "1234.56" or "1,234.56".

    A lone comma is the decimal separator; with both a comma and a dot the
    comma is a thousands separator. Unparseable input yields zero.
    """
    text = re.sub(r'\s', '', text or '')
    if not text:
        return ZERO
    if ',' in text and '.' not in text:
        text = text.replace(',', '.', 1)
    elif ',' in text and '.' in text:
        text = text.replace(',', '')
    try:
        amount = D(text)
    except ValueError:
        return ZERO
    return amount if amount.is_finite() else ZERO


def parse_balance(value: str) -> Optional[Tuple[datetime.date, Amount]]:
    """Parse a balance field into (date, signed Amount), or None."""
    match = BALANCE_LINE.re.match(value.strip())
    if not match:
        return None
    amount = parse_mt940_amount(match.group('amount'))
    if match.group('status').upper() == 'D':
        amount = -amount
    date = parse_mt940_date(match.group('date'))
    return date, Amount(amount, match.group('currency').upper())


def parse_statement_line(value: str) -> Mt940Transaction:
    """Decompose a :61: field into a transaction without description.

    Raises:
        ValueError: If the value date is missing or invalid.
    """
    match = STATEMENT_LINE.re.match(value.strip())
    if not match:
        raise ValueError(f'Unrecognized :61: field: {value!r}')

    value_date_text = match.group('value_date')
    value_date = parse_mt940_date(value_date_text)

    booking_date = None
    if match.group('booking_date'):
        # MMDD only; the year comes from the value date
        try:
            booking_date = parse_mt940_date(value_date_text[:2] + match.group('booking_date'))
        except ValueError:
            logger.debug('mt940_source: invalid booking date in %r', value)

    rest = match.group('rest')
    if rest.startswith('N'):
        rest = rest[4:]

    return Mt940Transaction(
        value_date=value_date,
        booking_date=booking_date,
        amount=parse_mt940_amount(match.group('amount')),
        type=(match.group('status') or 'D').upper(),
        reference=rest.strip(),
    )


def extract_merchant_name(description: str) -> Optional[str]:
    """Guess the counterparty from :86: text using Polish/English labels."""
    for pattern in MERCHANT_PATTERNS:
        match = pattern.search(description)
        if match:
            return match.group(1).strip() or None
    return None


# =============================================================================
# State machine
# =============================================================================

class State(enum.Enum):
    IDLE = 'idle'                        # no open transaction
    IN_TRANSACTION = 'in_transaction'    # after :61:
    IN_DESCRIPTION = 'in_description'    # after :86:
    SUSPENDED = 'suspended'              # open transaction interrupted by another tag


class LineKind(enum.Enum):
    STATEMENT_LINE = 'statement_line'    # :61:
    DETAILS = 'details'                  # :86:
    TAG = 'tag'                          # any other :XX: line
    TEXT = 'text'                        # unlabeled continuation line


TRANSITIONS: Dict[Tuple[State, LineKind], State] = {
    (State.IDLE, LineKind.STATEMENT_LINE): State.IN_TRANSACTION,
    (State.IDLE, LineKind.DETAILS): State.IDLE,
    (State.IDLE, LineKind.TAG): State.IDLE,
    (State.IDLE, LineKind.TEXT): State.IDLE,

    (State.IN_TRANSACTION, LineKind.STATEMENT_LINE): State.IN_TRANSACTION,
    (State.IN_TRANSACTION, LineKind.DETAILS): State.IN_DESCRIPTION,
    (State.IN_TRANSACTION, LineKind.TAG): State.SUSPENDED,
    (State.IN_TRANSACTION, LineKind.TEXT): State.IN_TRANSACTION,

    (State.IN_DESCRIPTION, LineKind.STATEMENT_LINE): State.IN_TRANSACTION,
    (State.IN_DESCRIPTION, LineKind.DETAILS): State.IN_DESCRIPTION,
    (State.IN_DESCRIPTION, LineKind.TAG): State.SUSPENDED,
    (State.IN_DESCRIPTION, LineKind.TEXT): State.IN_DESCRIPTION,

    (State.SUSPENDED, LineKind.STATEMENT_LINE): State.IN_TRANSACTION,
    (State.SUSPENDED, LineKind.DETAILS): State.IN_DESCRIPTION,
    (State.SUSPENDED, LineKind.TAG): State.SUSPENDED,
    (State.SUSPENDED, LineKind.TEXT): State.SUSPENDED,
}

# States in which unlabeled lines belong to the open transaction
CONTINUATION_STATES = (State.IN_TRANSACTION, State.IN_DESCRIPTION)


def classify_line(line: str) -> Tuple[LineKind, Optional[str], str]:
    """Return (kind, tag, value) for one trimmed, non-empty line."""
    match = TAG_LINE_RE.match(line)
    if match:
        tag = match.group('tag')
        value = match.group('value')
        if tag == '61':
            return LineKind.STATEMENT_LINE, tag, value
        if tag == '86':
            return LineKind.DETAILS, tag, value
        return LineKind.TAG, tag, value
    if line.startswith(':'):
        return LineKind.TAG, None, line
    return LineKind.TEXT, None, line


class StatementScanner:
    """Consumes the lines of one statement block and builds an Mt940Statement."""

    def __init__(self):
        self.state = State.IDLE
        self.current: Optional[Mt940Transaction] = None
        self.statement = Mt940Statement()

    def feed(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        kind, tag, value = classify_line(line)
        if kind is LineKind.STATEMENT_LINE:
            self._start_transaction(value)
        elif kind is LineKind.DETAILS:
            self._append_description(value)
        elif kind is LineKind.TEXT:
            if self.state in CONTINUATION_STATES:
                self._append_description(value)
        else:
            self._read_header(tag, value)

        next_state = TRANSITIONS[self.state, kind]
        if self.current is None:
            next_state = State.IDLE
        self.state = next_state

    def close(self) -> Mt940Statement:
        """Flush the open transaction and return the statement."""
        self._flush()
        self.state = State.IDLE
        return self.statement

    def _flush(self) -> None:
        if self.current is not None:
            self.statement.transactions.append(self.current)
            self.current = None

    def _start_transaction(self, value: str) -> None:
        self._flush()
        try:
            self.current = parse_statement_line(value)
        except ValueError as e:
            logger.debug('mt940_source: %s', e)
            self.statement.errors.append(f'Could not parse transaction line: :61:{value}')

    def _append_description(self, value: str) -> None:
        if self.current is None:
            return
        value = value.strip()
        if value:
            self.current.description.append(value)

    def _read_header(self, tag: Optional[str], value: str) -> None:
        stmt = self.statement
        if tag == '25':
            stmt.account_number = value.strip()
        elif tag in ('28C', '28'):
            stmt.statement_number = value.strip()
        elif tag in ('60F', '60M', '62F', '62M'):
            try:
                balance = parse_balance(value)
            except ValueError as e:
                stmt.errors.append(f'Could not parse balance :{tag}:{value} ({e})')
                return
            if balance is None:
                return
            if tag.startswith('60'):
                stmt.opening_date, stmt.opening_balance = balance
            else:
                stmt.closing_date, stmt.closing_balance = balance


def parse_statement_block(block: str) -> Mt940Statement:
    """Run the state machine over one statement block."""
    scanner = StatementScanner()
    for line in block.split('\n'):
        scanner.feed(line)
    return scanner.close()


# =============================================================================
# Conversion to canonical transactions
# =============================================================================

def to_parsed_transaction(txn: Mt940Transaction, currency: str) -> ParsedTransaction:
    description = ' '.join(txn.description).strip()
    merchant_name = extract_merchant_name(description)
    description = re.sub(r'\s+', ' ', description).strip() or txn.reference or DEFAULT_DESCRIPTION
    if txn.type in REVERSAL_TYPES:
        description = f'{REVERSAL_PREFIX} {description}'

    return ParsedTransaction(
        date=txn.value_date,
        booking_date=txn.booking_date,
        amount=abs(txn.amount),
        description=description,
        merchant_name=merchant_name,
        type=INCOME if txn.type in CREDIT_TYPES else EXPENSE,
        currency=currency,
        reference=txn.reference,
    )


def looks_like_mt940(content: str) -> bool:
    return ':20:' in content or ':25:' in content or ':61:' in content


def parse_mt940(content: str) -> ParseResult:
    """Parse MT940 text into canonical transactions.

    Args:
        content: Decoded file text.

    Returns:
        ParseResult; `success` requires at least one transaction.
    """
    try:
        return _parse_mt940(content)
    except Exception as e:
        logger.exception('mt940_source: unexpected error while parsing')
        return failed(FORMAT_MT940, f'Failed to parse MT940: {e}')


def _parse_mt940(content: str) -> ParseResult:
    content = content.replace('\r\n', '\n').replace('\r', '\n')
    if not looks_like_mt940(content):
        return failed(FORMAT_MT940, 'File does not appear to be in MT940 format')

    result = ParseResult(source_format=FORMAT_MT940)
    currency = DEFAULT_CURRENCY
    statements = 0

    for block in re.split(r'(?=:20:)', content):
        if not block.strip():
            continue
        stmt = parse_statement_block(block)
        statements += 1
        result.errors.extend(stmt.errors)

        if result.account_number is None and stmt.account_number:
            result.account_number = stmt.account_number
        if stmt.opening_balance is not None:
            currency = stmt.opening_balance.currency
            if result.opening_balance is None:
                result.opening_balance = stmt.opening_balance
        if stmt.closing_balance is not None:
            result.closing_balance = stmt.closing_balance
            result.statement_date = stmt.closing_date

        for txn in stmt.transactions:
            result.transactions.append(to_parsed_transaction(txn, currency))

    if not result.transactions:
        result.errors.append('No transactions found in MT940 file')

    logger.info('mt940_source: loaded %d statements, %d transactions',
                statements, len(result.transactions))
    return result.finish()
