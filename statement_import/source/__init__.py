"""Canonical parser output shared by all statement sources.

Every source module (`delimited`, `mt940_source`, `pdf_text`) turns its input
into a list of `ParsedTransaction` records wrapped in a `ParseResult`. Parsers
never raise for malformed input; problems are reported through
`ParseResult.errors` and the caller decides what to persist.

Amounts are `Decimal` magnitudes created with beancount's `D`; the direction of
money flow is carried only by `ParsedTransaction.type`.
"""

import datetime
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from beancount.core.amount import Amount
from beancount.core.number import D


DEFAULT_CURRENCY = 'PLN'
DEFAULT_DESCRIPTION = 'Transaction'

# Transaction direction
INCOME = 'income'
EXPENSE = 'expense'

# Confidence tiers for heuristic extraction and categorization
CONFIDENCE_HIGH = 'high'
CONFIDENCE_MEDIUM = 'medium'
CONFIDENCE_NONE = 'none'

# Source formats
FORMAT_CSV = 'csv'
FORMAT_MT940 = 'mt940'
FORMAT_PDF = 'pdf'

# Bank dialects
BANK_MBANK = 'mbank'
BANK_ING = 'ing'
BANK_UNKNOWN = 'unknown'


@dataclass
class ParsedTransaction:
    """A transaction in the canonical representation produced by every parser."""
    date: datetime.date
    amount: Decimal  # always >= 0, see `type`
    description: str
    type: str  # INCOME or EXPENSE
    merchant_name: Optional[str] = None
    currency: str = DEFAULT_CURRENCY
    booking_date: Optional[datetime.date] = None
    # Provenance, filled in depending on the source format
    confidence: Optional[str] = None
    reference: Optional[str] = None
    raw_text: Optional[str] = None
    raw_data: Dict[str, str] = field(default_factory=dict)


@dataclass
class ParseResult:
    """Outcome of parsing one document.

    `success` is true when at least one transaction was recovered; `errors`
    holds human-readable messages meant for manual review.
    """
    source_format: str
    success: bool = False
    transactions: List[ParsedTransaction] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    # Delimited text and PDF
    bank: str = BANK_UNKNOWN
    # PDF
    document_type: Optional[str] = None
    raw_text: str = ''
    # MT940
    account_number: Optional[str] = None
    statement_date: Optional[datetime.date] = None
    opening_balance: Optional[Amount] = None
    closing_balance: Optional[Amount] = None

    def finish(self) -> 'ParseResult':
        self.success = len(self.transactions) > 0
        return self


def failed(source_format: str, message: str, **kwargs) -> ParseResult:
    """Build a result for a document that could not be parsed at all."""
    return ParseResult(
        source_format=source_format, success=False, errors=[message], **kwargs)


def direction(amount: Decimal) -> str:
    """Map a signed amount to INCOME (>= 0) or EXPENSE (< 0)."""
    return INCOME if amount >= 0 else EXPENSE


def parse_polish_amount(text: str) -> Decimal:
    """Parse a Polish-formatted amount string.

    Handles formats like:
    - "1 234,56" (space or non-breaking space as thousands separator)
    - "-45,00"
    - "-45.00"
    - "-20 000,00 PLN" (with currency suffix)

    Args:
        text: Amount string.

    Returns:
        Signed Decimal.

    Raises:
        ValueError: If the text is not a number.
    """
    text = text.strip()
    text = re.sub(r'\s*(PLN|EUR|USD|GBP|CHF)\s*$', '', text, flags=re.IGNORECASE)
    text = re.sub(r'[\s\u00a0]+', '', text)
    if not text:
        raise ValueError('Empty amount')
    # Decimal comma; D() would otherwise drop it as a grouping character
    text = text.replace(',', '.', 1)
    amount = D(text)
    if not amount.is_finite():
        raise ValueError(f'Not a finite amount: {text}')
    return amount


def parse_polish_date(text: str) -> datetime.date:
    """Parse a date written as DD.MM.YYYY, YYYY.MM.DD or YYYY-MM-DD.

    Raises:
        ValueError: If the text matches none of the formats.
    """
    text = text.strip()
    if '.' in text:
        parts = text.split('.')
        if len(parts[0]) == 4:
            return datetime.datetime.strptime(text, '%Y.%m.%d').date()
        return datetime.datetime.strptime(text, '%d.%m.%Y').date()
    return datetime.datetime.strptime(text, '%Y-%m-%d').date()
