"""Delimited (CSV) bank statement source for mBank and ING.

Data format
===========

Both banks export semicolon-separated text with a header row followed by one
row per operation. Fields may be wrapped in double quotes, which protects any
semicolons inside them. Escaped quotes inside a quoted field are not supported.

mBank exports look like:

    Data operacji;Opis operacji;Rachunek;Kategoria;Kwota;Saldo po operacji
    15.01.2024;"BIEDRONKA 123";eKonto;Zakupy;-45,67 PLN;1 234,56 PLN

or, for the longer layout:

    Data operacji;Data księgowania;Opis operacji;Tytuł;Nadawca/Odbiorca;Numer konta;Kwota;Saldo po operacji

ING exports look like:

    Data transakcji;Data księgowania;Dane kontrahenta;Tytuł;Nr rachunku kontrahenta;Kwota transakcji;Saldo po transakcji

or

    Data księgowania;Kwota;Nazwa i adres kontrahenta;Rachunek kontrahenta;Szczegóły płatności;...;Waluta

Format detection
================

The dialect is decided from header phrases first and, if the header is
inconclusive, from the date shape of the first data row (DD.MM.YYYY for mBank,
YYYY-MM-DD for ING). Anything else is rejected without looking at the rows.

Column resolution
=================

Each canonical field has a list of candidate header names tried in priority
order, with a fixed column position as the last resort. A row whose amount or
date cannot be parsed is dropped and reported as `Row <n>: ...` where `n` is the
1-based line number of the row (the header is line 1).
"""

import logging
import re
from typing import Dict, List, Optional, Sequence

from . import (
    BANK_ING,
    BANK_MBANK,
    BANK_UNKNOWN,
    DEFAULT_CURRENCY,
    DEFAULT_DESCRIPTION,
    FORMAT_CSV,
    ParseResult,
    ParsedTransaction,
    direction,
    failed,
    parse_polish_amount,
    parse_polish_date,
)

logger = logging.getLogger(__name__)


MBANK_HEADER_PHRASES = ('data operacji', 'opis operacji')
ING_HEADER_PHRASES = ('data transakcji', 'dane kontrahenta', 'data księgowania')

DOTTED_DATE_RE = re.compile(r'^\d{2}\.\d{2}\.\d{4}$')
ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


# =============================================================================
# Tokenizer
# =============================================================================

def split_row(line: str) -> List[str]:
    """Split one line on semicolons, honouring double-quoted fields.

    A double quote toggles quoting and is itself dropped; cells are trimmed.
    """
    cells = []
    current = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == ';' and not in_quotes:
            cells.append(''.join(current).strip())
            current = []
        else:
            current.append(char)
    cells.append(''.join(current).strip())
    return cells


def tokenize(content: str) -> List[List[str]]:
    """Split delimited text into rows, dropping blank and all-empty rows."""
    rows = []
    for line in re.split(r'\r?\n', content):
        if not line.strip():
            continue
        row = split_row(line)
        if any(cell for cell in row):
            rows.append(row)
    return rows


# =============================================================================
# Format detection
# =============================================================================

def detect_bank(headers: Sequence[str], first_row: Sequence[str]) -> str:
    """Decide which bank produced the export.

    Args:
        headers: Header row cells.
        first_row: First data row cells (may be empty).

    Returns:
        BANK_MBANK, BANK_ING or BANK_UNKNOWN.
    """
    header_text = ';'.join(headers).lower()

    if any(phrase in header_text for phrase in MBANK_HEADER_PHRASES):
        return BANK_MBANK
    if any(phrase in header_text for phrase in ING_HEADER_PHRASES):
        return BANK_ING

    if len(first_row) >= 5:
        first_cell = first_row[0].strip()
        if DOTTED_DATE_RE.match(first_cell):
            return BANK_MBANK
        if ISO_DATE_RE.match(first_cell):
            return BANK_ING

    return BANK_UNKNOWN


# =============================================================================
# Column layouts
# =============================================================================

class ColumnMap:
    """Case-insensitive header lookup with priority-ordered candidates."""

    def __init__(self, headers: Sequence[str]):
        self.headers = list(headers)
        self._index: Dict[str, int] = {}
        for i, header in enumerate(headers):
            self._index[header.lower().strip()] = i

    def resolve(self, candidates: Sequence[str], fallback: Optional[int]) -> Optional[int]:
        """Return the index of the first candidate present, else `fallback`."""
        for name in candidates:
            if name in self._index:
                return self._index[name]
        return fallback


def _cell(row: Sequence[str], index: Optional[int]) -> str:
    if index is None or index < 0 or index >= len(row):
        return ''
    return row[index].strip()


def _parse_row_date(text: str):
    # DD.MM.YYYY and ISO dates; an empty cell is a row failure
    if not text:
        raise ValueError('Empty date')
    return parse_polish_date(text)


def _raw_data(headers: Sequence[str], row: Sequence[str]) -> Dict[str, str]:
    return {header: (row[i] if i < len(row) else '') for i, header in enumerate(headers)}


def parse_mbank_row(row: Sequence[str], columns: ColumnMap) -> ParsedTransaction:
    """Map one mBank row to a canonical transaction.

    Raises:
        ValueError: If the date or amount cannot be parsed.
    """
    headers = columns.headers
    date_idx = columns.resolve(['data operacji', 'data księgowania'], 0)
    desc_idx = columns.resolve(['opis operacji', 'tytuł'], 2)
    recipient_idx = columns.resolve(['nadawca/odbiorca', 'odbiorca'], None)
    amount_idx = columns.resolve(['kwota'], len(headers) - 2)

    date = _parse_row_date(_cell(row, date_idx))
    amount = parse_polish_amount(_cell(row, amount_idx) or '0')
    recipient = _cell(row, recipient_idx)

    return ParsedTransaction(
        date=date,
        amount=abs(amount),
        description=_cell(row, desc_idx) or DEFAULT_DESCRIPTION,
        merchant_name=recipient or None,
        type=direction(amount),
        currency=DEFAULT_CURRENCY,
        raw_data=_raw_data(headers, row),
    )


def parse_ing_row(row: Sequence[str], columns: ColumnMap) -> ParsedTransaction:
    """Map one ING row to a canonical transaction.

    Raises:
        ValueError: If the date or amount cannot be parsed.
    """
    headers = columns.headers
    date_idx = columns.resolve(['data księgowania', 'data transakcji'], 0)
    amount_idx = columns.resolve(['kwota', 'kwota transakcji'], 1)
    recipient_idx = columns.resolve(['dane kontrahenta', 'nazwa i adres kontrahenta'], 2)
    title_idx = columns.resolve(['tytuł', 'szczegóły płatności'], 3)
    currency_idx = columns.resolve(['waluta'], None)

    date = _parse_row_date(_cell(row, date_idx))
    amount = parse_polish_amount(_cell(row, amount_idx) or '0')
    recipient = _cell(row, recipient_idx)
    title = _cell(row, title_idx)
    currency = _cell(row, currency_idx) or DEFAULT_CURRENCY

    return ParsedTransaction(
        date=date,
        amount=abs(amount),
        description=title or recipient or DEFAULT_DESCRIPTION,
        merchant_name=recipient or None,
        type=direction(amount),
        currency=currency,
        raw_data=_raw_data(headers, row),
    )


ROW_PARSERS = {
    BANK_MBANK: parse_mbank_row,
    BANK_ING: parse_ing_row,
}


# =============================================================================
# Entry point
# =============================================================================

def parse_csv(content: str) -> ParseResult:
    """Parse a delimited bank export.

    Args:
        content: Decoded file text.

    Returns:
        ParseResult with `bank` set to the detected dialect.
    """
    try:
        return _parse_csv(content)
    except Exception as e:
        logger.exception('delimited: unexpected error while parsing')
        return failed(FORMAT_CSV, f'Failed to parse CSV: {e}')


def _parse_csv(content: str) -> ParseResult:
    rows = tokenize(content)
    if len(rows) < 2:
        return failed(FORMAT_CSV, 'CSV file is empty or has no data rows')

    headers, data_rows = rows[0], rows[1:]
    bank = detect_bank(headers, data_rows[0])
    if bank == BANK_UNKNOWN:
        return failed(
            FORMAT_CSV,
            'Could not detect bank format. Please ensure the CSV is from mBank or ING.')

    result = ParseResult(source_format=FORMAT_CSV, bank=bank)
    columns = ColumnMap(headers)
    parse_row = ROW_PARSERS[bank]

    for line_number, row in enumerate(data_rows, start=2):
        try:
            result.transactions.append(parse_row(row, columns))
        except ValueError as e:
            logger.debug('delimited: row %d rejected: %s', line_number, e)
            result.errors.append(f'Row {line_number}: Could not parse transaction')

    logger.info('delimited: %s export, %d transactions, %d rejected rows',
                bank, len(result.transactions), len(result.errors))
    return result.finish()
