"""Heuristic transaction extraction from PDF text.

Data format
===========

There is no schema: the input is whatever text `pdftotext -layout` (or any other
extractor) produced from a bank statement or a shop receipt. Image-only PDFs
yield almost no text and are rejected; OCR is not attempted here.

Document classification
=======================

The text is scored against two fixed lists of indicator phrases (Polish and
English). More than one bank-statement phrase, and more of them than receipt
phrases, makes a `bank_statement`; any receipt phrase otherwise makes a
`receipt`; anything else is `unknown` and goes through the statement heuristics
first and the receipt heuristics second.

Statement lines
===============

A transaction starts on a line beginning with a date. The line and the next
few lines (up to the next dated line) form a window that is searched for
amounts, Polish grouped format ("1 234,56") first and plain decimals
("1234.56") second. The last amount in the window is taken: statement layouts
usually print the running balance before the transaction amount. A window with
more than one amount gets `medium` confidence instead of `high`.

    15.01.2024 ZAKUP PRZY UZYCIU KARTY BIEDRONKA   1 234,56   -45,67
    ~~~~~~~~~~                                      balance    amount

Receipts
========

One expense per receipt: the first date anywhere (today if none), the labeled
total ("SUMA", "RAZEM", "DO ZAPŁATY", ...) or else the largest amount, and the
first text line as the merchant.
"""

import datetime
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Pattern, Tuple

from . import (
    BANK_ING,
    BANK_MBANK,
    BANK_UNKNOWN,
    CONFIDENCE_HIGH,
    CONFIDENCE_MEDIUM,
    DEFAULT_CURRENCY,
    DEFAULT_DESCRIPTION,
    EXPENSE,
    FORMAT_PDF,
    ParseResult,
    ParsedTransaction,
    direction,
    failed,
    parse_polish_amount,
)

logger = logging.getLogger(__name__)


DOCUMENT_BANK_STATEMENT = 'bank_statement'
DOCUMENT_RECEIPT = 'receipt'
DOCUMENT_UNKNOWN = 'unknown'

MIN_TEXT_LENGTH = 10
MIN_AMOUNT = Decimal('0.01')

BANK_INDICATORS = [
    'mbank', 'ing bank', 'wyciąg', 'rachunek', 'saldo', 'historia operacji',
    'account statement', 'bank statement', 'transactions', 'debit', 'credit',
    'nr rachunku', 'numer konta',
]

RECEIPT_INDICATORS = [
    'paragon', 'faktura', 'rachunek fiskalny', 'nip', 'kasjer',
    'receipt', 'invoice', 'total', 'suma', 'do zapłaty', 'razem',
]

CURRENCY_SUFFIX = r'(?:\s*(?:PLN|zł|EUR|USD|GBP)\b)?'

# Polish grouped format: "1 234,56", "-45,67", "+1 234,56 PLN"
POLISH_AMOUNT_RE = re.compile(
    r'(?<![\d,.])([+-]?\d{1,3}(?:[ \u00a0]?\d{3})*,\d{2})(?!\d)' + CURRENCY_SUFFIX,
    re.IGNORECASE)
# Plain decimal: "1234.56", "-45.00"; bare integers only with a currency label
PLAIN_AMOUNT_RE = re.compile(
    r'(?<![\d,.])([+-]?\d+\.\d{2}|[+-]?\d+(?=\s*(?:PLN|zł|EUR|USD|GBP)\b))(?![\d,.])'
    + CURRENCY_SUFFIX,
    re.IGNORECASE)
AMOUNT_PATTERNS = [POLISH_AMOUNT_RE, PLAIN_AMOUNT_RE]

ANY_DATE_RE = re.compile(r'\d{2}[./-]\d{2}[./-]\d{4}|\d{4}-\d{2}-\d{2}')

# Dates a statement line may start with, per bank
MBANK_LINE_DATE_RE = re.compile(r'^(\d{2}\.\d{2}\.\d{4})')
ING_LINE_DATE_RE = re.compile(r'^(\d{4}-\d{2}-\d{2}|\d{2}\.\d{2}\.\d{4})')

# How many lines after the dated line belong to the search window
MBANK_LOOKAHEAD = 2
ING_LOOKAHEAD = 3

# Receipt date formats, tried in order
RECEIPT_DATE_PATTERNS = [
    re.compile(r'\d{2}\.\d{2}\.\d{4}'),
    re.compile(r'\d{4}-\d{2}-\d{2}'),
    re.compile(r'\d{2}/\d{2}/\d{4}'),
    re.compile(r'\d{2}-\d{2}-\d{4}'),
]

TOTAL_AMOUNT = r'[:\s]*(?:PLN\s*)?([+-]?\d{1,3}(?:[ \u00a0]?\d{3})*[,.]\d{2})'
TOTAL_PATTERNS = [
    re.compile(r'(?:SUMA|TOTAL|RAZEM|DO ZAPŁATY|NALEŻNOŚĆ)' + TOTAL_AMOUNT, re.IGNORECASE),
    re.compile(r'(?:KWOTA|AMOUNT)' + TOTAL_AMOUNT, re.IGNORECASE),
]


# =============================================================================
# Text extraction
# =============================================================================

def extract_pdf_text(pdf_path: str) -> str:
    """Extract text from a PDF file using pdftotext.

    Args:
        pdf_path: Path to the PDF file.

    Returns:
        Extracted text content.

    Raises:
        RuntimeError: If pdftotext fails or is not available.
    """
    try:
        # -layout keeps statement columns on one line
        result = subprocess.run(
            ['pdftotext', '-layout', pdf_path, '-'],
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f'pdftotext failed for {pdf_path}: {e.stderr}')
    except FileNotFoundError:
        raise RuntimeError('pdftotext not found. Please install poppler-utils.')


def extract_pdf_bytes(data: bytes) -> str:
    """Extract text from in-memory PDF content via a temporary file."""
    fd, path = tempfile.mkstemp(suffix='.pdf')
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        return extract_pdf_text(path)
    finally:
        os.unlink(path)


# =============================================================================
# Value parsing
# =============================================================================

def parse_pdf_date(text: str) -> Optional[datetime.date]:
    """Parse DD.MM.YYYY, DD/MM/YYYY, DD-MM-YYYY or YYYY-MM-DD; None if invalid."""
    match = re.search(r'(\d{2})[./-](\d{2})[./-](\d{4})', text)
    try:
        if match:
            return datetime.date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        match = re.search(r'(\d{4})-(\d{2})-(\d{2})', text)
        if match:
            return datetime.date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None
    return None


def _mask_dates(text: str) -> str:
    # Keep offsets stable so spans still index into the original text
    return ANY_DATE_RE.sub(lambda m: ' ' * len(m.group(0)), text)


@dataclass
class AmountCandidate:
    start: int
    end: int
    amount: Decimal


def find_amounts(text: str) -> List[AmountCandidate]:
    """Find amounts in `text` ordered by position.

    Polish-format matches are collected first; plain-decimal matches that
    overlap one of them are ignored. Dates never count as amounts.
    """
    masked = _mask_dates(text)
    spans: List[Tuple[int, int]] = []
    candidates = []
    for pattern in AMOUNT_PATTERNS:
        for match in pattern.finditer(masked):
            start, end = match.span()
            if any(start < s_end and s_start < end for s_start, s_end in spans):
                continue
            spans.append((start, end))
            try:
                amount = parse_polish_amount(match.group(1))
            except ValueError:
                continue
            candidates.append(AmountCandidate(start, end, amount))
    candidates.sort(key=lambda c: c.start)
    return candidates


def _strip_spans(text: str, spans: List[Tuple[int, int]]) -> str:
    for start, end in sorted(spans, reverse=True):
        text = text[:start] + ' ' + text[end:]
    return re.sub(r'\s+', ' ', text).strip()


# =============================================================================
# Classification
# =============================================================================

def detect_document_type(text: str) -> str:
    lower = text.lower()
    bank_score = sum(1 for ind in BANK_INDICATORS if ind in lower)
    receipt_score = sum(1 for ind in RECEIPT_INDICATORS if ind in lower)

    if bank_score > receipt_score and bank_score >= 2:
        return DOCUMENT_BANK_STATEMENT
    if receipt_score > 0:
        return DOCUMENT_RECEIPT
    return DOCUMENT_UNKNOWN


def detect_bank(text: str) -> str:
    lower = text.lower()
    if 'mbank' in lower or 'm bank' in lower:
        return BANK_MBANK
    if 'ing bank' in lower or 'ing ' in lower or 'ingbank' in lower:
        return BANK_ING
    return BANK_UNKNOWN


# =============================================================================
# Statement heuristics
# =============================================================================

def _split_lines(text: str) -> List[str]:
    return [line.strip() for line in text.split('\n') if line.strip()]


def scan_statement(text: str, date_re: Pattern, lookahead: int) -> List[ParsedTransaction]:
    """Extract transactions from dated statement lines.

    Args:
        text: Statement text.
        date_re: Pattern a transaction line must start with (group 1 = date).
        lookahead: Number of following lines searched for the amount.

    Returns:
        Transactions in document order, possibly with duplicates.
    """
    lines = _split_lines(text)
    transactions = []

    for i, line in enumerate(lines):
        date_match = date_re.match(line)
        if not date_match:
            continue
        date = parse_pdf_date(date_match.group(1))
        if date is None:
            continue

        window_lines = lines[i:i + 1 + lookahead]
        window = ' '.join(window_lines)

        candidates = [c for c in find_amounts(window) if abs(c.amount) > MIN_AMOUNT]
        if not candidates:
            continue
        amount = candidates[-1].amount

        # Candidates inside the first line are the ones to cut out of it
        line_spans = [(c.start, c.end) for c in find_amounts(line)]
        line_spans.append(date_match.span(1))
        description = _strip_spans(line, line_spans)
        if len(description) < 3 and len(window_lines) > 1:
            description = window_lines[1]

        transactions.append(ParsedTransaction(
            date=date,
            amount=abs(amount),
            description=description or DEFAULT_DESCRIPTION,
            type=direction(amount),
            currency=DEFAULT_CURRENCY,
            confidence=CONFIDENCE_HIGH if len(candidates) == 1 else CONFIDENCE_MEDIUM,
            raw_text=window[:200],
        ))

    return transactions


def parse_mbank_statement(text: str) -> List[ParsedTransaction]:
    return scan_statement(text, MBANK_LINE_DATE_RE, MBANK_LOOKAHEAD)


def parse_ing_statement(text: str) -> List[ParsedTransaction]:
    return scan_statement(text, ING_LINE_DATE_RE, ING_LOOKAHEAD)


# =============================================================================
# Receipt heuristics
# =============================================================================

def _receipt_date(text: str) -> Optional[datetime.date]:
    for pattern in RECEIPT_DATE_PATTERNS:
        match = pattern.search(text)
        if match:
            date = parse_pdf_date(match.group(0))
            if date is not None:
                return date
    return None


def _receipt_total(text: str) -> Optional[Decimal]:
    for pattern in TOTAL_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            amount = parse_polish_amount(match.group(1))
        except ValueError:
            continue
        if amount:
            return abs(amount)

    positives = [c.amount for c in find_amounts(text) if c.amount > 0]
    return max(positives) if positives else None


def _receipt_merchant(text: str) -> str:
    lines = [line.strip() for line in text.split('\n') if len(line.strip()) > 2]
    if not lines:
        return 'Unknown Merchant'
    merchant = re.sub(r'[0-9]', '', lines[0]).strip()
    if len(merchant) < 2:
        merchant = lines[1] if len(lines) > 1 else 'Receipt'
    return merchant


def parse_receipt(text: str, today: Optional[datetime.date] = None) -> List[ParsedTransaction]:
    """Extract the single expense a receipt documents, if any."""
    amount = _receipt_total(text)
    if not amount:
        return []

    date = _receipt_date(text) or today or datetime.date.today()
    merchant = _receipt_merchant(text)

    return [ParsedTransaction(
        date=date,
        amount=amount,
        description=f'Receipt from {merchant}',
        merchant_name=merchant,
        type=EXPENSE,
        currency=DEFAULT_CURRENCY,
        confidence=CONFIDENCE_MEDIUM,
        raw_text=text[:500],
    )]


# =============================================================================
# Entry point
# =============================================================================

def deduplicate(transactions: List[ParsedTransaction]) -> List[ParsedTransaction]:
    """Drop transactions repeating an earlier (date, amount, type)."""
    seen = set()
    unique = []
    for txn in transactions:
        key = (txn.date, txn.amount, txn.type)
        if key in seen:
            continue
        seen.add(key)
        unique.append(txn)
    return unique


def parse_pdf_text(text: str, today: Optional[datetime.date] = None) -> ParseResult:
    """Classify extracted PDF text and pull transactions out of it.

    Args:
        text: Text extracted from the PDF.
        today: Date used for receipts without a date (defaults to today).

    Returns:
        ParseResult with `document_type`, `bank` and a `raw_text` excerpt.
    """
    try:
        return _parse_pdf_text(text, today)
    except Exception as e:
        logger.exception('pdf_text: unexpected error while parsing')
        return failed(FORMAT_PDF, f'Failed to parse PDF: {e}')


def _parse_pdf_text(text: str, today: Optional[datetime.date]) -> ParseResult:
    if not text or len(text.strip()) < MIN_TEXT_LENGTH:
        return failed(
            FORMAT_PDF,
            'Could not extract text from PDF. The document may be scanned/image-based.',
            document_type=DOCUMENT_UNKNOWN)

    document_type = detect_document_type(text)
    result = ParseResult(
        source_format=FORMAT_PDF, document_type=document_type, raw_text=text[:2000])

    if document_type == DOCUMENT_BANK_STATEMENT:
        result.bank = detect_bank(text)
        if result.bank == BANK_MBANK:
            transactions = parse_mbank_statement(text)
        elif result.bank == BANK_ING:
            transactions = parse_ing_statement(text)
        else:
            transactions = parse_mbank_statement(text) or parse_ing_statement(text)
        if not transactions:
            result.errors.append(
                'Could not find transactions in bank statement. '
                'Please check the document format.')
    elif document_type == DOCUMENT_RECEIPT:
        transactions = parse_receipt(text, today)
        if not transactions:
            result.errors.append('Could not extract transaction from receipt.')
    else:
        transactions = parse_mbank_statement(text) or parse_receipt(text, today)
        if not transactions:
            result.errors.append('Could not determine document type or extract transactions.')

    result.transactions = deduplicate(transactions)
    logger.info('pdf_text: %s (%s), %d transactions',
                document_type, result.bank, len(result.transactions))
    return result.finish()
