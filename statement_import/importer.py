"""Statement import pipeline.

Takes raw documents (bytes from an upload, files on disk, ZIP archives),
parses them with the matching source module and persists the transactions
into a `Store` for one user:

    importer = StatementImporter(store=store, user_id='u1', log_status=print)
    result = importer.parse(data, filename='historia.csv')
    summary = importer.import_result(result)

Format selection
================

An explicit format hint wins. Otherwise the file extension decides
(.csv, .sta/.mt940/.940/.txt, .pdf) and, without a usable extension, the
content is sniffed: PDF magic bytes, MT940 tags, else delimited text.
Text is decoded as utf-8, then windows-1250, then iso-8859-2.

Duplicates
==========

Every transaction gets an external id built from its source, date, amount and
reference (or the start of its description), e.g.

    csv-mbank-2024-01-15-45_67-BIEDRONKA_123

Transactions whose external id the user already has are skipped and counted.

Categories and recurring expenses
=================================

Expense transactions are first matched against the user's recurring expenses
(at most one linked transaction per expense and month); a matched expense's
category wins, otherwise the keyword rules decide.
"""

import io
import logging
import os
import re
import zipfile
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from . import store as store_lib
from .categorization import Categorizer
from .recurring import RecurringMatcher
from .source import (
    BANK_MBANK,
    DEFAULT_CURRENCY,
    EXPENSE,
    FORMAT_CSV,
    FORMAT_MT940,
    FORMAT_PDF,
    ParseResult,
    ParsedTransaction,
    failed,
)
from .source.delimited import parse_csv
from .source.mt940_source import looks_like_mt940, parse_mt940
from .source.pdf_text import extract_pdf_bytes, parse_pdf_text

logger = logging.getLogger(__name__)


# windows-1250 leaves five bytes undefined; iso-8859-2 decodes anything
ENCODINGS = ['utf-8', 'windows-1250']
FALLBACK_ENCODING = 'iso-8859-2'

EXTENSION_FORMATS = {
    '.csv': FORMAT_CSV,
    '.sta': FORMAT_MT940,
    '.mt940': FORMAT_MT940,
    '.940': FORMAT_MT940,
    '.txt': FORMAT_MT940,
    '.pdf': FORMAT_PDF,
}

PDF_MAGIC = b'%PDF'


def decode_bytes(data: bytes) -> str:
    """Decode statement bytes, trying common Polish encodings."""
    for encoding in ENCODINGS:
        try:
            content = data.decode(encoding)
        except UnicodeError:
            continue
        # Check if content looks valid (no replacement characters)
        if '\ufffd' not in content:
            return content
    return data.decode(FALLBACK_ENCODING)


def format_from_filename(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    return EXTENSION_FORMATS.get(os.path.splitext(filename)[1].lower())


def sniff_format(data: Union[bytes, str]) -> str:
    if isinstance(data, bytes):
        if data.startswith(PDF_MAGIC):
            return FORMAT_PDF
        data = decode_bytes(data)
    return FORMAT_MT940 if looks_like_mt940(data) else FORMAT_CSV


def external_id(prefix: str, txn: ParsedTransaction) -> str:
    ref = txn.reference or txn.description[:20]
    return re.sub(r'[^a-zA-Z0-9-]', '_', f'{prefix}-{txn.date.isoformat()}-{txn.amount}-{ref}')


@dataclass
class ImportSummary:
    imported: int = 0
    skipped: int = 0
    total: int = 0
    errors: List[str] = field(default_factory=list)

    def add(self, other: 'ImportSummary', label: Optional[str] = None):
        self.imported += other.imported
        self.skipped += other.skipped
        self.total += other.total
        for error in other.errors:
            self.errors.append(f'{label}: {error}' if label else error)


@dataclass
class ImportTarget:
    """Account and external-id prefix a parsed document is stored under."""
    account_external_id: str
    account_name: str
    id_prefix: str


def import_target(result: ParseResult) -> ImportTarget:
    if result.source_format == FORMAT_CSV:
        name = 'mBank Import' if result.bank == BANK_MBANK else 'ING Import'
        return ImportTarget(f'import-{result.bank}', name, f'csv-{result.bank}')
    if result.source_format == FORMAT_MT940:
        return ImportTarget('mt940-import', 'MT940 Import', 'mt940')
    return ImportTarget('pdf-import', 'PDF Import', 'pdf')


class StatementImporter:
    """Parses statements and stores their transactions for one user."""

    def __init__(self,
                 user_id: str,
                 log_status: Callable[[str], None],
                 store: Optional[store_lib.Store] = None,
                 default_currency: str = DEFAULT_CURRENCY):
        if not user_id:
            raise ValueError('user_id is required')
        self.user_id = user_id
        self.log_status = log_status
        self.store = store if store is not None else store_lib.MemoryStore()
        self.default_currency = default_currency

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse(self, data: Union[bytes, str], filename: Optional[str] = None,
              format_hint: Optional[str] = None) -> ParseResult:
        """Parse one document.

        Args:
            data: Raw file bytes, or already decoded / extracted text.
            filename: Original file name, used for the extension.
            format_hint: FORMAT_CSV, FORMAT_MT940 or FORMAT_PDF.

        Returns:
            ParseResult of the selected parser.
        """
        source_format = format_hint or format_from_filename(filename) or sniff_format(data)

        if source_format == FORMAT_PDF:
            if isinstance(data, bytes):
                try:
                    text = extract_pdf_bytes(data)
                except RuntimeError as e:
                    logger.warning('importer: %s', e)
                    return failed(FORMAT_PDF, str(e))
            else:
                text = data
            return parse_pdf_text(text)

        content = decode_bytes(data) if isinstance(data, bytes) else data
        if source_format == FORMAT_MT940:
            return parse_mt940(content)
        if source_format == FORMAT_CSV:
            return parse_csv(content)
        raise ValueError(f'Unknown format: {source_format!r}')

    # =========================================================================
    # Persisting
    # =========================================================================

    def import_result(self, result: ParseResult) -> ImportSummary:
        """Store the transactions of a parsed document, skipping duplicates."""
        summary = ImportSummary(total=len(result.transactions), errors=list(result.errors))
        if not result.transactions:
            return summary

        target = import_target(result)
        currency = self.default_currency
        if result.opening_balance is not None:
            currency = result.opening_balance.currency
        account = store_lib.get_or_create_account(
            self.store, self.user_id, target.account_external_id, target.account_name, currency)

        categorizer = Categorizer(self.store, self.user_id)
        matcher = RecurringMatcher(self.store, self.user_id)
        existing_ids = {
            txn.external_id for txn in self.store.select(store_lib.TRANSACTIONS, where=[
                ('user_id', '=', self.user_id),
                ('external_id', 'not null', None),
            ])
        }

        for txn in result.transactions:
            ext_id = external_id(target.id_prefix, txn)
            if ext_id in existing_ids:
                summary.skipped += 1
                continue

            expense = None
            if txn.type == EXPENSE:
                expense = matcher.match(txn.description, txn.merchant_name, txn.date)
            if expense is not None and expense.category_id:
                category_id = expense.category_id
            else:
                category_id = categorizer.categorize(txn.description, txn.merchant_name).category_id

            try:
                self.store.insert(store_lib.TRANSACTIONS, store_lib.Transaction(
                    user_id=self.user_id,
                    account_id=account.id,
                    external_id=ext_id,
                    amount=txn.amount,
                    currency=txn.currency or currency,
                    description=txn.description,
                    merchant_name=txn.merchant_name,
                    category_id=category_id,
                    recurring_expense_id=expense.id if expense is not None else None,
                    transaction_date=txn.date,
                    booking_date=txn.booking_date or txn.date,
                    type=txn.type,
                ))
            except store_lib.UniqueViolationError:
                # Imported concurrently
                summary.skipped += 1
                continue

            existing_ids.add(ext_id)
            summary.imported += 1
            if expense is not None:
                matcher.claim(expense, txn.date)
                self.store.update(store_lib.RECURRING_EXPENSES, expense.id,
                                  last_occurrence_date=txn.date)

        self.log_status(
            f'importer: {result.source_format} imported {summary.imported}, '
            f'skipped {summary.skipped} of {summary.total} transactions'
        )
        return summary

    def import_data(self, data: Union[bytes, str], filename: Optional[str] = None,
                    format_hint: Optional[str] = None) -> ImportSummary:
        return self.import_result(self.parse(data, filename=filename, format_hint=format_hint))

    def import_file(self, path: str, format_hint: Optional[str] = None) -> ImportSummary:
        with open(path, 'rb') as f:
            data = f.read()
        return self.import_data(data, filename=os.path.basename(path), format_hint=format_hint)

    def import_directory(self, directory: str) -> ImportSummary:
        """Import every statement file below `directory`, in name order."""
        summary = ImportSummary()
        if not os.path.isdir(directory):
            self.log_status(f'importer: directory not found: {directory}')
            return summary

        for root, dirs, files in os.walk(directory):
            dirs.sort()
            for filename in sorted(files):
                if format_from_filename(filename) is None:
                    continue
                path = os.path.join(root, filename)
                self.log_status(f'importer: loading {path}')
                summary.add(self.import_file(path), label=filename)
        return summary

    def import_archive(self, data: bytes) -> ImportSummary:
        """Import every statement inside a ZIP archive."""
        summary = ImportSummary()
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile:
            summary.errors.append('Invalid ZIP archive')
            return summary

        with archive:
            for info in sorted(archive.infolist(), key=lambda i: i.filename):
                name = info.filename
                basename = os.path.basename(name)
                if info.is_dir() or name.startswith('__MACOSX/') or basename.startswith('.'):
                    continue
                if format_from_filename(basename) is None:
                    continue
                self.log_status(f'importer: loading {name} from archive')
                try:
                    member = archive.read(info)
                except (zipfile.BadZipFile, OSError) as e:
                    summary.errors.append(f'{name}: could not read archive member: {e}')
                    continue
                summary.add(self.import_data(member, filename=basename), label=name)

        self.log_status(
            f'importer: archive imported {summary.imported}, skipped {summary.skipped} '
            f'of {summary.total} transactions'
        )
        return summary


def load(spec: dict, log_status) -> StatementImporter:
    """Load the statement importer.

    Args:
        spec: Configuration dictionary with 'user_id' and optionally 'store'
            and 'default_currency'.
        log_status: Logging function.

    Returns:
        Configured StatementImporter instance.
    """
    return StatementImporter(log_status=log_status, **spec)
