"""Tests for the mBank / ING delimited source."""

import datetime
from decimal import Decimal

import pytest

from statement_import.source import delimited
from statement_import.source import parse_polish_amount, parse_polish_date


MBANK_CSV = (
    'Data operacji;Opis operacji;Rachunek;Kategoria;Kwota;Saldo po operacji\n'
    '15.01.2024;"BIEDRONKA 123";eKonto;Zakupy;-45,67 PLN;1 234,56 PLN\n'
    '16.01.2024;Wynagrodzenie;eKonto;Wpływy;5 000,00 PLN;6 234,56 PLN\n'
)

ING_CSV = (
    'Data transakcji;Data księgowania;Dane kontrahenta;Tytuł;'
    'Nr rachunku kontrahenta;Kwota transakcji;Saldo po transakcji\n'
    '2024-01-15;2024-01-16;ORLEN SA;Paliwo;PL123;-200,00;1000,00\n'
)


class TestParsePolishAmount:
    """Tests for parse_polish_amount."""

    def test_grouped_with_comma(self):
        assert parse_polish_amount('1 234,56') == Decimal('1234.56')

    def test_non_breaking_space(self):
        assert parse_polish_amount('1\u00a0234,56') == Decimal('1234.56')

    def test_dot_decimal(self):
        assert parse_polish_amount('-45.00') == Decimal('-45.00')

    def test_currency_suffix(self):
        assert parse_polish_amount('-20 000,00 PLN') == Decimal('-20000.00')

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            parse_polish_amount('  ')

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_polish_amount('abc')


class TestParsePolishDate:

    def test_dotted(self):
        assert parse_polish_date('15.01.2024') == datetime.date(2024, 1, 15)

    def test_year_first_dotted(self):
        assert parse_polish_date('2024.01.15') == datetime.date(2024, 1, 15)

    def test_iso(self):
        assert parse_polish_date('2024-01-15') == datetime.date(2024, 1, 15)

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_polish_date('15/01/2024')


class TestTokenizer:

    def test_quoted_semicolon(self):
        assert delimited.split_row('a;"b;c";d') == ['a', 'b;c', 'd']

    def test_cells_are_trimmed(self):
        assert delimited.split_row(' a ; b ') == ['a', 'b']

    def test_blank_rows_dropped(self):
        rows = delimited.tokenize('a;b\r\n\r\n;\n c;d \n')
        assert rows == [['a', 'b'], ['c', 'd']]


class TestDetectBank:
    """Tests for detect_bank."""

    def test_mbank_header(self):
        assert delimited.detect_bank(['Data operacji', 'Opis operacji'], []) == 'mbank'

    def test_ing_header(self):
        assert delimited.detect_bank(['Data księgowania', 'Dane kontrahenta'], []) == 'ing'

    def test_unknown_header(self):
        assert delimited.detect_bank(['Foo', 'Bar'], ['1', '2']) == 'unknown'

    def test_dotted_date_in_first_row(self):
        row = ['15.01.2024', 'x', 'y', '-10,00', 'z']
        assert delimited.detect_bank(['A', 'B', 'C', 'D', 'E'], row) == 'mbank'

    def test_iso_date_in_first_row(self):
        row = ['2024-01-15', '-10,00', 'x', 'y', 'z']
        assert delimited.detect_bank(['A', 'B', 'C', 'D', 'E'], row) == 'ing'

    def test_short_first_row_is_not_enough(self):
        assert delimited.detect_bank(['A', 'B'], ['15.01.2024', 'x']) == 'unknown'


class TestParseMbank:

    def test_transactions(self):
        result = delimited.parse_csv(MBANK_CSV)
        assert result.success
        assert result.bank == 'mbank'
        assert result.errors == []
        assert len(result.transactions) == 2

        purchase, salary = result.transactions
        assert purchase.date == datetime.date(2024, 1, 15)
        assert purchase.amount == Decimal('45.67')
        assert purchase.type == 'expense'
        assert purchase.description == 'BIEDRONKA 123'
        assert purchase.currency == 'PLN'
        assert purchase.raw_data['Kategoria'] == 'Zakupy'

        assert salary.amount == Decimal('5000.00')
        assert salary.type == 'income'

    def test_bad_row_is_reported_with_line_number(self):
        content = MBANK_CSV + '17.01.2024;Zwrot;eKonto;Inne;abc;0\n'
        result = delimited.parse_csv(content)
        assert result.success
        assert len(result.transactions) == 2
        assert result.errors == ['Row 4: Could not parse transaction']

    def test_bad_date_is_a_row_error(self):
        content = MBANK_CSV + '32.13.2024;Zwrot;eKonto;Inne;-1,00;0\n'
        result = delimited.parse_csv(content)
        assert result.errors == ['Row 4: Could not parse transaction']

    def test_empty_description_falls_back(self):
        content = (
            'Data operacji;Opis operacji;Rachunek;Kategoria;Kwota;Saldo po operacji\n'
            '15.01.2024;;eKonto;Zakupy;-1,00;0\n'
        )
        result = delimited.parse_csv(content)
        assert result.transactions[0].description == 'Transaction'

    def test_positional_fallback(self):
        content = 'A;B;C;D;E\n15.01.2024;x;Sklep;-10,00;z\n'
        result = delimited.parse_csv(content)
        assert result.bank == 'mbank'
        txn = result.transactions[0]
        assert txn.description == 'Sklep'
        assert txn.amount == Decimal('10.00')
        assert txn.type == 'expense'


class TestParseIng:

    def test_transactions(self):
        result = delimited.parse_csv(ING_CSV)
        assert result.success
        assert result.bank == 'ing'
        txn = result.transactions[0]
        # Booking date takes priority over transaction date
        assert txn.date == datetime.date(2024, 1, 16)
        assert txn.amount == Decimal('200.00')
        assert txn.type == 'expense'
        assert txn.description == 'Paliwo'
        assert txn.merchant_name == 'ORLEN SA'
        assert txn.currency == 'PLN'

    def test_currency_column(self):
        content = (
            'Data księgowania;Kwota;Nazwa i adres kontrahenta;Rachunek kontrahenta;'
            'Szczegóły płatności;Waluta\n'
            '2024-02-01;12,50;Jan Kowalski;PL1;Zwrot za obiad;EUR\n'
        )
        result = delimited.parse_csv(content)
        txn = result.transactions[0]
        assert txn.currency == 'EUR'
        assert txn.type == 'income'
        assert txn.description == 'Zwrot za obiad'
        assert txn.merchant_name == 'Jan Kowalski'


class TestParseCsvFailures:

    def test_unknown_format(self):
        result = delimited.parse_csv('Foo;Bar\n1;2\n')
        assert not result.success
        assert result.transactions == []
        assert result.errors == [
            'Could not detect bank format. Please ensure the CSV is from mBank or ING.']

    def test_header_only(self):
        result = delimited.parse_csv('Data operacji;Opis operacji\n')
        assert not result.success
        assert result.errors == ['CSV file is empty or has no data rows']

    def test_all_rows_bad(self):
        content = 'Data operacji;Opis operacji;Kwota\nxx;yy;zz\n'
        result = delimited.parse_csv(content)
        assert not result.success
        assert result.errors == ['Row 2: Could not parse transaction']
