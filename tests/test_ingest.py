import asyncio
import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook

from tests.conftest import _csv
from recon.errors import UnrecoverableLoadError, ValidationError
from recon.ingest import (
    add_signed_amount,
    file_format,
    parse_file,
    remap_to_config,
    resolve_column_types,
    slugify_header,
    type_rows,
    unique_keys,
)
from recon.models import ColumnDef, MappingEntry, Side, SignedAmount, SourceConfig
from recon.pdf_extract import ExtractedTable
from recon.values import NULL, ColumnType, Currency, DateValue, Text


def _xlsx(rows: list[list]) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


class _StaticExtractor:
    def __init__(self, table: ExtractedTable | Exception):
        self.table = table

    async def extract(self, data, filename):
        if isinstance(self.table, Exception):
            raise self.table
        return self.table


class TestHeaderKeys:
    """Tests for slugify_header and unique_keys."""

    def test_slugify(self):
        assert slugify_header("Posting Date", 0) == "posting_date"
        assert slugify_header("  Amount ($) ", 0) == "amount"
        assert slugify_header("2024 Total", 0) == "col_2024_total"
        assert slugify_header("***", 3) == "column_4"

    def test_collisions_get_suffix(self):
        assert unique_keys(["Amount", "amount", "AMOUNT"]) == ["amount", "amount_2", "amount_3"]

    def test_file_format(self):
        assert file_format("a.CSV") == "csv"
        assert file_format("a.tsv") == "tsv"
        assert file_format("a.xlsx") == "excel"
        assert file_format("a.pdf") == "pdf"
        with pytest.raises(ValidationError, match="Unsupported file type"):
            file_format("a.docx")


class TestParseDelimited:
    """Tests for parse_file on CSV and TSV input."""

    def test_csv_columns_rows_and_types(self):
        data = _csv(
            "Date,Amount,Reference",
            "2024-01-05,$100.00,INV-1",
            "2024-01-06,$50.00,INV-2",
        )
        parsed = asyncio.run(parse_file(data, "bank.csv"))
        assert parsed.column_keys == ["date", "amount", "reference"]
        assert parsed.row_count == 2
        assert parsed.rows[0] == {"date": "2024-01-05", "amount": "$100.00", "reference": "INV-1"}
        types = {c.key: c.type for c in parsed.columns}
        assert types == {
            "date": ColumnType.DATE,
            "amount": ColumnType.CURRENCY,
            "reference": ColumnType.TEXT,
        }
        assert parsed.columns[1].sample_values == ("$100.00", "$50.00")
        assert parsed.warnings == []

    def test_tsv_and_bom(self):
        data = "\ufeffRef\tAmt\nA\t1\n".encode()
        parsed = asyncio.run(parse_file(data, "x.tsv"))
        assert parsed.column_keys == ["ref", "amt"]
        assert parsed.rows == [{"ref": "A", "amt": "1"}]

    def test_quoted_commas_and_blank_rows(self):
        data = _csv('Name,Amount', '"Smith, J","1,200.00"', ",", '"Doe",5')
        parsed = asyncio.run(parse_file(data, "x.csv"))
        assert parsed.rows == [
            {"name": "Smith, J", "amount": "1,200.00"},
            {"name": "Doe", "amount": "5"},
        ]

    def test_duplicate_and_blank_headers_warn(self):
        data = _csv("Amount,Amount,", "1,2,x")
        parsed = asyncio.run(parse_file(data, "x.csv"))
        assert parsed.column_keys == ["amount", "amount_2", "column3"]
        codes = {w.code for w in parsed.warnings}
        assert codes == {"duplicate_header", "blank_header"}

    def test_wide_rows_warn(self):
        data = _csv("Date,Amt", "2024-01-05,100,EXTRA", "2024-01-06,5")
        parsed = asyncio.run(parse_file(data, "x.csv"))
        assert parsed.column_keys == ["date", "amt"]
        assert parsed.rows[0] == {"date": "2024-01-05", "amt": "100"}
        assert [w.code for w in parsed.warnings] == ["ragged_rows"]
        assert "more than 2 cells" in parsed.warnings[0].message

    def test_empty_file_is_warning_not_error(self):
        parsed = asyncio.run(parse_file(b"", "empty.csv"))
        assert parsed.columns == []
        assert parsed.rows == []
        assert [w.code for w in parsed.warnings] == ["no_columns"]

    def test_header_only(self):
        parsed = asyncio.run(parse_file(_csv("a,b"), "x.csv"))
        assert parsed.column_keys == ["a", "b"]
        assert [w.code for w in parsed.warnings] == ["no_rows"]

    def test_sample_mode_is_bounded(self):
        lines = ["n"] + [str(i) for i in range(100)]
        parsed = asyncio.run(parse_file(_csv(*lines), "x.csv", mode="sample", sample_rows=10))
        assert parsed.row_count == 10
        assert parsed.mode == "sample"

    def test_full_mode_row_limit(self):
        lines = ["n"] + [str(i) for i in range(11)]
        with pytest.raises(ValidationError, match="limit is 10"):
            asyncio.run(parse_file(_csv(*lines), "x.csv", max_rows=10))

    def test_bad_mode(self):
        with pytest.raises(ValueError, match="mode"):
            asyncio.run(parse_file(_csv("a"), "x.csv", mode="preview"))


class TestParseSpreadsheet:
    """Tests for parse_file on xlsx input."""

    def test_xlsx_cells_become_text(self):
        data = _xlsx(
            [
                ["Date", "Amount", "Memo", None],
                [datetime(2024, 1, 5), 100.0, "Coffee", None],
                [datetime(2024, 1, 6, 9, 30), 12.5, None, None],
                [None, None, None, None],
            ]
        )
        parsed = asyncio.run(parse_file(data, "ledger.xlsx"))
        assert parsed.column_keys == ["date", "amount", "memo"]
        assert parsed.rows == [
            {"date": "2024-01-05", "amount": "100", "memo": "Coffee"},
            {"date": "2024-01-06 09:30:00", "amount": "12.5", "memo": ""},
        ]

    def test_corrupt_xlsx(self):
        with pytest.raises(UnrecoverableLoadError, match="spreadsheet"):
            asyncio.run(parse_file(b"not a zip", "broken.xlsx"))


class TestParsePdf:
    """Tests for parse_file delegating PDFs to an extractor."""

    def test_extracted_table(self):
        extractor = _StaticExtractor(
            ExtractedTable(
                columns=["Date", "Amount"],
                rows=[{"Date": "1/5/2024", "Amount": "(5.00)"}],
            )
        )
        parsed = asyncio.run(parse_file(b"%PDF", "s.pdf", pdf_extractor=extractor))
        assert parsed.column_keys == ["date", "amount"]
        assert parsed.rows == [{"date": "1/5/2024", "amount": "(5.00)"}]

    def test_empty_extraction_is_warning(self):
        parsed = asyncio.run(
            parse_file(b"%PDF", "s.pdf", pdf_extractor=_StaticExtractor(ExtractedTable()))
        )
        assert parsed.row_count == 0
        assert [w.code for w in parsed.warnings] == ["pdf_no_table"]

    def test_extractor_failure_is_unrecoverable(self):
        extractor = _StaticExtractor(RuntimeError("API error after 4 retries"))
        with pytest.raises(UnrecoverableLoadError, match="PDF extraction failed"):
            asyncio.run(parse_file(b"%PDF", "s.pdf", pdf_extractor=extractor))

    def test_no_extractor(self):
        with pytest.raises(ValidationError, match="table extractor"):
            asyncio.run(parse_file(b"%PDF", "s.pdf"))


class TestRemapAndType:
    """Tests for remapping onto declared columns and typing rows."""

    def test_remap_by_label_case_insensitive(self):
        data = _csv("POSTED,Value,Extra", "2024-01-05,10,x")
        declared = SourceConfig(
            columns=(
                ColumnDef("date", "Posted", ColumnType.DATE),
                ColumnDef("amt", "Value", ColumnType.CURRENCY),
                ColumnDef("ref", "Reference"),
            )
        )
        parsed = asyncio.run(parse_file(data, "x.csv", mapping_hint=declared))
        assert parsed.column_keys == ["date", "amt", "extra"]
        assert parsed.rows == [{"date": "2024-01-05", "amt": "10", "extra": "x"}]
        assert [w.code for w in parsed.warnings] == ["missing_column"]

    def test_key_match_wins_over_label(self):
        parsed = asyncio.run(parse_file(_csv("Amount,amt", "1,2"), "x.csv"))
        remapped = remap_to_config(parsed, [ColumnDef("amt", "Amount")])
        assert remapped.column_keys == ["amount", "amt"]
        assert remapped.rows == [{"amount": "1", "amt": "2"}]

    def test_each_file_column_claimed_once(self):
        parsed = asyncio.run(parse_file(_csv("Total", "5"), "x.csv"))
        remapped = remap_to_config(
            parsed, [ColumnDef("amt", "Total"), ColumnDef("gross", "total")]
        )
        assert remapped.column_keys == ["amt"]
        assert [w.code for w in remapped.warnings] == ["missing_column"]

    def test_type_precedence(self):
        source = SourceConfig(columns=(ColumnDef("amt", "Amount", ColumnType.NUMBER),))
        mapping = [MappingEntry("amt", "total", ColumnType.CURRENCY)]
        parsed = asyncio.run(parse_file(_csv("amt,memo", "5,x"), "x.csv"))
        types = resolve_column_types(Side.A, source, mapping, parsed.columns)
        assert types == {"amt": ColumnType.CURRENCY, "memo": ColumnType.TEXT}
        types_b = resolve_column_types(Side.B, SourceConfig(), mapping)
        assert types_b == {"total": ColumnType.CURRENCY}

    def test_type_rows(self):
        rows = type_rows(
            [{"d": "2024-01-05", "amt": "($5.00)", "memo": "x"}, {"d": "", "amt": "n/a"}],
            {"d": ColumnType.DATE, "amt": ColumnType.CURRENCY},
        )
        assert rows[0]["d"] == DateValue(date(2024, 1, 5))
        assert rows[0]["amt"] == Currency(-5.0, True)
        assert rows[0]["memo"] == Text("x")
        assert rows[1]["d"] is NULL
        assert rows[1]["amt"] == Text("n/a")
        with pytest.raises(TypeError):
            rows[0]["d"] = NULL


class TestSignedAmount:
    """Netting a debit column and a credit column into one signed amount."""

    SIGNED = SignedAmount(key="amount", debit_key="debit", credit_key="credit")
    TYPES = {"debit": ColumnType.CURRENCY, "credit": ColumnType.CURRENCY}

    def test_debit_positive_credit_negative(self):
        rows = type_rows(
            [
                {"debit": "100.00", "credit": ""},
                {"debit": "", "credit": "40.00"},
                {"debit": "-5", "credit": "(2)"},
            ],
            self.TYPES,
        )
        netted = add_signed_amount(rows, self.SIGNED)
        assert [r["amount"] for r in netted] == [Currency(100.0), Currency(-40.0), Currency(3.0)]
        assert netted[0]["debit"] == Currency(100.0)

    def test_neither_side_numeric_is_null(self):
        rows = type_rows([{"debit": "", "credit": "n/a"}], self.TYPES)
        assert add_signed_amount(rows, self.SIGNED)[0]["amount"] is NULL

    def test_rows_stay_read_only(self):
        rows = add_signed_amount(type_rows([{"debit": "1"}], self.TYPES), self.SIGNED)
        with pytest.raises(TypeError):
            rows[0]["amount"] = NULL

    def test_no_signed_amount(self):
        rows = type_rows([{"debit": "1"}], self.TYPES)
        assert add_signed_amount(rows, None) == rows
