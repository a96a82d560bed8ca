import asyncio
import io

import pytest
from pypdf import PdfWriter

from tests.conftest import FakeChatClient
from recon.errors import UnrecoverableLoadError
from recon.pdf_extract import (
    ExtractedTable,
    LLMTableExtractor,
    parse_table_json,
    split_pdf_pages,
)


def _blank_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class TestParseTableJson:
    """Tests for parse_table_json on model replies."""

    def test_object_form(self):
        table = parse_table_json('{"columns": ["Date", "Amt"], "rows": [{"Date": "1/5", "Amt": "3"}]}')
        assert table == ExtractedTable(columns=["Date", "Amt"], rows=[{"Date": "1/5", "Amt": "3"}])

    def test_bare_list_form(self):
        table = parse_table_json('[{"a": 1}]')
        assert table.columns == []
        assert table.rows == [{"a": 1}]

    def test_blank_reply_is_empty_table(self):
        assert parse_table_json("  ") == ExtractedTable()

    def test_invalid_json(self):
        with pytest.raises(UnrecoverableLoadError, match="invalid JSON"):
            parse_table_json("Here is your table: ...")

    def test_object_without_rows(self):
        with pytest.raises(UnrecoverableLoadError, match="without 'rows'"):
            parse_table_json('{"table": []}')

    def test_rows_must_be_objects(self):
        with pytest.raises(UnrecoverableLoadError, match="must be objects"):
            parse_table_json('{"rows": [["a", "b"]]}')


class TestSplitPdfPages:
    def test_one_document_per_page(self):
        pages = split_pdf_pages(_blank_pdf(3))
        assert len(pages) == 3
        assert all(p.startswith(b"%PDF") for p in pages)

    def test_not_a_pdf(self):
        with pytest.raises(UnrecoverableLoadError):
            split_pdf_pages(b"this is not a pdf")

    def test_empty(self):
        with pytest.raises(UnrecoverableLoadError, match="empty"):
            split_pdf_pages(b"")


class TestLLMTableExtractor:
    """Tests for LLMTableExtractor against a fake chat client."""

    def test_whole_document(self):
        client = FakeChatClient([{"columns": ["Ref"], "rows": [{"Ref": "A1"}]}])
        extractor = LLMTableExtractor(client, "test/model")
        table = asyncio.run(extractor.extract(_blank_pdf(2), "s.pdf"))
        assert table.rows == [{"Ref": "A1"}]
        assert len(client.calls) == 1
        call = client.calls[0]
        assert call["model"] == "test/model"
        assert call["response_format"] == {"type": "json_object"}
        content = call["messages"][0]["content"]
        assert content[1]["image_url"]["url"].startswith("data:application/pdf;base64,")

    def test_per_page_merges_tables(self):
        client = FakeChatClient(
            [
                {"columns": ["Date", "Amt"], "rows": [{"Date": "1", "Amt": "2"}]},
                {"columns": ["Date", "Amt", "Memo"], "rows": [{"Date": "3", "Amt": "4", "Memo": "x"}]},
            ]
        )
        extractor = LLMTableExtractor(client, "test/model", per_page=True)
        table = asyncio.run(extractor.extract(_blank_pdf(2), "s.pdf"))
        assert table.columns == ["Date", "Amt", "Memo"]
        assert len(table.rows) == 2
        first_prompt = client.calls[0]["messages"][0]["content"][0]["text"]
        assert first_prompt.startswith("=== page 1 of 2 from file s.pdf ===")

    def test_client_failure_propagates(self):
        client = FakeChatClient([RuntimeError("OpenRouter API error: 401")])
        extractor = LLMTableExtractor(client, "test/model")
        with pytest.raises(RuntimeError, match="401"):
            asyncio.run(extractor.extract(_blank_pdf(1), "s.pdf"))
