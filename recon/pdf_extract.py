"""PDF table extraction collaborator.

The ingestor never reads PDFs itself; it asks a :class:`TableExtractor` for
``{columns, rows}``. :class:`LLMTableExtractor` is the stock implementation:
it sends the document (or each page, split with pypdf) to a chat model
through :class:`recon.api.OpenRouterClient` and parses the JSON reply.

An extraction that finds no table returns an empty :class:`ExtractedTable`;
the ingestor turns that into a warning. A document that is not a readable
PDF, or a model reply that is not the expected JSON, raises
:class:`UnrecoverableLoadError`.
"""

from __future__ import annotations

import base64
import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from .errors import UnrecoverableLoadError

log = logging.getLogger(__name__)


PDF_EXTRACTION_PROMPT = (
    "Extract the main data table from this document: the repeating rows of "
    "transactions, line items or entries. Ignore summaries, account headers, "
    "page footers and page numbers. Use the column names exactly as they "
    "appear in the document. Return a JSON object with two keys: "
    '"columns" (list of column names in document order) and "rows" (list of '
    "objects keyed by those column names, one per table row, values kept as "
    "they appear). If there is no data table, return empty lists."
)

PDF_PAGE_HEADER = "=== page {page} of {total} from file {filename} ==="

PDF_RESPONSE_FORMAT: dict[str, str] = {"type": "json_object"}


@dataclass(frozen=True)
class ExtractedTable:
    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)


class TableExtractor(Protocol):
    async def extract(self, data: bytes, filename: str) -> ExtractedTable: ...


def _extract_message_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def parse_table_json(text: str) -> ExtractedTable:
    """Parse a model reply into an ExtractedTable.

    Accepts ``{"columns": [...], "rows": [...]}`` or a bare list of row
    objects. Anything else raises UnrecoverableLoadError.
    """
    if not text.strip():
        return ExtractedTable()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        snippet = text[:200].replace("\n", " ")
        raise UnrecoverableLoadError(f"PDF extraction returned invalid JSON: {snippet}") from e

    columns: Any = []
    if isinstance(parsed, dict):
        if "rows" not in parsed:
            raise UnrecoverableLoadError(
                "PDF extraction returned object without 'rows' key; "
                f"got keys: {list(parsed.keys())}"
            )
        columns = parsed.get("columns") or []
        parsed = parsed["rows"] or []
    if not isinstance(parsed, list) or not isinstance(columns, list):
        raise UnrecoverableLoadError("PDF extraction 'rows' and 'columns' must be lists")
    for item in parsed:
        if not isinstance(item, dict):
            raise UnrecoverableLoadError("PDF extraction rows must be objects")
    return ExtractedTable(columns=[str(c) for c in columns], rows=parsed)


def split_pdf_pages(data: bytes) -> list[bytes]:
    """Split a PDF into standalone single-page PDFs."""
    if not data:
        raise UnrecoverableLoadError("PDF file is empty")
    try:
        reader = PdfReader(io.BytesIO(data))
        pages: list[bytes] = []
        for page in reader.pages:
            writer = PdfWriter()
            writer.add_page(page)
            buf = io.BytesIO()
            writer.write(buf)
            pages.append(buf.getvalue())
    except (PdfReadError, ValueError, OSError) as e:
        raise UnrecoverableLoadError(f"Not a readable PDF: {e}") from e
    if not pages:
        raise UnrecoverableLoadError("PDF has no pages")
    return pages


def _merge_tables(tables: list[ExtractedTable]) -> ExtractedTable:
    columns: list[str] = []
    rows: list[dict[str, Any]] = []
    for t in tables:
        for c in t.columns:
            if c not in columns:
                columns.append(c)
        rows.extend(t.rows)
    return ExtractedTable(columns=columns, rows=rows)


class LLMTableExtractor:
    """Extract a table from a PDF with a chat model.

    ``per_page=True`` splits the document and extracts each page on its own,
    which keeps long statements within the model's output budget.
    """

    def __init__(
        self,
        client: Any,
        model: str,
        *,
        per_page: bool = False,
        prompt: str = PDF_EXTRACTION_PROMPT,
    ):
        self.client = client
        self.model = model
        self.per_page = per_page
        self.prompt = prompt

    async def _extract_document(self, pdf: bytes, prompt: str) -> ExtractedTable:
        encoded = base64.b64encode(pdf).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:application/pdf;base64,{encoded}"},
                    },
                ],
            }
        ]
        response = await self.client.chat(
            model=self.model,
            messages=messages,
            response_format=PDF_RESPONSE_FORMAT,
        )
        message = response.get("message", {})
        return parse_table_json(_extract_message_text(message.get("content")))

    async def extract(self, data: bytes, filename: str) -> ExtractedTable:
        pages = split_pdf_pages(data)
        if not self.per_page:
            table = await self._extract_document(data, self.prompt)
        else:
            tables = []
            for i, page in enumerate(pages):
                header = PDF_PAGE_HEADER.format(page=i + 1, total=len(pages), filename=filename)
                tables.append(await self._extract_document(page, f"{header}\n\n{self.prompt}"))
            table = _merge_tables(tables)
        log.info(
            "  %s: extracted %d column(s), %d row(s) from %d page(s)",
            filename,
            len(table.columns),
            len(table.rows),
            len(pages),
        )
        return table
