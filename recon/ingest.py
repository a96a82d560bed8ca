"""Ingestion module — parse uploaded files into rows of raw text.

Accepts delimited text (csv, tsv, txt) read with Polars, spreadsheets
(xlsx, xlsm) read with openpyxl, and PDF delegated to a table extractor
(see :mod:`recon.pdf_extract`). Every format is reduced to the same grid
shape (one header row plus body rows of strings) and then to a
:class:`ParsedSource`.

The first row is the header. Header labels are slugified into stable keys;
duplicates get a numeric suffix (``amount``, ``amount_2``). Blank rows are
dropped.

Two modes:

- ``sample``: bounded preview (``sample_rows`` rows) for column analysis
  and mapping suggestion.
- ``full``: every row, used when loading a run.

Structural problems that still leave a usable (possibly empty) result are
returned as warnings. Files that cannot be read at all raise
:class:`UnrecoverableLoadError`.
"""

from __future__ import annotations

import io
import logging
import re
import zipfile
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Sequence

import polars as pl
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .detect import TypeDetection, detect_type
from .errors import ParseWarning, UnrecoverableLoadError, ValidationError
from .models import ColumnDef, MappingEntry, Side, SignedAmount, SourceConfig, freeze_row
from .pdf_extract import TableExtractor
from .values import (
    NULL,
    ColumnType,
    Currency,
    TypedRow,
    TypedValue,
    coerce,
    numeric_value,
)

log = logging.getLogger(__name__)


SUPPORTED_FILE_EXTENSIONS = {
    ".csv": "csv",
    ".txt": "csv",
    ".tsv": "tsv",
    ".xlsx": "excel",
    ".xlsm": "excel",
    ".pdf": "pdf",
}

DEFAULT_SAMPLE_ROWS = 25
DISPLAY_SAMPLE_VALUES = 3
DETECTION_SAMPLE_SIZE = 50

MODES = ("full", "sample")


@dataclass(frozen=True)
class DetectedColumn:
    key: str
    label: str
    sample_values: tuple[str, ...] = ()
    detection: TypeDetection = field(
        default_factory=lambda: TypeDetection(ColumnType.TEXT, 0.0)
    )

    @property
    def type(self) -> ColumnType:
        return self.detection.type

    def as_column_def(self) -> ColumnDef:
        return ColumnDef(key=self.key, label=self.label, type=self.type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "sample_values": list(self.sample_values),
            "detected_type": self.type.value,
            "type_confidence": self.detection.confidence,
        }


@dataclass
class ParsedSource:
    columns: list[DetectedColumn]
    rows: list[dict[str, str]]
    warnings: list[ParseWarning] = field(default_factory=list)
    mode: str = "full"

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_keys(self) -> list[str]:
        return [c.key for c in self.columns]

    def to_dict(self) -> dict[str, Any]:
        return {
            "columns": [c.to_dict() for c in self.columns],
            "row_count": self.row_count,
            "warnings": [w.to_dict() for w in self.warnings],
            "mode": self.mode,
        }


def file_format(filename: str) -> str:
    """Return the grid reader for a filename, or raise ValidationError."""
    suffix = Path(filename).suffix.lower()
    fmt = SUPPORTED_FILE_EXTENSIONS.get(suffix)
    if fmt is None:
        allowed = ", ".join(sorted(SUPPORTED_FILE_EXTENSIONS))
        raise ValidationError(
            f"Unsupported file type: {suffix or filename!r}. Supported: {allowed}"
        )
    return fmt


# ---------------------------------------------------------------------------
# Header keys
# ---------------------------------------------------------------------------

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify_header(label: str, index: int) -> str:
    """Turn a header label into a lowercase identifier-like key."""
    slug = _NON_ALNUM_RE.sub("_", label.lower()).strip("_")
    if not slug:
        return f"column_{index + 1}"
    if slug[0].isdigit():
        slug = f"col_{slug}"
    return slug


def unique_keys(labels: Sequence[str]) -> list[str]:
    """Slugify labels, suffixing collisions with _2, _3, ..."""
    keys: list[str] = []
    seen: set[str] = set()
    for i, label in enumerate(labels):
        base = slugify_header(label, i)
        key = base
        n = 2
        while key in seen:
            key = f"{base}_{n}"
            n += 1
        seen.add(key)
        keys.append(key)
    return keys


# ---------------------------------------------------------------------------
# Grid readers
# ---------------------------------------------------------------------------


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value).strip()


def _read_csv(data: bytes, separator: str, limit: int | None, truncate: bool) -> pl.DataFrame:
    return pl.read_csv(
        io.BytesIO(data),
        has_header=False,
        separator=separator,
        infer_schema=False,
        truncate_ragged_lines=truncate,
        encoding="utf8-lossy",
        n_rows=limit,
    )


def read_delimited(
    data: bytes, separator: str = ",", limit: int | None = None
) -> tuple[list[list[str]], list[ParseWarning]]:
    """Read delimited text into a grid of strings (header row included).

    The header row fixes the width. Cells past it are dropped and reported
    as a ``ragged_rows`` warning.
    """
    warnings: list[ParseWarning] = []
    try:
        df = _read_csv(data, separator, limit, truncate=False)
    except pl.exceptions.NoDataError:
        return [], []
    except pl.exceptions.PolarsError:
        try:
            df = _read_csv(data, separator, limit, truncate=True)
        except pl.exceptions.PolarsError as e:
            raise UnrecoverableLoadError(f"Could not read delimited file: {e}") from e
        warnings.append(
            ParseWarning(
                "ragged_rows",
                f"Some rows have more than {len(df.columns)} cells; "
                "cells past the last header column were dropped.",
            )
        )
    grid = [[_cell_text(v) for v in row] for row in df.rows()]
    if grid and grid[0]:
        grid[0][0] = grid[0][0].lstrip("\ufeff")
    return grid, warnings


def read_spreadsheet(data: bytes, limit: int | None = None) -> list[list[str]]:
    """Read the first worksheet of an xlsx workbook into a grid of strings."""
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        raise UnrecoverableLoadError(f"Could not read spreadsheet: {e}") from e
    try:
        if not wb.worksheets:
            return []
        ws = wb.worksheets[0]
        grid: list[list[str]] = []
        for row in ws.iter_rows(values_only=True):
            grid.append([_cell_text(v) for v in row])
            if limit is not None and len(grid) >= limit:
                break
        return grid
    finally:
        wb.close()


# ---------------------------------------------------------------------------
# Grid -> ParsedSource
# ---------------------------------------------------------------------------


def _header_labels(header: Sequence[str]) -> list[str]:
    return [h.strip() or f"Column{i + 1}" for i, h in enumerate(header)]


def _frame_from_grid(
    header: Sequence[str], body: Sequence[Sequence[str]]
) -> tuple[list[str], list[int], pl.DataFrame]:
    """Build a string DataFrame keyed by slugified headers.

    Returns ``(labels, blank_header_positions, frame)``. Columns with a
    blank header and no data are dropped (spreadsheets often report trailing
    empty columns). Blank rows are removed.
    """
    width = max([len(header)] + [len(r) for r in body])
    header = list(header) + [""] * (width - len(header))
    padded = [list(r[:width]) + [""] * (width - len(r)) for r in body]

    keep = [
        i
        for i in range(width)
        if header[i].strip() or any(row[i].strip() for row in padded)
    ]
    blank = [i + 1 for i in keep if not header[i].strip()]
    all_labels = _header_labels(header)
    labels = [all_labels[i] for i in keep]
    keys = unique_keys(labels)
    if not keys:
        return labels, blank, pl.DataFrame()

    schema = {k: pl.String for k in keys}
    if padded:
        frame = pl.DataFrame(
            [[row[i] for i in keep] for row in padded], schema=schema, orient="row"
        )
        frame = frame.with_columns(pl.all().fill_null("").str.strip_chars())
        frame = frame.filter(pl.any_horizontal([pl.col(k) != "" for k in keys]))
    else:
        frame = pl.DataFrame(schema=schema)
    return labels, blank, frame


def _grid_warnings(labels: list[str], blank: list[int]) -> list[ParseWarning]:
    warnings: list[ParseWarning] = []
    if blank:
        warnings.append(
            ParseWarning(
                "blank_header",
                f"Header cell(s) in column position(s) {blank} are blank; named by position.",
            )
        )
    lowered = [label.lower() for label in labels]
    dupes = sorted({label for label in labels if lowered.count(label.lower()) > 1})
    if dupes:
        warnings.append(
            ParseWarning(
                "duplicate_header",
                f"Duplicate header label(s) {dupes}; later keys were suffixed _2, _3, ...",
            )
        )
    return warnings


def _parsed_from_grid(
    grid: list[list[str]],
    *,
    mode: str,
    sample_rows: int,
    max_rows: int | None,
    filename: str,
) -> ParsedSource:
    if not grid or not any(cell.strip() for cell in grid[0]):
        return ParsedSource(
            columns=[],
            rows=[],
            warnings=[
                ParseWarning(
                    "no_columns",
                    f"No header row found in {filename}; the file appears to be empty.",
                )
            ],
            mode=mode,
        )

    header, body = grid[0], grid[1:]
    labels, blank, frame = _frame_from_grid(header, body)
    keys = frame.columns
    warnings = _grid_warnings(labels, blank)

    if mode == "sample":
        frame = frame.head(sample_rows)
    elif max_rows is not None and frame.height > max_rows:
        raise ValidationError(
            f"{filename} has {frame.height:,} rows; the limit is {max_rows:,} per source."
        )

    if frame.height == 0:
        warnings.append(
            ParseWarning("no_rows", f"{filename} has a header row but no data rows.")
        )

    columns: list[DetectedColumn] = []
    for key, label in zip(keys, labels):
        series = frame.get_column(key)
        nonblank = series.filter(series != "").head(DETECTION_SAMPLE_SIZE).to_list()
        columns.append(
            DetectedColumn(
                key=key,
                label=label,
                sample_values=tuple(nonblank[:DISPLAY_SAMPLE_VALUES]),
                detection=detect_type(nonblank),
            )
        )

    return ParsedSource(columns=columns, rows=frame.to_dicts(), warnings=warnings, mode=mode)


async def _pdf_grid(
    data: bytes, filename: str, extractor: TableExtractor | None
) -> tuple[list[list[str]], list[ParseWarning]]:
    if extractor is None:
        raise ValidationError("PDF ingestion requires a table extractor to be configured.")
    try:
        table = await extractor.extract(data, filename)
    except UnrecoverableLoadError:
        raise
    except RuntimeError as e:
        raise UnrecoverableLoadError(f"PDF extraction failed for {filename}: {e}") from e

    columns = list(table.columns)
    if not columns:
        for row in table.rows:
            for key in row:
                if key not in columns:
                    columns.append(key)
    if not columns or not table.rows:
        return [], [
            ParseWarning(
                "pdf_no_table",
                f"Could not extract tabular data from {filename}. "
                "Try uploading a CSV or Excel file instead.",
            )
        ]
    grid = [list(columns)]
    grid.extend([_cell_text(row.get(c)) for c in columns] for row in table.rows)
    return grid, []


async def parse_file(
    data: bytes,
    filename: str,
    *,
    mode: str = "full",
    mapping_hint: SourceConfig | None = None,
    pdf_extractor: TableExtractor | None = None,
    sample_rows: int = DEFAULT_SAMPLE_ROWS,
    max_rows: int | None = None,
) -> ParsedSource:
    """Parse an uploaded file into columns and raw text rows.

    If ``mapping_hint`` declares columns, detected columns are remapped onto
    the declared keys (see :func:`remap_to_config`).
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
    fmt = file_format(filename)
    limit = sample_rows + 1 if mode == "sample" else None

    extra_warnings: list[ParseWarning] = []
    if fmt == "csv":
        grid, extra_warnings = read_delimited(data, ",", limit)
    elif fmt == "tsv":
        grid, extra_warnings = read_delimited(data, "\t", limit)
    elif fmt == "excel":
        grid = read_spreadsheet(data, limit)
    else:
        grid, extra_warnings = await _pdf_grid(data, filename, pdf_extractor)

    parsed = _parsed_from_grid(
        grid, mode=mode, sample_rows=sample_rows, max_rows=max_rows, filename=filename
    )
    pdf_empty = any(w.code == "pdf_no_table" for w in extra_warnings)
    parsed.warnings = extra_warnings + [
        w for w in parsed.warnings if not (pdf_empty and w.code == "no_columns")
    ]

    if mapping_hint is not None and mapping_hint.columns:
        parsed = remap_to_config(parsed, mapping_hint.columns)

    for w in parsed.warnings:
        log.warning("  %s: %s", filename, w.message)
    log.info(
        "Parsed %s (%s, %s mode): %d column(s), %d row(s)",
        filename,
        fmt,
        mode,
        len(parsed.columns),
        parsed.row_count,
    )
    return parsed


# ---------------------------------------------------------------------------
# Declared columns and typing
# ---------------------------------------------------------------------------


def remap_to_config(parsed: ParsedSource, declared: Iterable[ColumnDef]) -> ParsedSource:
    """Rename detected columns to the keys a source config declares.

    A declared column claims the first unclaimed detected column whose key
    equals its key, whose label equals its label, or whose label equals it
    case-insensitively. Undeclared file columns keep their slug keys unless
    that key is taken by a declared column.
    """
    declared = list(declared)
    renames: dict[str, str] = {}
    claimed: set[str] = set()
    warnings = list(parsed.warnings)

    for col in declared:
        match = None
        for test in (
            lambda d: d.key == col.key,
            lambda d: d.label == col.label,
            lambda d: d.label.lower() == col.label.lower(),
            lambda d: d.key == slugify_header(col.label, 0),
        ):
            match = next(
                (d for d in parsed.columns if d.key not in claimed and test(d)), None
            )
            if match is not None:
                break
        if match is None:
            warnings.append(
                ParseWarning(
                    "missing_column",
                    f"Column '{col.label}' ({col.key}) was not found in the file.",
                )
            )
            continue
        claimed.add(match.key)
        renames[match.key] = col.key

    target_keys = set(renames.values())
    columns: list[DetectedColumn] = []
    for d in parsed.columns:
        if d.key in renames:
            columns.append(replace(d, key=renames[d.key]))
        elif d.key not in target_keys:
            columns.append(d)

    rows: list[dict[str, str]] = []
    for row in parsed.rows:
        out: dict[str, str] = {}
        for key, value in row.items():
            if key in renames:
                out[renames[key]] = value
            elif key not in target_keys:
                out[key] = value
        rows.append(out)

    return ParsedSource(columns=columns, rows=rows, warnings=warnings, mode=parsed.mode)


def resolve_column_types(
    side: Side,
    source: SourceConfig,
    mapping: Iterable[MappingEntry],
    detected: Iterable[DetectedColumn | ColumnDef] = (),
) -> dict[str, ColumnType]:
    """Choose the type each column is coerced to.

    Precedence, lowest to highest: detected type, declared column type,
    mapping type. Mapped keys are always present so a column missing from
    the file still yields Null values rather than absent keys.
    """
    types: dict[str, ColumnType] = {d.key: d.type for d in detected}
    for col in source.columns:
        types[col.key] = col.type
    for m in mapping:
        key = m.source_a_key if side is Side.A else m.source_b_key
        types[key] = m.type
    return types


def type_rows(
    raw_rows: Iterable[dict[str, Any]],
    column_types: dict[str, ColumnType],
    *,
    today: date | None = None,
) -> list[TypedRow]:
    """Coerce raw rows into immutable typed rows."""
    typed: list[TypedRow] = []
    for raw in raw_rows:
        row = {
            key: coerce(raw.get(key), col_type, today=today)
            for key, col_type in column_types.items()
        }
        for key, value in raw.items():
            if key not in row:
                row[key] = coerce(value, ColumnType.TEXT)
        typed.append(freeze_row(row))
    return typed


def add_signed_amount(rows: Iterable[TypedRow], signed: SignedAmount | None) -> list[TypedRow]:
    """Add the debit-minus-credit column of ``signed`` to each typed row.

    A blank side counts as zero. A row with neither side numeric gets NULL.
    """
    if signed is None:
        return list(rows)
    out: list[TypedRow] = []
    for row in rows:
        debit = numeric_value(row.get(signed.debit_key, NULL))
        credit = numeric_value(row.get(signed.credit_key, NULL))
        if debit is None and credit is None:
            value: TypedValue = NULL
        else:
            value = Currency(abs(debit or 0.0) - abs(credit or 0.0))
        out.append(freeze_row({**row, signed.key: value}))
    return out
