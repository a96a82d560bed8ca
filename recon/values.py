"""Value parsing — turn raw text cells into typed values.

Every parser here is pure and total: malformed input yields ``None`` (or a
:class:`Text` fallback from :func:`coerce`), never an exception. Callers must
read ``None`` as "cannot compare", not as zero.

Accepted numeric forms::

    1234.56   1,234.56   $1,234.56   -$1,234.56   $-1,234.56
    ($1,234.56)  -> -1234.56   (accounting negative)
    1234.56-     -> -1234.56   (trailing minus, common in ledger exports)

Accepted date forms: ISO ``YYYY-MM-DD`` (optionally followed by a time),
US ``M/D/YYYY`` and ``M/D/YY``, and long-form month names
(``January 5, 2024``, ``5 Jan 2024``, ``05-Jan-24``).
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from .errors import ValidationError


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    CURRENCY = "currency"
    DATE = "date"
    BOOLEAN = "boolean"

    @classmethod
    def parse(cls, raw: Any) -> "ColumnType":
        """Parse a column type name, rejecting anything unknown."""
        if isinstance(raw, ColumnType):
            return raw
        if not isinstance(raw, str):
            raise ValidationError(
                f"Column type must be a string, got {type(raw).__name__}"
            )
        name = raw.strip().lower()
        # Older configs call monetary columns "amount".
        if name == "amount":
            return cls.CURRENCY
        if name == "reference":
            return cls.TEXT
        try:
            return cls(name)
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise ValidationError(
                f"Unknown column type: {raw!r}. Allowed: {allowed}"
            ) from None

    @property
    def is_numeric(self) -> bool:
        return self in (ColumnType.NUMBER, ColumnType.CURRENCY)


def _compatible(column_type: ColumnType, target: ColumnType) -> bool:
    if column_type == target or target is ColumnType.TEXT or column_type is ColumnType.TEXT:
        return True
    return column_type.is_numeric and target.is_numeric


def combine_types(
    a: ColumnType, b: ColumnType, explicit: ColumnType | None = None
) -> ColumnType | None:
    """Return the comparison type for a column pair, or None if incompatible."""
    if explicit is not None:
        if _compatible(a, explicit) and _compatible(b, explicit):
            return explicit
        return None
    if a == b:
        return a
    if a.is_numeric and b.is_numeric:
        return ColumnType.CURRENCY
    if a is ColumnType.TEXT:
        return b
    if b is ColumnType.TEXT:
        return a
    return None


# ---------------------------------------------------------------------------
# Typed values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Currency:
    amount: float
    parenthesized: bool = False


@dataclass(frozen=True)
class DateValue:
    value: date


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Null:
    pass


NULL = Null()

TypedValue = Number | Currency | DateValue | Text | Null
TypedRow = Mapping[str, TypedValue]


def numeric_value(v: TypedValue) -> float | None:
    """Return the float carried by a Number/Currency, else None."""
    if isinstance(v, Number):
        return v.value
    if isinstance(v, Currency):
        return v.amount
    return None


def display_value(v: TypedValue) -> str:
    """Render a typed value for tables and logs."""
    if isinstance(v, Null):
        return ""
    if isinstance(v, Currency):
        text = f"{abs(v.amount):,.2f}"
        return f"({text})" if v.amount < 0 else text
    if isinstance(v, Number):
        return f"{v.value:g}"
    if isinstance(v, DateValue):
        return v.value.isoformat()
    return v.value


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------

CURRENCY_SYMBOLS = "$£€¥"
_SPACES = (" ", "\u00a0", "\t")
_GROUPED_NUMBER_RE = re.compile(r"^(?:\d{1,3}(?:,\d{3})+|\d+)?(?:\.\d+)?$")


def _split_numeric(raw: Any) -> tuple[float, bool, bool] | None:
    """Return ``(value, parenthesized, had_symbol)`` or None if not numeric."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, Decimal)):
        value = float(raw)
        return (value, False, False) if math.isfinite(value) else None
    if not isinstance(raw, str):
        return None

    s = raw.strip()
    if not s:
        return None

    symbols = [ch for ch in s if ch in CURRENCY_SYMBOLS]
    if len(symbols) > 1:
        return None
    had_symbol = bool(symbols)
    if had_symbol:
        s = s.replace(symbols[0], "")
    for sp in _SPACES:
        s = s.replace(sp, "")

    # "$(1.00)" and "($1.00)" are both accounting negatives.
    parenthesized = False
    if s.startswith("(") and s.endswith(")"):
        parenthesized = True
        s = s[1:-1]

    negative = False
    if s[:1] in ("-", "+"):
        negative = s[0] == "-"
        s = s[1:]
    elif s.endswith("-"):
        negative = True
        s = s[:-1]

    if not s or not any(ch.isdigit() for ch in s):
        return None
    if not _GROUPED_NUMBER_RE.match(s):
        return None
    if parenthesized and negative:
        # "(-5)" has no agreed meaning.
        return None

    value = float(s.replace(",", ""))
    if not math.isfinite(value):
        return None
    if negative or parenthesized:
        value = -value
    return value, parenthesized, had_symbol


def parse_numeric(raw: Any) -> float | None:
    """Parse a number, tolerating currency symbols and accounting negatives.

    ``parse_numeric("($1,234.56)") == -1234.56``;
    ``parse_numeric("not a number") is None``.
    """
    parts = _split_numeric(raw)
    return parts[0] if parts else None


def parse_currency(raw: Any) -> Currency | None:
    parts = _split_numeric(raw)
    if parts is None:
        return None
    value, parenthesized, _ = parts
    return Currency(amount=value, parenthesized=parenthesized)


def looks_like_currency(raw: str) -> bool:
    """True when raw parses as a number and carries a money marker.

    Markers are a currency symbol or accounting parentheses.
    """
    parts = _split_numeric(raw)
    return parts is not None and (parts[1] or parts[2])


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

_MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

_ISO_DATE_RE = re.compile(
    r"^(\d{4})-(\d{1,2})-(\d{1,2})"
    r"(?:[T ]\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$"
)
_US_DATE_RE = re.compile(r"^(\d{1,2})([/-])(\d{1,2})\2(\d{4}|\d{2})$")
_MONTH_FIRST_RE = re.compile(
    r"^([A-Za-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4}|\d{2})$"
)
_DAY_FIRST_RE = re.compile(
    r"^(\d{1,2})(?:st|nd|rd|th)?[\s-]+([A-Za-z]+)\.?,?[\s-]+(\d{4}|\d{2})$"
)


def expand_two_digit_year(yy: int, today: date | None = None) -> int:
    """Resolve a two-digit year to the century nearest ``today``."""
    ref = (today or date.today()).year
    base = ref // 100 * 100
    candidates = [base - 100 + yy, base + yy, base + 100 + yy]
    return min(candidates, key=lambda y: (abs(y - ref), y))


def _make_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _year(text: str, today: date | None) -> int:
    y = int(text)
    return expand_two_digit_year(y, today) if len(text) == 2 else y


def parse_date(raw: Any, *, today: date | None = None) -> date | None:
    """Parse a calendar date; ``today`` anchors two-digit year expansion."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if not s:
        return None

    m = _ISO_DATE_RE.match(s)
    if m:
        return _make_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _US_DATE_RE.match(s)
    if m:
        return _make_date(_year(m.group(4), today), int(m.group(1)), int(m.group(3)))

    m = _MONTH_FIRST_RE.match(s)
    if m:
        month = _MONTHS.get(m.group(1).lower())
        if month:
            return _make_date(_year(m.group(3), today), month, int(m.group(2)))
        return None

    m = _DAY_FIRST_RE.match(s)
    if m:
        month = _MONTHS.get(m.group(2).lower())
        if month:
            return _make_date(_year(m.group(3), today), month, int(m.group(1)))
    return None


# ---------------------------------------------------------------------------
# Booleans
# ---------------------------------------------------------------------------

_TRUE_TOKENS = {"true", "yes", "y", "t"}
_FALSE_TOKENS = {"false", "no", "n", "f"}


def parse_bool(raw: Any) -> bool | None:
    if isinstance(raw, bool):
        return raw
    if not isinstance(raw, str):
        return None
    s = raw.strip().lower()
    if s in _TRUE_TOKENS:
        return True
    if s in _FALSE_TOKENS:
        return False
    return None


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _is_blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def _as_text(raw: Any) -> Text:
    if isinstance(raw, float) and raw.is_integer():
        return Text(str(int(raw)))
    if isinstance(raw, datetime):
        return Text(raw.isoformat(sep=" "))
    if isinstance(raw, date):
        return Text(raw.isoformat())
    return Text(str(raw).strip())


def coerce(raw: Any, column_type: ColumnType, *, today: date | None = None) -> TypedValue:
    """Convert a raw cell into the TypedValue for ``column_type``.

    Blank cells become :data:`NULL`. Cells that do not parse as the column's
    type are kept as :class:`Text` so nothing is silently dropped.
    """
    if _is_blank(raw):
        return NULL
    if column_type is ColumnType.CURRENCY:
        cur = parse_currency(raw)
        return cur if cur is not None else _as_text(raw)
    if column_type is ColumnType.NUMBER:
        num = parse_numeric(raw)
        return Number(num) if num is not None else _as_text(raw)
    if column_type is ColumnType.DATE:
        d = parse_date(raw, today=today)
        return DateValue(d) if d is not None else _as_text(raw)
    if column_type is ColumnType.BOOLEAN:
        b = parse_bool(raw)
        if b is not None:
            return Text("true" if b else "false")
        return _as_text(raw)
    return _as_text(raw)


# ---------------------------------------------------------------------------
# JSON codec
# ---------------------------------------------------------------------------


def encode_value(v: TypedValue) -> dict[str, Any] | None:
    if isinstance(v, Null):
        return None
    if isinstance(v, Currency):
        return {"t": "currency", "v": v.amount, "p": v.parenthesized}
    if isinstance(v, Number):
        return {"t": "number", "v": v.value}
    if isinstance(v, DateValue):
        return {"t": "date", "v": v.value.isoformat()}
    return {"t": "text", "v": v.value}


def decode_value(data: Any) -> TypedValue:
    if data is None:
        return NULL
    if not isinstance(data, dict) or "t" not in data:
        raise ValidationError(f"Malformed stored value: {data!r}")
    kind = data["t"]
    raw = data.get("v")
    if kind == "currency":
        return Currency(amount=float(raw), parenthesized=bool(data.get("p", False)))
    if kind == "number":
        return Number(float(raw))
    if kind == "date":
        return DateValue(date.fromisoformat(raw))
    if kind == "text":
        return Text(str(raw))
    raise ValidationError(f"Unknown stored value type: {kind!r}")
