"""Column type detection by majority vote over sample values.

Candidates are tried in a fixed order (currency, number, date, boolean)
and the first whose pattern matches enough of the non-blank samples wins.
The order is the tie-break: a column of ``$1.00`` values is currency, not
number, even though every value also parses as a number.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable

from .values import ColumnType, looks_like_currency, parse_bool, parse_date, parse_numeric

DEFAULT_THRESHOLD = 0.8
# Boolean tokens (y/n/t/f) collide with short text codes.
BOOLEAN_THRESHOLD = 0.9


@dataclass(frozen=True)
class TypeDetection:
    type: ColumnType
    confidence: float
    sample_count: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type.value,
            "confidence": self.confidence,
            "sample_count": self.sample_count,
        }


_CANDIDATES: list[tuple[ColumnType, Callable[[str], bool], float]] = [
    (ColumnType.CURRENCY, looks_like_currency, DEFAULT_THRESHOLD),
    (ColumnType.NUMBER, lambda s: parse_numeric(s) is not None, DEFAULT_THRESHOLD),
    (ColumnType.DATE, lambda s: parse_date(s) is not None, DEFAULT_THRESHOLD),
    (ColumnType.BOOLEAN, lambda s: parse_bool(s) is not None, BOOLEAN_THRESHOLD),
]


def detect_type(samples: Iterable[str]) -> TypeDetection:
    """Infer the semantic type of one column from its sample values.

    Blank samples are ignored. Returns ``text`` when no candidate clears its
    threshold; its confidence is the share of samples no candidate matched.
    """
    values = [str(s).strip() for s in samples if s is not None and str(s).strip()]
    n = len(values)
    if n == 0:
        return TypeDetection(ColumnType.TEXT, 0.0, 0)

    matched_any = [False] * n
    for col_type, matches, threshold in _CANDIDATES:
        hits = 0
        for i, v in enumerate(values):
            if matches(v):
                hits += 1
                matched_any[i] = True
        ratio = hits / n
        if ratio >= threshold:
            return TypeDetection(col_type, round(ratio, 4), n)

    unmatched = sum(1 for m in matched_any if not m)
    return TypeDetection(ColumnType.TEXT, round(unmatched / n, 4), n)
