"""Matching engine: pair typed rows from two sources.

Two greedy passes over the residual unmatched pools:

1. Exact pass. A pair qualifies only if every mapped field agrees (dates
   equal, numbers within ``exact_epsilon``, text equal after trim and
   casefold). Rows are visited in ascending A index and each takes the
   lowest-indexed unmatched B it agrees with, so duplicates resolve as
   first-committed wins.
2. Fuzzy pass. Remaining pairs get a weighted confidence from per-field
   scores (amount band, date window, token overlap). Candidates under
   ``min_confidence`` are dropped; the rest are committed greedily by
   (-confidence, a, b). This is not a globally optimal assignment.

Pairs already in ``existing_pairs`` are never touched: the engine only
works on indices no existing pair uses. :func:`match` is pure; it returns
a :class:`MatchResult` and leaves committing to the caller.
"""

from __future__ import annotations

import logging
import math
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .errors import PartitionError, ValidationError
from .models import MappingEntry, MappingRole, MatchedPair, MatchingRules, MatchType
from .values import (
    ColumnType,
    DateValue,
    NULL,
    Null,
    Text,
    TypedRow,
    TypedValue,
    display_value,
    numeric_value,
)

log = logging.getLogger(__name__)

ROLE_WEIGHTS = {
    MappingRole.AMOUNT: 3.0,
    MappingRole.DATE: 2.0,
    MappingRole.REFERENCE: 2.0,
    MappingRole.DESCRIPTION: 1.0,
}

# Slack added to bucket widths so float noise never pushes a pair two buckets apart.
_BUCKET_SLACK = 1e-6

_TOKEN_RE = re.compile(r"[^\W_]+")


@dataclass(frozen=True)
class MatchCandidate:
    a_idx: int
    b_idx: int
    confidence: float
    match_type: MatchType
    matched_on: tuple[str, ...] = ()

    def to_pair(self) -> MatchedPair:
        return MatchedPair(
            source_a_idx=self.a_idx,
            source_b_idx=self.b_idx,
            match_type=self.match_type,
            confidence=self.confidence,
            matched_on=self.matched_on,
        )


@dataclass
class MatchResult:
    new_pairs: list[MatchedPair] = field(default_factory=list)
    unmatched_a: list[int] = field(default_factory=list)
    unmatched_b: list[int] = field(default_factory=list)

    def count(self, match_type: MatchType) -> int:
        return sum(1 for p in self.new_pairs if p.match_type is match_type)

    @property
    def exact_count(self) -> int:
        return self.count(MatchType.EXACT)

    @property
    def fuzzy_count(self) -> int:
        return self.count(MatchType.FUZZY)


# ---------------------------------------------------------------------------
# Field comparison
# ---------------------------------------------------------------------------


def _text_of(v: TypedValue) -> str:
    return (v.value if isinstance(v, Text) else display_value(v)).strip().casefold()


def _tokens(v: TypedValue) -> set[str]:
    return set(_TOKEN_RE.findall(_text_of(v)))


def token_overlap(a: TypedValue, b: TypedValue) -> float:
    """Jaccard overlap of word tokens; identical strings score 1."""
    if _text_of(a) == _text_of(b):
        return 1.0
    ta, tb = _tokens(a), _tokens(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def _amount_diff(a: float, b: float, allow_sign_flip: bool) -> float:
    diff = abs(a - b)
    if allow_sign_flip:
        diff = min(diff, abs(a + b))
    return round(diff, 6)


def _amount_band(entry: MappingEntry, rules: MatchingRules) -> float:
    return rules.column_tolerances.get(entry.source_a_key, rules.amount_band)


def _date_window(entry: MappingEntry, rules: MatchingRules) -> int:
    return int(rules.column_tolerances.get(entry.source_a_key, rules.date_window_days))


def field_agrees(
    entry: MappingEntry, a: TypedValue, b: TypedValue, rules: MatchingRules
) -> bool:
    """Exact-pass agreement for one mapped field."""
    if isinstance(a, Null) or isinstance(b, Null):
        # Two blanks are the same text, but never the same amount or date.
        return (
            isinstance(a, Null)
            and isinstance(b, Null)
            and entry.type in (ColumnType.TEXT, ColumnType.BOOLEAN)
        )
    if entry.type.is_numeric:
        na, nb = numeric_value(a), numeric_value(b)
        if na is not None and nb is not None:
            return _amount_diff(na, nb, rules.allow_sign_flip) <= rules.exact_epsilon
        if isinstance(a, Text) and isinstance(b, Text):
            return _text_of(a) == _text_of(b)
        return False
    if entry.type is ColumnType.DATE:
        if isinstance(a, DateValue) and isinstance(b, DateValue):
            return a.value == b.value
        if isinstance(a, Text) and isinstance(b, Text):
            return _text_of(a) == _text_of(b)
        return False
    return _text_of(a) == _text_of(b)


def field_score(
    entry: MappingEntry, a: TypedValue, b: TypedValue, rules: MatchingRules
) -> float | None:
    """Fuzzy-pass score in [0, 1], or None when both sides are blank."""
    if isinstance(a, Null) and isinstance(b, Null):
        return None
    if isinstance(a, Null) or isinstance(b, Null):
        return 0.0
    if entry.type.is_numeric:
        na, nb = numeric_value(a), numeric_value(b)
        if na is None or nb is None:
            if isinstance(a, Text) and isinstance(b, Text):
                return token_overlap(a, b)
            return 0.0
        diff = _amount_diff(na, nb, rules.allow_sign_flip)
        if diff <= rules.exact_epsilon:
            return 1.0
        band = _amount_band(entry, rules)
        if band > 0 and diff <= band:
            return 1.0 - 0.5 * diff / band
        return 0.0
    if entry.type is ColumnType.DATE:
        if isinstance(a, DateValue) and isinstance(b, DateValue):
            days = abs((a.value - b.value).days)
            if days == 0:
                return 1.0
            window = _date_window(entry, rules)
            if days <= window:
                return 1.0 - days / (window + 1)
            return 0.0
        if isinstance(a, Text) and isinstance(b, Text):
            return token_overlap(a, b)
        return 0.0
    return token_overlap(a, b)


def _gated_entries(mapping: Sequence[MappingEntry], rules: MatchingRules) -> list[MappingEntry]:
    if not rules.require_amount_agreement:
        return []
    return [m for m in mapping if m.role is MappingRole.AMOUNT and m.type.is_numeric]


def score_pair(
    row_a: TypedRow,
    row_b: TypedRow,
    mapping: Sequence[MappingEntry],
    rules: MatchingRules,
) -> tuple[float, tuple[str, ...]] | None:
    """Weighted confidence and fully agreeing fields, or None if gated out."""
    gated = {id(m) for m in _gated_entries(mapping, rules)}
    total = 0.0
    weight = 0.0
    agreed: list[str] = []
    for entry in mapping:
        a, b = _value(row_a, entry.source_a_key), _value(row_b, entry.source_b_key)
        score = field_score(entry, a, b, rules)
        if score is None:
            continue
        if id(entry) in gated and score == 0.0:
            return None
        w = ROLE_WEIGHTS[entry.role]
        total += w * score
        weight += w
        if score == 1.0:
            agreed.append(entry.source_a_key)
    if weight == 0:
        return None
    return round(total / weight, 4), tuple(agreed)


def _value(row: TypedRow, key: str) -> TypedValue:
    v = row.get(key)
    return v if v is not None else NULL


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------


def _block_key(row: TypedRow, entries: Sequence[MappingEntry], side: str) -> tuple | None:
    """Key that rows must share to agree on every non-numeric field.

    None means the row cannot agree exactly with anything.
    """
    parts: list[tuple] = []
    for entry in entries:
        v = _value(row, entry.source_a_key if side == "A" else entry.source_b_key)
        if isinstance(v, Null):
            if entry.type not in (ColumnType.TEXT, ColumnType.BOOLEAN):
                return None
            parts.append(("null",))
        elif entry.type is ColumnType.DATE and isinstance(v, DateValue):
            parts.append(("d", v.value))
        else:
            parts.append(("t", _text_of(v)))
    return tuple(parts)


def _numeric_bucket(v: TypedValue, width: float) -> tuple | None:
    if isinstance(v, Null):
        return None
    n = numeric_value(v)
    if n is None:
        return ("t", _text_of(v))
    return ("n", math.floor(n / width))


def _probe(bucket: tuple, allow_sign_flip: bool) -> list[tuple]:
    if bucket[0] != "n":
        return [bucket]
    k = bucket[1]
    ks = {k - 1, k, k + 1}
    if allow_sign_flip:
        ks |= {-k - 1, -k, -k + 1}
    return [("n", j) for j in sorted(ks)]


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def exact_pass(
    rows_a: Sequence[TypedRow],
    rows_b: Sequence[TypedRow],
    pool_a: Iterable[int],
    pool_b: Iterable[int],
    mapping: Sequence[MappingEntry],
    rules: MatchingRules,
) -> list[MatchCandidate]:
    numeric = [m for m in mapping if m.type.is_numeric]
    other = [m for m in mapping if not m.type.is_numeric]
    pivot = numeric[0] if numeric else None
    width = rules.exact_epsilon + _BUCKET_SLACK

    index: dict[tuple, list[int]] = defaultdict(list)
    for j in sorted(pool_b):
        key = _block_key(rows_b[j], other, "B")
        if key is None:
            continue
        bucket = _numeric_bucket(_value(rows_b[j], pivot.source_b_key), width) if pivot else ()
        if bucket is None:
            continue
        index[(key, bucket)].append(j)

    all_keys = tuple(m.source_a_key for m in mapping)
    taken_b: set[int] = set()
    out: list[MatchCandidate] = []
    for i in sorted(pool_a):
        row_a = rows_a[i]
        key = _block_key(row_a, other, "A")
        if key is None:
            continue
        if pivot:
            bucket = _numeric_bucket(_value(row_a, pivot.source_a_key), width)
            if bucket is None:
                continue
            probes = _probe(bucket, rules.allow_sign_flip)
        else:
            probes = [()]
        candidates = sorted(
            {j for p in probes for j in index.get((key, p), ()) if j not in taken_b}
        )
        for j in candidates:
            row_b = rows_b[j]
            if all(
                field_agrees(m, _value(row_a, m.source_a_key), _value(row_b, m.source_b_key), rules)
                for m in mapping
            ):
                taken_b.add(j)
                out.append(MatchCandidate(i, j, 1.0, MatchType.EXACT, all_keys))
                break
    return out


def fuzzy_candidates(
    rows_a: Sequence[TypedRow],
    rows_b: Sequence[TypedRow],
    pool_a: Iterable[int],
    pool_b: Iterable[int],
    mapping: Sequence[MappingEntry],
    rules: MatchingRules,
) -> list[MatchCandidate]:
    """Score every residual pair that could clear the confidence floor."""
    pool_b = sorted(pool_b)
    gated = _gated_entries(mapping, rules)

    # With the amount gate on, a numeric A amount only pairs with a B amount
    # inside its band, so bucket B by the first gated amount.
    pivot = gated[0] if gated else None
    index: dict[tuple, list[int]] = defaultdict(list)
    if pivot:
        width = max(rules.exact_epsilon, _amount_band(pivot, rules)) + _BUCKET_SLACK
        for j in pool_b:
            v = _value(rows_b[j], pivot.source_b_key)
            n = numeric_value(v)
            index[("n", math.floor(n / width)) if n is not None else ("other",)].append(j)

    out: list[MatchCandidate] = []
    for i in sorted(pool_a):
        row_a = rows_a[i]
        if pivot:
            n = numeric_value(_value(row_a, pivot.source_a_key))
            if n is None:
                js = index.get(("other",), [])
            else:
                probes = _probe(("n", math.floor(n / width)), rules.allow_sign_flip)
                js = sorted({j for p in probes for j in index.get(p, ())})
        else:
            js = pool_b
        for j in js:
            scored = score_pair(row_a, rows_b[j], mapping, rules)
            if scored is None:
                continue
            confidence, agreed = scored
            if confidence < rules.min_confidence:
                continue
            out.append(MatchCandidate(i, j, confidence, MatchType.FUZZY, agreed))
    return out


def commit_greedy(candidates: Iterable[MatchCandidate]) -> list[MatchCandidate]:
    """Take candidates by (-confidence, a, b), each index at most once."""
    taken_a: set[int] = set()
    taken_b: set[int] = set()
    out: list[MatchCandidate] = []
    for c in sorted(candidates, key=lambda c: (-c.confidence, c.a_idx, c.b_idx)):
        if c.a_idx in taken_a or c.b_idx in taken_b:
            continue
        taken_a.add(c.a_idx)
        taken_b.add(c.b_idx)
        out.append(c)
    return out


def _residual_pool(n: int, used: list[int], side: str) -> set[int]:
    seen: set[int] = set()
    for i in used:
        if i < 0 or i >= n:
            raise PartitionError(f"existing pair references side {side} row {i} of {n}")
        if i in seen:
            raise PartitionError(f"side {side} row {i} is in more than one existing pair")
        seen.add(i)
    return set(range(n)) - seen


def match(
    rows_a: Sequence[TypedRow],
    rows_b: Sequence[TypedRow],
    mapping: Sequence[MappingEntry],
    existing_pairs: Sequence[MatchedPair] = (),
    rules: MatchingRules | None = None,
) -> MatchResult:
    """Match the rows no existing pair uses.

    Returns only the new pairs; ``existing_pairs`` are neither altered nor
    repeated, so re-running on a committed result adds nothing.
    """
    if not mapping:
        raise ValidationError("Cannot match without a column mapping.")
    rules = rules or MatchingRules()
    pool_a = _residual_pool(len(rows_a), [p.source_a_idx for p in existing_pairs], "A")
    pool_b = _residual_pool(len(rows_b), [p.source_b_idx for p in existing_pairs], "B")

    exact = exact_pass(rows_a, rows_b, pool_a, pool_b, mapping, rules)
    pool_a -= {c.a_idx for c in exact}
    pool_b -= {c.b_idx for c in exact}

    fuzzy: list[MatchCandidate] = []
    if rules.fuzzy_enabled and pool_a and pool_b:
        fuzzy = commit_greedy(fuzzy_candidates(rows_a, rows_b, pool_a, pool_b, mapping, rules))
        pool_a -= {c.a_idx for c in fuzzy}
        pool_b -= {c.b_idx for c in fuzzy}

    log.info(
        "Matching: %d exact, %d fuzzy, %d/%d left unmatched",
        len(exact),
        len(fuzzy),
        len(pool_a),
        len(pool_b),
    )
    return MatchResult(
        new_pairs=[c.to_pair() for c in exact + fuzzy],
        unmatched_a=sorted(pool_a),
        unmatched_b=sorted(pool_b),
    )


def variance(
    rows_a: Sequence[TypedRow],
    rows_b: Sequence[TypedRow],
    unmatched_a: Iterable[int],
    unmatched_b: Iterable[int],
    mapping: Sequence[MappingEntry],
) -> float | None:
    """Unmatched A amounts minus unmatched B amounts on the first amount column."""
    entry = next(
        (m for m in mapping if m.role is MappingRole.AMOUNT and m.type.is_numeric), None
    )
    if entry is None:
        return None

    def total(rows: Sequence[TypedRow], idxs: Iterable[int], key: str) -> float:
        return sum(numeric_value(_value(rows[i], key)) or 0.0 for i in idxs)

    diff = total(rows_a, unmatched_a, entry.source_a_key) - total(
        rows_b, unmatched_b, entry.source_b_key
    )
    return round(diff, 2) + 0.0  # no -0.0
