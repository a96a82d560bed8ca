"""Exception classification for rows left unmatched.

A classifier tags each unmatched row with an :class:`ExceptionCategory`
(outstanding check, bank fee, timing difference, ...) and a short reason,
so reviewers know what to chase. Like mapping suggesters, classifiers only
propose: :func:`classify_exceptions` checks their output against the rows
that were asked about, drops anything else, and labels every row the
classifier skipped as ``other``.

:class:`FallbackExceptionClassifier` labels everything ``other``.
:class:`LLMExceptionClassifier` asks a chat model and falls back to the
same when the model call fails or returns something unusable.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from .models import (
    ExceptionCategory,
    ExceptionLabel,
    MappingRole,
    ReconciliationRun,
    Side,
)
from .values import NULL, display_value, numeric_value

log = logging.getLogger(__name__)

DEFAULT_REASON = "Unmatched item"
UNCLASSIFIED_REASON = "Unclassified"

# Rows per side shown to the model; the rest are labelled unclassified.
LLM_MAX_ITEMS_PER_SIDE = 30

CLASSIFICATION_PROMPT = (
    "You are a bank reconciliation assistant. Classify unmatched items from a "
    'reconciliation between "{label_a}" (source A) and "{label_b}" (source B). '
    "Categories: {categories}. Respond with a JSON object: "
    '{{"classifications": [{{"source": "A" or "B", "idx": number, '
    '"category": string, "reason": string}}]}}. '
    "Give a brief, clear reason for each item."
)


@dataclass(frozen=True)
class UnmatchedItem:
    """What a classifier sees of one unmatched row."""

    side: Side
    row_idx: int
    amount: float | None = None
    date: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.side.value,
            "idx": self.row_idx,
            "amount": self.amount,
            "date": self.date,
            "description": self.description,
        }


def unmatched_items(run: ReconciliationRun) -> list[UnmatchedItem]:
    """Describe every unmatched row by the run's mapped amount, date and text columns."""
    items: list[UnmatchedItem] = []
    for side, idxs in ((Side.A, run.unmatched_a), (Side.B, run.unmatched_b)):
        rows = run.rows(side) or []
        keys = {
            role: [
                m.source_a_key if side is Side.A else m.source_b_key
                for m in run.mapping
                if m.role is role
            ]
            for role in MappingRole
        }
        for i in idxs:
            row = rows[i]
            amounts = [numeric_value(row.get(k, NULL)) for k in keys[MappingRole.AMOUNT]]
            dates = [display_value(row.get(k, NULL)) for k in keys[MappingRole.DATE]]
            text = [
                display_value(row.get(k, NULL))
                for k in keys[MappingRole.REFERENCE] + keys[MappingRole.DESCRIPTION]
            ]
            items.append(
                UnmatchedItem(
                    side=side,
                    row_idx=i,
                    amount=next((a for a in amounts if a is not None), None),
                    date=next((d for d in dates if d), ""),
                    description=" ".join(t for t in text if t),
                )
            )
    return items


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------


class ExceptionClassifier(Protocol):
    async def classify(
        self, items: Sequence[UnmatchedItem], source_labels: tuple[str, str]
    ) -> list[Any]: ...


class FallbackExceptionClassifier:
    """Label every row ``other``."""

    async def classify(
        self, items: Sequence[UnmatchedItem], source_labels: tuple[str, str] = ("A", "B")
    ) -> list[ExceptionLabel]:
        return [
            ExceptionLabel(i.side, i.row_idx, ExceptionCategory.OTHER, DEFAULT_REASON)
            for i in items
        ]


class LLMExceptionClassifier:
    """Ask a chat model to classify unmatched rows. Output is untrusted."""

    def __init__(self, client: Any, model: str, max_items: int = LLM_MAX_ITEMS_PER_SIDE):
        self.client = client
        self.model = model
        self.max_items = max_items

    async def classify(
        self, items: Sequence[UnmatchedItem], source_labels: tuple[str, str] = ("A", "B")
    ) -> list[Any]:
        batch = [i for i in items if i.side is Side.A][: self.max_items]
        batch += [i for i in items if i.side is Side.B][: self.max_items]
        if not batch:
            return []
        prompt = CLASSIFICATION_PROMPT.format(
            label_a=source_labels[0],
            label_b=source_labels[1],
            categories=", ".join(c.value for c in ExceptionCategory),
        )
        try:
            response = await self.client.chat(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt},
                    {
                        "role": "user",
                        "content": "Classify these unmatched reconciliation items:\n"
                        + json.dumps([i.to_dict() for i in batch], indent=1),
                    },
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
            )
        except RuntimeError as e:
            log.warning("Exception classification failed, labelling rows 'other': %s", e)
            return await FallbackExceptionClassifier().classify(items)

        content = response.get("message", {}).get("content") or ""
        try:
            parsed = json.loads(content) if content.strip() else {}
        except json.JSONDecodeError:
            log.warning("Exception classifier returned invalid JSON: %s", content[:200])
            return await FallbackExceptionClassifier().classify(items)
        labels = parsed.get("classifications") if isinstance(parsed, dict) else parsed
        if not isinstance(labels, list):
            log.warning("Exception classifier returned no 'classifications' list")
            return await FallbackExceptionClassifier().classify(items)
        return labels


def _label_from(raw: Any) -> ExceptionLabel | None:
    """Read one classifier answer, or None if it does not name a row."""
    if isinstance(raw, ExceptionLabel):
        return raw
    if not isinstance(raw, dict):
        return None
    side, idx = raw.get("source", raw.get("side")), raw.get("idx", raw.get("row_idx"))
    if side not in ("A", "B") or isinstance(idx, bool) or not isinstance(idx, int):
        return None
    try:
        category = ExceptionCategory(raw.get("category"))
    except ValueError:
        category = ExceptionCategory.OTHER
    reason = raw.get("reason")
    return ExceptionLabel(
        side=Side(side),
        row_idx=idx,
        category=category,
        reason=reason.strip() if isinstance(reason, str) and reason.strip() else DEFAULT_REASON,
    )


async def classify_exceptions(
    classifier: ExceptionClassifier,
    items: Sequence[UnmatchedItem],
    source_labels: tuple[str, str] = ("A", "B"),
) -> list[ExceptionLabel]:
    """Run a classifier and return exactly one label per item, in item order."""
    if not items:
        return []
    answers = await classifier.classify(items, source_labels)
    wanted = {(i.side, i.row_idx) for i in items}
    by_row: dict[tuple[Side, int], ExceptionLabel] = {}
    ignored = 0
    for raw in answers:
        label = _label_from(raw)
        if label is None or (label.side, label.row_idx) not in wanted:
            ignored += 1
            continue
        by_row.setdefault((label.side, label.row_idx), label)
    if ignored:
        log.info("Exception classifier: ignored %d answer(s) naming no requested row", ignored)

    labels = [
        by_row.get(
            (i.side, i.row_idx),
            ExceptionLabel(i.side, i.row_idx, ExceptionCategory.OTHER, UNCLASSIFIED_REASON),
        )
        for i in items
    ]
    log.info(
        "Exception classification: %d row(s), %d labelled by the classifier",
        len(labels),
        len(by_row),
    )
    return labels
