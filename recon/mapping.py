"""Mapping resolution and suggestion.

:func:`resolve` is the single gate every column mapping passes through,
whether a user typed it or a model suggested it:

1. both keys must exist in their side's declared columns;
2. each A key and each B key may be used by at most one accepted mapping
   (first proposal wins, in the order given);
3. the two columns' types must be compatible.

Proposals that fail are returned in ``rejected`` with a reason code; none
are dropped silently.

Suggesters (:class:`LabelMappingSuggester`, :class:`LLMMappingSuggester`)
only propose. :func:`suggest_mappings` orders their proposals by confidence
and hands them to :func:`resolve`.
"""

from __future__ import annotations

import difflib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, Sequence

from .errors import ValidationError
from .models import ColumnDef, MappingEntry, MappingRole, ReconciliationConfig
from .values import ColumnType, combine_types

log = logging.getLogger(__name__)

MALFORMED = "malformed"
UNKNOWN_SOURCE_A_KEY = "unknown_source_a_key"
UNKNOWN_SOURCE_B_KEY = "unknown_source_b_key"
DUPLICATE_SOURCE_A_KEY = "duplicate_source_a_key"
DUPLICATE_SOURCE_B_KEY = "duplicate_source_b_key"
INCOMPATIBLE_TYPES = "incompatible_types"

LABEL_MATCH_THRESHOLD = 0.8


@dataclass(frozen=True)
class ProposedMapping:
    source_a_key: str
    source_b_key: str
    type: ColumnType | None = None
    label: str = ""
    confidence: float | None = None
    role: MappingRole | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "ProposedMapping":
        """Build a proposal from untrusted JSON.

        Accepts ``source_a_key``/``source_b_key`` or the suggester's
        ``aKey``/``bKey`` spelling.
        """
        if not isinstance(data, dict):
            raise ValidationError(f"mapping proposal must be an object, got {type(data).__name__}")
        a_key = data.get("source_a_key", data.get("aKey"))
        b_key = data.get("source_b_key", data.get("bKey"))
        for name, value in (("source_a_key", a_key), ("source_b_key", b_key)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"mapping proposal '{name}' must be a non-empty string")
        raw_type = data.get("type")
        confidence = data.get("confidence")
        if confidence is not None:
            if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                raise ValidationError("mapping proposal 'confidence' must be a number")
            # Some models answer on a 0-100 scale.
            confidence = float(confidence) / 100 if confidence > 1 else float(confidence)
        role = data.get("role")
        try:
            role = MappingRole(role) if role else None
        except ValueError:
            raise ValidationError(f"mapping proposal has unknown role {role!r}") from None
        label = data.get("label") or ""
        return cls(
            source_a_key=a_key.strip(),
            source_b_key=b_key.strip(),
            type=ColumnType.parse(raw_type) if raw_type else None,
            label=str(label).strip(),
            confidence=confidence,
            role=role,
        )


@dataclass(frozen=True)
class RejectedMapping:
    proposal: Any
    reason: str
    detail: str

    def to_dict(self) -> dict[str, Any]:
        proposal = self.proposal
        if isinstance(proposal, ProposedMapping):
            proposal = {
                "source_a_key": proposal.source_a_key,
                "source_b_key": proposal.source_b_key,
            }
        return {"proposal": proposal, "reason": self.reason, "detail": self.detail}


@dataclass
class MappingResolution:
    valid: list[MappingEntry] = field(default_factory=list)
    rejected: list[RejectedMapping] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": [m.to_dict() for m in self.valid],
            "rejected": [r.to_dict() for r in self.rejected],
        }


def resolve(
    columns_a: Sequence[ColumnDef],
    columns_b: Sequence[ColumnDef],
    proposed: Iterable[ProposedMapping | MappingEntry | dict[str, Any]],
) -> MappingResolution:
    """Validate proposed column pairs against both sides' declared columns."""
    by_key_a = {c.key: c for c in columns_a}
    by_key_b = {c.key: c for c in columns_b}
    used_a: set[str] = set()
    used_b: set[str] = set()
    result = MappingResolution()

    for raw in proposed:
        if isinstance(raw, MappingEntry):
            proposal = ProposedMapping(
                source_a_key=raw.source_a_key,
                source_b_key=raw.source_b_key,
                type=raw.type,
                label=raw.label,
                role=raw.role,
            )
        elif isinstance(raw, ProposedMapping):
            proposal = raw
        else:
            try:
                proposal = ProposedMapping.from_dict(raw)
            except ValidationError as e:
                result.rejected.append(RejectedMapping(raw, MALFORMED, str(e)))
                continue

        a_key, b_key = proposal.source_a_key, proposal.source_b_key
        col_a, col_b = by_key_a.get(a_key), by_key_b.get(b_key)
        if col_a is None:
            result.rejected.append(
                RejectedMapping(proposal, UNKNOWN_SOURCE_A_KEY, f"'{a_key}' is not a source A column")
            )
            continue
        if col_b is None:
            result.rejected.append(
                RejectedMapping(proposal, UNKNOWN_SOURCE_B_KEY, f"'{b_key}' is not a source B column")
            )
            continue
        if a_key in used_a:
            result.rejected.append(
                RejectedMapping(proposal, DUPLICATE_SOURCE_A_KEY, f"'{a_key}' is already mapped")
            )
            continue
        if b_key in used_b:
            result.rejected.append(
                RejectedMapping(proposal, DUPLICATE_SOURCE_B_KEY, f"'{b_key}' is already mapped")
            )
            continue
        col_type = combine_types(col_a.type, col_b.type, proposal.type)
        if col_type is None:
            result.rejected.append(
                RejectedMapping(
                    proposal,
                    INCOMPATIBLE_TYPES,
                    f"'{a_key}' ({col_a.type.value}) cannot be compared with "
                    f"'{b_key}' ({col_b.type.value})"
                    + (f" as {proposal.type.value}" if proposal.type else ""),
                )
            )
            continue

        used_a.add(a_key)
        used_b.add(b_key)
        result.valid.append(
            MappingEntry(
                source_a_key=a_key,
                source_b_key=b_key,
                type=col_type,
                label=proposal.label or col_a.label,
                role=proposal.role,
            )
        )

    return result


def validate_config_mapping(config: ReconciliationConfig) -> None:
    """Raise ValidationError unless every mapping entry of ``config`` resolves."""
    resolution = resolve(
        config.source_a.mappable_columns, config.source_b.mappable_columns, config.mapping
    )
    if resolution.rejected:
        details = "; ".join(f"{r.reason}: {r.detail}" for r in resolution.rejected)
        raise ValidationError(f"Config '{config.name}' has invalid mapping: {details}")


# ---------------------------------------------------------------------------
# Suggesters
# ---------------------------------------------------------------------------


class MappingSuggester(Protocol):
    async def suggest(
        self, columns_a: Sequence[ColumnDef], columns_b: Sequence[ColumnDef]
    ) -> list[Any]: ...


_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _normalize_label(text: str) -> str:
    return " ".join(_TOKEN_RE.findall(text.lower()))


class LabelMappingSuggester:
    """Pair columns whose labels are near-identical (difflib ratio)."""

    def __init__(self, threshold: float = LABEL_MATCH_THRESHOLD):
        self.threshold = threshold

    async def suggest(
        self, columns_a: Sequence[ColumnDef], columns_b: Sequence[ColumnDef]
    ) -> list[ProposedMapping]:
        scored: list[tuple[float, int, int]] = []
        for i, a in enumerate(columns_a):
            for j, b in enumerate(columns_b):
                if combine_types(a.type, b.type) is None:
                    continue
                ratio = max(
                    difflib.SequenceMatcher(
                        None, _normalize_label(a.label), _normalize_label(b.label)
                    ).ratio(),
                    1.0 if a.key == b.key else 0.0,
                )
                if ratio >= self.threshold:
                    scored.append((ratio, i, j))
        scored.sort(key=lambda t: (-t[0], t[1], t[2]))

        taken_a: set[int] = set()
        taken_b: set[int] = set()
        out: list[ProposedMapping] = []
        for ratio, i, j in scored:
            if i in taken_a or j in taken_b:
                continue
            taken_a.add(i)
            taken_b.add(j)
            out.append(
                ProposedMapping(
                    source_a_key=columns_a[i].key,
                    source_b_key=columns_b[j].key,
                    label=columns_a[i].label,
                    confidence=round(ratio, 4),
                )
            )
        return out


MAPPING_PROMPT = (
    "You match columns between two tabular data sources that are being "
    "reconciled (for example a bank statement and a general ledger). Pair "
    "each source A column with the source B column holding the same "
    "information. Only pair columns you are confident about; leave the rest "
    "unpaired. Never reuse a column. Respond with JSON: "
    '{"mappings": [{"source_a_key": string, "source_b_key": string, '
    '"type": "text"|"number"|"currency"|"date"|"boolean", '
    '"label": string, "confidence": number between 0 and 1}]}'
)


def _describe_columns(columns: Sequence[ColumnDef], samples: dict[str, list[str]]) -> list[dict]:
    return [
        {
            "key": c.key,
            "label": c.label,
            "type": c.type.value,
            "samples": samples.get(c.key, [])[:3],
        }
        for c in columns
    ]


class LLMMappingSuggester:
    """Ask a chat model to propose column pairs. Output is untrusted."""

    def __init__(self, client: Any, model: str, samples: dict[str, dict[str, list[str]]] | None = None):
        self.client = client
        self.model = model
        # {"A": {key: [values]}, "B": {...}} shown to the model for context
        self.samples = samples or {}

    async def suggest(
        self, columns_a: Sequence[ColumnDef], columns_b: Sequence[ColumnDef]
    ) -> list[Any]:
        payload = {
            "source_a": _describe_columns(columns_a, self.samples.get("A", {})),
            "source_b": _describe_columns(columns_b, self.samples.get("B", {})),
        }
        response = await self.client.chat(
            model=self.model,
            messages=[
                {"role": "system", "content": MAPPING_PROMPT},
                {"role": "user", "content": json.dumps(payload, indent=1)},
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
        )
        content = response.get("message", {}).get("content") or ""
        try:
            parsed = json.loads(content) if content.strip() else {}
        except json.JSONDecodeError:
            log.warning("Mapping suggester returned invalid JSON: %s", content[:200])
            return []
        mappings = parsed.get("mappings") if isinstance(parsed, dict) else parsed
        if not isinstance(mappings, list):
            log.warning("Mapping suggester returned no 'mappings' list")
            return []
        return mappings


def _confidence_of(proposal: Any) -> float:
    if isinstance(proposal, ProposedMapping):
        return proposal.confidence or 0.0
    if isinstance(proposal, dict):
        value = proposal.get("confidence")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value) / 100 if value > 1 else float(value)
    return 0.0


async def suggest_mappings(
    suggester: MappingSuggester,
    columns_a: Sequence[ColumnDef],
    columns_b: Sequence[ColumnDef],
) -> MappingResolution:
    """Run a suggester and validate its proposals, most confident first."""
    proposals = await suggester.suggest(columns_a, columns_b)
    ordered = sorted(proposals, key=lambda p: -_confidence_of(p))
    resolution = resolve(columns_a, columns_b, ordered)
    log.info(
        "Mapping suggestions: %d accepted, %d rejected",
        len(resolution.valid),
        len(resolution.rejected),
    )
    for r in resolution.rejected:
        log.info("  rejected (%s): %s", r.reason, r.detail)
    return resolution
