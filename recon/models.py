"""Reconciliation data model: configs, mappings, runs, and matched pairs.

Configs arrive as loosely-typed JSON (API payloads, stored rows, config
files). ``from_dict`` constructors are the boundary: they reject unknown
fields, unknown enum values and wrong types with a :class:`ValidationError`
naming the offending field, so nothing ``Any``-typed reaches the engine.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import PartitionError, ValidationError
from .values import ColumnType, TypedRow, combine_types, decode_value, encode_value


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _check_fields(data: Any, ctx: str, allowed: set[str]) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(f"{ctx} must be an object, got {type(data).__name__}.")
    unknown = set(data) - allowed
    if unknown:
        raise ValidationError(
            f"{ctx} has unknown fields: {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(sorted(allowed))}"
        )
    return data


def _require_str(data: dict[str, Any], name: str, ctx: str) -> str:
    value = data.get(name)
    if value is None:
        raise ValidationError(f"{ctx} is missing required '{name}' field.")
    if not isinstance(value, str):
        raise ValidationError(
            f"{ctx} '{name}' must be a string, got {type(value).__name__}."
        )
    value = value.strip()
    if not value:
        raise ValidationError(f"{ctx} '{name}' must not be empty.")
    return value


def _optional_str(data: dict[str, Any], name: str, ctx: str) -> str | None:
    if data.get(name) is None:
        return None
    return _require_str(data, name, ctx)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Side(str, Enum):
    A = "A"
    B = "B"

    @classmethod
    def parse(cls, raw: Any) -> "Side":
        if isinstance(raw, Side):
            return raw
        if isinstance(raw, str) and raw.strip().upper() in ("A", "B"):
            return cls(raw.strip().upper())
        raise ValidationError(f"Side must be 'A' or 'B', got {raw!r}")


class SourceKind(str, Enum):
    DOCUMENT = "document"
    DATABASE = "database"


class SourceType(str, Enum):
    DOCUMENT_DOCUMENT = "document_document"
    DATABASE_DATABASE = "database_database"
    DATABASE_DOCUMENT = "database_document"

    def kind(self, side: Side) -> SourceKind:
        left, right = self.value.split("_")
        return SourceKind(left if side is Side.A else right)


class MappingRole(str, Enum):
    AMOUNT = "amount"
    DATE = "date"
    REFERENCE = "reference"
    DESCRIPTION = "description"


class MatchType(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"


class ExceptionCategory(str, Enum):
    OUTSTANDING_CHECK = "outstanding_check"
    DEPOSIT_IN_TRANSIT = "deposit_in_transit"
    BANK_FEE = "bank_fee"
    INTEREST = "interest"
    TIMING_DIFFERENCE = "timing_difference"
    DATA_ENTRY_ERROR = "data_entry_error"
    DUPLICATE = "duplicate"
    OTHER = "other"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    READY_TO_MATCH = "READY_TO_MATCH"
    MATCHED = "MATCHED"
    REVIEWED = "REVIEWED"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETE, RunStatus.FAILED)


def _parse_enum(enum_cls: type[Enum], raw: Any, ctx: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(str(e.value) for e in enum_cls)
        raise ValidationError(f"{ctx}: unknown value {raw!r}. Allowed: {allowed}") from None


_REFERENCE_HINTS = ("ref", "invoice", "check", "cheque", "number", "id", "no")


def derive_role(column_type: ColumnType, label: str = "", key: str = "") -> MappingRole:
    """Pick the matching role of a mapped column from its type and name."""
    if column_type.is_numeric:
        return MappingRole.AMOUNT
    if column_type is ColumnType.DATE:
        return MappingRole.DATE
    if column_type is ColumnType.BOOLEAN:
        return MappingRole.REFERENCE
    words = set(
        "".join(ch if ch.isalnum() else " " for ch in f"{label} {key}".lower()).split()
    )
    for hint in _REFERENCE_HINTS:
        if hint in words or any(w.startswith(hint) and len(hint) > 2 for w in words):
            return MappingRole.REFERENCE
    return MappingRole.DESCRIPTION


# ---------------------------------------------------------------------------
# Columns and sources
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnDef:
    key: str
    label: str
    type: ColumnType = ColumnType.TEXT

    @classmethod
    def from_dict(cls, data: Any, ctx: str = "column") -> "ColumnDef":
        data = _check_fields(data, ctx, {"key", "label", "type"})
        key = _require_str(data, "key", ctx)
        label = _optional_str(data, "label", ctx) or key
        return cls(key=key, label=label, type=ColumnType.parse(data.get("type", "text")))

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "label": self.label, "type": self.type.value}


@dataclass(frozen=True)
class SignedAmount:
    """One signed amount netted from a debit column and a credit column.

    Debits count positive and credits negative, whatever sign the cells
    carry. The result is a currency column under ``key`` that mappings can
    use like any declared column.
    """

    key: str
    debit_key: str
    credit_key: str
    label: str = ""

    @classmethod
    def from_dict(cls, data: Any, ctx: str = "signed_amount") -> "SignedAmount":
        data = _check_fields(data, ctx, {"key", "debit_key", "credit_key", "label"})
        signed = cls(
            key=_require_str(data, "key", ctx),
            debit_key=_require_str(data, "debit_key", ctx),
            credit_key=_require_str(data, "credit_key", ctx),
            label=_optional_str(data, "label", ctx) or "",
        )
        if signed.debit_key == signed.credit_key:
            raise ValidationError(f"{ctx} 'debit_key' and 'credit_key' must differ.")
        return signed

    def to_dict(self) -> dict[str, str]:
        out = {"key": self.key, "debit_key": self.debit_key, "credit_key": self.credit_key}
        if self.label:
            out["label"] = self.label
        return out

    @property
    def column(self) -> ColumnDef:
        return ColumnDef(key=self.key, label=self.label or self.key, type=ColumnType.CURRENCY)


@dataclass(frozen=True)
class SourceConfig:
    """One side of a reconciliation: its columns and optional database binding."""

    label: str = ""
    columns: tuple[ColumnDef, ...] = ()
    database_id: str | None = None
    date_column_key: str | None = None
    cadence: str | None = None
    signed_amount: SignedAmount | None = None

    _FIELDS = {"label", "columns", "database_id", "date_column_key", "cadence", "signed_amount"}

    @classmethod
    def from_dict(cls, data: Any, ctx: str = "source") -> "SourceConfig":
        data = _check_fields(data, ctx, cls._FIELDS)
        raw_cols = data.get("columns", [])
        if not isinstance(raw_cols, list):
            raise ValidationError(f"{ctx} 'columns' must be a list.")
        columns = tuple(
            ColumnDef.from_dict(c, f"{ctx}.columns[{i}]") for i, c in enumerate(raw_cols)
        )
        seen: set[str] = set()
        for col in columns:
            if col.key in seen:
                raise ValidationError(f"{ctx} has duplicate column key: '{col.key}'.")
            seen.add(col.key)
        signed = None
        if data.get("signed_amount") is not None:
            signed = SignedAmount.from_dict(data["signed_amount"], f"{ctx}.signed_amount")
            declared = {c.key: c for c in columns}
            if signed.key in declared:
                raise ValidationError(
                    f"{ctx}.signed_amount 'key' '{signed.key}' is already a declared column."
                )
            for name in ("debit_key", "credit_key"):
                col = declared.get(getattr(signed, name))
                if col is None or not col.type.is_numeric:
                    raise ValidationError(
                        f"{ctx}.signed_amount '{name}' must name a declared "
                        f"currency or number column, got '{getattr(signed, name)}'."
                    )
        return cls(
            label=_optional_str(data, "label", ctx) or "",
            columns=columns,
            database_id=_optional_str(data, "database_id", ctx),
            date_column_key=_optional_str(data, "date_column_key", ctx),
            cadence=_optional_str(data, "cadence", ctx),
            signed_amount=signed,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "label": self.label,
            "columns": [c.to_dict() for c in self.columns],
        }
        for name in ("database_id", "date_column_key", "cadence"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        if self.signed_amount is not None:
            out["signed_amount"] = self.signed_amount.to_dict()
        return out

    @property
    def mappable_columns(self) -> tuple[ColumnDef, ...]:
        """Declared columns plus the derived signed amount, if any."""
        if self.signed_amount is None:
            return self.columns
        return self.columns + (self.signed_amount.column,)

    def column(self, key: str) -> ColumnDef | None:
        for c in self.mappable_columns:
            if c.key == key:
                return c
        return None

    @property
    def keys(self) -> list[str]:
        return [c.key for c in self.columns]


# ---------------------------------------------------------------------------
# Mapping and rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MappingEntry:
    source_a_key: str
    source_b_key: str
    type: ColumnType
    label: str = ""
    role: MappingRole | None = None

    def __post_init__(self):
        if self.role is None:
            object.__setattr__(
                self, "role", derive_role(self.type, self.label, self.source_a_key)
            )
        if not self.label:
            object.__setattr__(self, "label", self.source_a_key)

    @classmethod
    def from_dict(cls, data: Any, ctx: str = "mapping") -> "MappingEntry":
        data = _check_fields(
            data, ctx, {"source_a_key", "source_b_key", "type", "label", "role"}
        )
        role = data.get("role")
        return cls(
            source_a_key=_require_str(data, "source_a_key", ctx),
            source_b_key=_require_str(data, "source_b_key", ctx),
            type=ColumnType.parse(data.get("type", "text")),
            label=_optional_str(data, "label", ctx) or "",
            role=_parse_enum(MappingRole, role, f"{ctx} 'role'") if role else None,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "source_a_key": self.source_a_key,
            "source_b_key": self.source_b_key,
            "type": self.type.value,
            "label": self.label,
            "role": self.role.value if self.role else "",
        }


@dataclass(frozen=True)
class MatchingRules:
    """Tolerances for one config's matching passes."""

    exact_epsilon: float = 0.01
    amount_band: float = 1.00
    date_window_days: int = 3
    min_confidence: float = 0.5
    allow_sign_flip: bool = False
    fuzzy_enabled: bool = True
    require_amount_agreement: bool = True
    # source_a_key -> amount band or day window for that mapped column
    column_tolerances: MappingProxyType = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def from_dict(
        cls, data: Any, defaults: "MatchingRules | None" = None, ctx: str = "matching_rules"
    ) -> "MatchingRules":
        base = defaults or cls()
        if data is None:
            return base
        data = _check_fields(
            data,
            ctx,
            {
                "exact_epsilon",
                "amount_band",
                "date_window_days",
                "min_confidence",
                "allow_sign_flip",
                "fuzzy_enabled",
                "require_amount_agreement",
                "column_tolerances",
            },
        )
        kwargs: dict[str, Any] = {}
        for name in ("exact_epsilon", "amount_band", "min_confidence"):
            if name in data:
                value = data[name]
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                    raise ValidationError(f"{ctx} '{name}' must be a non-negative number.")
                kwargs[name] = float(value)
        if "min_confidence" in kwargs and kwargs["min_confidence"] > 1:
            raise ValidationError(f"{ctx} 'min_confidence' must be between 0 and 1.")
        if "date_window_days" in data:
            value = data["date_window_days"]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{ctx} 'date_window_days' must be a non-negative integer.")
            kwargs["date_window_days"] = value
        for name in ("allow_sign_flip", "fuzzy_enabled", "require_amount_agreement"):
            if name in data:
                if not isinstance(data[name], bool):
                    raise ValidationError(f"{ctx} '{name}' must be a boolean.")
                kwargs[name] = data[name]
        if "column_tolerances" in data:
            raw = data["column_tolerances"]
            if not isinstance(raw, dict):
                raise ValidationError(f"{ctx} 'column_tolerances' must be an object.")
            tolerances: dict[str, float] = {}
            for key, value in raw.items():
                if isinstance(value, dict):
                    value = value.get("tolerance")
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                    raise ValidationError(
                        f"{ctx} 'column_tolerances' entry '{key}' must be a non-negative number."
                    )
                tolerances[str(key)] = float(value)
            kwargs["column_tolerances"] = MappingProxyType(tolerances)
        return replace(base, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exact_epsilon": self.exact_epsilon,
            "amount_band": self.amount_band,
            "date_window_days": self.date_window_days,
            "min_confidence": self.min_confidence,
            "allow_sign_flip": self.allow_sign_flip,
            "fuzzy_enabled": self.fuzzy_enabled,
            "require_amount_agreement": self.require_amount_agreement,
            "column_tolerances": dict(self.column_tolerances),
        }


def _with_pair_type(
    raw: Any, source_a: SourceConfig, source_b: SourceConfig, ctx: str
) -> Any:
    """Fill in a mapping entry's missing type from its two declared columns."""
    if not isinstance(raw, dict) or raw.get("type") is not None:
        return raw
    col_a = source_a.column(str(raw.get("source_a_key", "")).strip())
    col_b = source_b.column(str(raw.get("source_b_key", "")).strip())
    if col_a is None or col_b is None:
        return raw
    pair_type = combine_types(col_a.type, col_b.type)
    if pair_type is None:
        raise ValidationError(
            f"{ctx}: '{col_a.key}' ({col_a.type.value}) cannot be compared with "
            f"'{col_b.key}' ({col_b.type.value}); give the pair an explicit type."
        )
    return {**raw, "type": pair_type.value}


@dataclass
class ReconciliationConfig:
    """Definition of what to reconcile. Never mutated by a run."""

    name: str
    source_type: SourceType
    source_a: SourceConfig
    source_b: SourceConfig
    mapping: list[MappingEntry] = field(default_factory=list)
    rules: MatchingRules = field(default_factory=MatchingRules)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)

    _FIELDS = {
        "id",
        "name",
        "source_type",
        "source_a",
        "source_b",
        "mapping",
        "matching_rules",
        "created_at",
    }

    @classmethod
    def from_dict(
        cls, data: Any, default_rules: MatchingRules | None = None
    ) -> "ReconciliationConfig":
        data = _check_fields(data, "config", cls._FIELDS)
        raw_mapping = data.get("mapping", [])
        if not isinstance(raw_mapping, list):
            raise ValidationError("config 'mapping' must be a list.")
        kwargs: dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = _require_str(data, "id", "config")
        if data.get("created_at"):
            kwargs["created_at"] = _require_str(data, "created_at", "config")
        source_a = SourceConfig.from_dict(data.get("source_a", {}), "config.source_a")
        source_b = SourceConfig.from_dict(data.get("source_b", {}), "config.source_b")
        return cls(
            name=_optional_str(data, "name", "config") or "Untitled reconciliation",
            source_type=_parse_enum(
                SourceType, data.get("source_type", "document_document"), "config 'source_type'"
            ),
            source_a=source_a,
            source_b=source_b,
            mapping=[
                MappingEntry.from_dict(
                    _with_pair_type(m, source_a, source_b, f"config.mapping[{i}]"),
                    f"config.mapping[{i}]",
                )
                for i, m in enumerate(raw_mapping)
            ],
            rules=MatchingRules.from_dict(data.get("matching_rules"), default_rules),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source_type": self.source_type.value,
            "source_a": self.source_a.to_dict(),
            "source_b": self.source_b.to_dict(),
            "mapping": [m.to_dict() for m in self.mapping],
            "matching_rules": self.rules.to_dict(),
            "created_at": self.created_at,
        }

    def source(self, side: Side) -> SourceConfig:
        return self.source_a if side is Side.A else self.source_b


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatchedPair:
    source_a_idx: int
    source_b_idx: int
    match_type: MatchType
    confidence: float
    matched_on: tuple[str, ...] = ()
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_a_idx": self.source_a_idx,
            "source_b_idx": self.source_b_idx,
            "match_type": self.match_type.value,
            "confidence": self.confidence,
            "matched_on": list(self.matched_on),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchedPair":
        return cls(
            id=data["id"],
            source_a_idx=int(data["source_a_idx"]),
            source_b_idx=int(data["source_b_idx"]),
            match_type=MatchType(data["match_type"]),
            confidence=float(data["confidence"]),
            matched_on=tuple(data.get("matched_on", ())),
        )


@dataclass(frozen=True)
class ExceptionLabel:
    """Why one unmatched row has no counterpart."""

    side: Side
    row_idx: int
    category: ExceptionCategory = ExceptionCategory.OTHER
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "row_idx": self.row_idx,
            "category": self.category.value,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExceptionLabel":
        return cls(
            side=Side(data["side"]),
            row_idx=int(data["row_idx"]),
            category=ExceptionCategory(data.get("category", "other")),
            reason=data.get("reason", ""),
        )


@dataclass(frozen=True)
class SourceFile:
    key: str
    name: str


def freeze_row(row: dict[str, Any]) -> TypedRow:
    return MappingProxyType(dict(row))


def _encode_rows(rows: list[TypedRow] | None) -> list[dict[str, Any]] | None:
    if rows is None:
        return None
    return [{k: encode_value(v) for k, v in row.items()} for row in rows]


def _decode_rows(rows: list[dict[str, Any]] | None) -> list[TypedRow] | None:
    if rows is None:
        return None
    return [freeze_row({k: decode_value(v) for k, v in row.items()}) for row in rows]


@dataclass
class ReconciliationRun:
    """One matching attempt for a config.

    ``source_a_rows`` / ``source_b_rows`` are None until that side is
    loaded. Row indices are stable 0-based positions in those lists.
    ``unmatched_a`` / ``unmatched_b`` are kept sorted ascending.
    ``exceptions`` labels unmatched rows; labels for rows matched since
    they were set are ignored (see :func:`recon.lifecycle.current_exceptions`).
    """

    config_id: str
    mapping: list[MappingEntry]
    rules: MatchingRules
    id: str = field(default_factory=new_id)
    status: RunStatus = RunStatus.PENDING
    source_a_rows: list[TypedRow] | None = None
    source_b_rows: list[TypedRow] | None = None
    matched_pairs: list[MatchedPair] = field(default_factory=list)
    unmatched_a: list[int] = field(default_factory=list)
    unmatched_b: list[int] = field(default_factory=list)
    exceptions: list[ExceptionLabel] = field(default_factory=list)
    source_a_file: SourceFile | None = None
    source_b_file: SourceFile | None = None
    failure_reason: str | None = None
    version: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    completed_at: str | None = None
    completed_by: str | None = None

    def rows(self, side: Side) -> list[TypedRow] | None:
        return self.source_a_rows if side is Side.A else self.source_b_rows

    def row_count(self, side: Side) -> int:
        rows = self.rows(side)
        return len(rows) if rows is not None else 0

    def is_loaded(self, side: Side) -> bool:
        return self.rows(side) is not None

    def find_pair(self, pair_id: str) -> MatchedPair | None:
        for p in self.matched_pairs:
            if p.id == pair_id:
                return p
        return None

    def partition_errors(self) -> list[str]:
        """Return every way the matched/unmatched partition is broken."""
        errors: list[str] = []
        for side, unmatched, idx_of in (
            (Side.A, self.unmatched_a, lambda p: p.source_a_idx),
            (Side.B, self.unmatched_b, lambda p: p.source_b_idx),
        ):
            n = self.row_count(side)
            matched = [idx_of(p) for p in self.matched_pairs]
            seen: dict[int, int] = {}
            for i in matched + list(unmatched):
                seen[i] = seen.get(i, 0) + 1
            dupes = sorted(i for i, c in seen.items() if c > 1)
            out_of_range = sorted(i for i in seen if i < 0 or i >= n)
            missing = sorted(set(range(n)) - set(seen))
            if dupes:
                errors.append(f"side {side.value}: indices in more than one partition: {dupes}")
            if out_of_range:
                errors.append(f"side {side.value}: indices out of range: {out_of_range}")
            if missing:
                errors.append(f"side {side.value}: indices in no partition: {missing}")
        return errors

    def check_partition(self) -> None:
        errors = self.partition_errors()
        if errors:
            raise PartitionError(f"Run {self.id} partition is broken: " + "; ".join(errors))

    def to_dict(self, include_rows: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "config_id": self.config_id,
            "status": self.status.value,
            "mapping": [m.to_dict() for m in self.mapping],
            "matching_rules": self.rules.to_dict(),
            "matched_pairs": [p.to_dict() for p in self.matched_pairs],
            "unmatched_a": list(self.unmatched_a),
            "unmatched_b": list(self.unmatched_b),
            "exceptions": [e.to_dict() for e in self.exceptions],
            "source_a_count": self.row_count(Side.A) if self.is_loaded(Side.A) else None,
            "source_b_count": self.row_count(Side.B) if self.is_loaded(Side.B) else None,
            "source_a_file": vars(self.source_a_file) if self.source_a_file else None,
            "source_b_file": vars(self.source_b_file) if self.source_b_file else None,
            "failure_reason": self.failure_reason,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "completed_by": self.completed_by,
        }
        if include_rows:
            out["source_a_rows"] = _encode_rows(self.source_a_rows)
            out["source_b_rows"] = _encode_rows(self.source_b_rows)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReconciliationRun":
        def _file(raw: Any) -> SourceFile | None:
            return SourceFile(**raw) if raw else None

        return cls(
            id=data["id"],
            config_id=data["config_id"],
            status=RunStatus(data["status"]),
            mapping=[MappingEntry.from_dict(m) for m in data.get("mapping", [])],
            rules=MatchingRules.from_dict(data.get("matching_rules")),
            source_a_rows=_decode_rows(data.get("source_a_rows")),
            source_b_rows=_decode_rows(data.get("source_b_rows")),
            matched_pairs=[MatchedPair.from_dict(p) for p in data.get("matched_pairs", [])],
            unmatched_a=list(data.get("unmatched_a", [])),
            unmatched_b=list(data.get("unmatched_b", [])),
            exceptions=[ExceptionLabel.from_dict(e) for e in data.get("exceptions", [])],
            source_a_file=_file(data.get("source_a_file")),
            source_b_file=_file(data.get("source_b_file")),
            failure_reason=data.get("failure_reason"),
            version=int(data.get("version", 0)),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
            completed_at=data.get("completed_at"),
            completed_by=data.get("completed_by"),
        )
