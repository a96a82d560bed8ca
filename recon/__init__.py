"""Reconciliation engine — core modules."""

from .errors import (
    InvalidTransitionError,
    NotFoundError,
    ParseWarning,
    ReconError,
    TerminalStateError,
    UnrecoverableLoadError,
    ValidationError,
)
from .values import ColumnType, coerce, parse_date, parse_numeric
from .detect import detect_type
from .models import (
    ColumnDef,
    MappingEntry,
    MatchedPair,
    MatchingRules,
    MatchType,
    ReconciliationConfig,
    ReconciliationRun,
    RunStatus,
    Side,
    SourceConfig,
)
from .ingest import ParsedSource, parse_file
from .mapping import MappingResolution, resolve
from .matching import MatchResult, match
from .store import RunStore
from .service import ReconciliationService
from .settings import Settings, load_settings

__all__ = [
    # Errors
    "ReconError",
    "ValidationError",
    "InvalidTransitionError",
    "TerminalStateError",
    "UnrecoverableLoadError",
    "NotFoundError",
    "ParseWarning",
    # Values and detection
    "ColumnType",
    "coerce",
    "parse_date",
    "parse_numeric",
    "detect_type",
    # Models
    "ColumnDef",
    "MappingEntry",
    "MatchedPair",
    "MatchingRules",
    "MatchType",
    "ReconciliationConfig",
    "ReconciliationRun",
    "RunStatus",
    "Side",
    "SourceConfig",
    # Ingestion
    "ParsedSource",
    "parse_file",
    # Mapping and matching
    "MappingResolution",
    "resolve",
    "MatchResult",
    "match",
    # Service
    "RunStore",
    "ReconciliationService",
    "Settings",
    "load_settings",
]
