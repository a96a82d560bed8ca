"""Run lifecycle: the ReconciliationRun state machine.

    PENDING --(both sides loaded)--> READY_TO_MATCH --(auto match)--> MATCHED
    MATCHED/READY_TO_MATCH --(manual accept or undo)--> REVIEWED
    MATCHED/REVIEWED --(finalize)--> COMPLETE
    any non-terminal --(unrecoverable load)--> FAILED

Every mutation checks the run is not terminal before touching it, checks
the partition invariant afterwards, and bumps ``run.version``. A mutation
that would break the partition is rolled back and raises.

These functions do no locking; callers that share a run between tasks
serialize access (see :mod:`recon.service`).
"""

from __future__ import annotations

import bisect
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from .errors import (
    InvalidTransitionError,
    NotFoundError,
    PartitionError,
    TerminalStateError,
    ValidationError,
)
from .matching import MatchResult, match, variance
from .models import (
    ExceptionCategory,
    ExceptionLabel,
    MatchedPair,
    MatchType,
    ReconciliationConfig,
    ReconciliationRun,
    RunStatus,
    Side,
    SourceFile,
    utc_now,
)
from .values import TypedRow

log = logging.getLogger(__name__)

MATCHABLE_STATES = (RunStatus.READY_TO_MATCH, RunStatus.MATCHED, RunStatus.REVIEWED)
FINALIZABLE_STATES = (RunStatus.MATCHED, RunStatus.REVIEWED)


def require_mutable(run: ReconciliationRun, action: str) -> None:
    if run.status.is_terminal:
        raise TerminalStateError(
            f"Cannot {action}: run {run.id} is {run.status.value}"
        )


def _require_state(run: ReconciliationRun, allowed: Sequence[RunStatus], action: str) -> None:
    require_mutable(run, action)
    if run.status not in allowed:
        names = ", ".join(s.value for s in allowed)
        raise InvalidTransitionError(
            f"Cannot {action}: run {run.id} is {run.status.value} (needs one of {names})"
        )


def _set_status(run: ReconciliationRun, status: RunStatus) -> None:
    if run.status is not status:
        log.info("Run %s: %s -> %s", run.id, run.status.value, status.value)
        run.status = status


_SNAPSHOT_FIELDS = (
    "status",
    "source_a_rows",
    "source_b_rows",
    "matched_pairs",
    "unmatched_a",
    "unmatched_b",
    "exceptions",
    "source_a_file",
    "source_b_file",
    "failure_reason",
    "completed_at",
    "completed_by",
)


@contextmanager
def _mutation(run: ReconciliationRun) -> Iterator[None]:
    """Apply a mutation atomically: restore the run if it raises or breaks the partition."""
    saved = {name: getattr(run, name) for name in _SNAPSHOT_FIELDS}
    saved["matched_pairs"] = list(run.matched_pairs)
    saved["unmatched_a"] = list(run.unmatched_a)
    saved["unmatched_b"] = list(run.unmatched_b)
    try:
        yield
        run.check_partition()
    except BaseException:
        for name, value in saved.items():
            setattr(run, name, value)
        raise
    run.version += 1
    run.updated_at = utc_now()


def check_mapping(run: ReconciliationRun) -> None:
    """Fail fast on a mapping that cannot drive a match."""
    if not run.mapping:
        raise ValidationError(
            f"Run {run.id} has no column mapping; map at least one column pair before matching."
        )
    seen_a: set[str] = set()
    seen_b: set[str] = set()
    for i, m in enumerate(run.mapping):
        if m.source_a_key in seen_a:
            raise ValidationError(f"mapping[{i}] reuses source A column '{m.source_a_key}'.")
        if m.source_b_key in seen_b:
            raise ValidationError(f"mapping[{i}] reuses source B column '{m.source_b_key}'.")
        seen_a.add(m.source_a_key)
        seen_b.add(m.source_b_key)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def load_source(
    run: ReconciliationRun,
    side: Side,
    rows: list[TypedRow],
    source_file: SourceFile | None = None,
) -> None:
    """Replace one side's rows.

    Every pair has one row on each side, so all existing pairs are dropped
    and both unmatched pools are rebuilt. Once both sides are loaded the run
    becomes READY_TO_MATCH, which requires a usable mapping.
    """
    side = Side.parse(side)
    require_mutable(run, f"load source {side.value}")
    rows = list(rows)
    with _mutation(run):
        if side is Side.A:
            run.source_a_rows = rows
            run.source_a_file = source_file
        else:
            run.source_b_rows = rows
            run.source_b_file = source_file
        dropped = len(run.matched_pairs)
        run.matched_pairs = []
        run.unmatched_a = list(range(run.row_count(Side.A)))
        run.unmatched_b = list(range(run.row_count(Side.B)))
        run.exceptions = []
        if run.is_loaded(Side.A) and run.is_loaded(Side.B):
            check_mapping(run)
            _set_status(run, RunStatus.READY_TO_MATCH)
        else:
            _set_status(run, RunStatus.PENDING)
    log.info(
        "Run %s: loaded %d row(s) into source %s%s",
        run.id,
        len(rows),
        side.value,
        f", dropped {dropped} pair(s)" if dropped else "",
    )


def check_can_match(run: ReconciliationRun) -> None:
    _require_state(run, MATCHABLE_STATES, "run matching")
    check_mapping(run)


def apply_match_result(run: ReconciliationRun, result: MatchResult) -> list[MatchedPair]:
    """Commit the engine's new pairs, all or nothing."""
    check_can_match(run)
    with _mutation(run):
        used_a = {p.source_a_idx for p in run.matched_pairs}
        used_b = {p.source_b_idx for p in run.matched_pairs}
        for p in result.new_pairs:
            if p.source_a_idx in used_a or p.source_b_idx in used_b:
                raise PartitionError(
                    f"Match result pairs A[{p.source_a_idx}] with B[{p.source_b_idx}] "
                    "but one of them is already matched"
                )
            used_a.add(p.source_a_idx)
            used_b.add(p.source_b_idx)
        run.matched_pairs = run.matched_pairs + list(result.new_pairs)
        run.unmatched_a = sorted(set(run.unmatched_a) - used_a)
        run.unmatched_b = sorted(set(run.unmatched_b) - used_b)
        if run.status is RunStatus.READY_TO_MATCH:
            _set_status(run, RunStatus.MATCHED)
    return list(result.new_pairs)


def compute_match(run: ReconciliationRun) -> MatchResult:
    """Run the engine against the run's current pools without committing."""
    check_can_match(run)
    return match(
        run.source_a_rows or [],
        run.source_b_rows or [],
        run.mapping,
        tuple(run.matched_pairs),
        run.rules,
    )


def run_auto_match(run: ReconciliationRun) -> MatchResult:
    """Match the residual pools and commit. Existing pairs are never altered."""
    result = compute_match(run)
    apply_match_result(run, result)
    return result


def _check_index(run: ReconciliationRun, side: Side, idx: Any) -> int:
    if isinstance(idx, bool) or not isinstance(idx, int):
        raise ValidationError(f"Source {side.value} index must be an integer, got {idx!r}")
    n = run.row_count(side)
    if idx < 0 or idx >= n:
        raise ValidationError(
            f"Source {side.value} index {idx} is out of range (0..{n - 1})"
            if n
            else f"Source {side.value} has no rows"
        )
    unmatched = run.unmatched_a if side is Side.A else run.unmatched_b
    if idx not in unmatched:
        raise ValidationError(f"Source {side.value} row {idx} is already matched")
    return idx


def accept_manual_match(run: ReconciliationRun, a_idx: int, b_idx: int) -> MatchedPair:
    """Pair two unmatched rows by hand."""
    _require_state(run, MATCHABLE_STATES, "accept a match")
    _check_index(run, Side.A, a_idx)
    _check_index(run, Side.B, b_idx)
    pair = MatchedPair(
        source_a_idx=a_idx,
        source_b_idx=b_idx,
        match_type=MatchType.MANUAL,
        confidence=1.0,
    )
    with _mutation(run):
        run.matched_pairs = run.matched_pairs + [pair]
        run.unmatched_a = [i for i in run.unmatched_a if i != a_idx]
        run.unmatched_b = [i for i in run.unmatched_b if i != b_idx]
        _set_status(run, RunStatus.REVIEWED)
    log.info("Run %s: manual match A[%d] <-> B[%d] (%s)", run.id, a_idx, b_idx, pair.id)
    return pair


def undo_match(run: ReconciliationRun, pair_id: str) -> MatchedPair:
    """Remove a pair and return both rows to their unmatched pools."""
    _require_state(run, MATCHABLE_STATES, "undo a match")
    pair = run.find_pair(pair_id)
    if pair is None:
        raise NotFoundError(f"Run {run.id} has no matched pair '{pair_id}'")
    with _mutation(run):
        run.matched_pairs = [p for p in run.matched_pairs if p.id != pair_id]
        unmatched_a = list(run.unmatched_a)
        unmatched_b = list(run.unmatched_b)
        bisect.insort(unmatched_a, pair.source_a_idx)
        bisect.insort(unmatched_b, pair.source_b_idx)
        run.unmatched_a = unmatched_a
        run.unmatched_b = unmatched_b
        _set_status(run, RunStatus.REVIEWED)
    log.info(
        "Run %s: undid %s match A[%d] <-> B[%d]",
        run.id,
        pair.match_type.value,
        pair.source_a_idx,
        pair.source_b_idx,
    )
    return pair


def finalize(run: ReconciliationRun, completed_by: str | None = None) -> None:
    """Mark the run COMPLETE. No mutation is accepted afterwards."""
    _require_state(run, FINALIZABLE_STATES, "finalize")
    with _mutation(run):
        _set_status(run, RunStatus.COMPLETE)
        run.completed_at = utc_now()
        run.completed_by = completed_by


def check_can_classify(run: ReconciliationRun) -> None:
    _require_state(run, FINALIZABLE_STATES, "classify exceptions")


def set_exceptions(run: ReconciliationRun, labels: Sequence[ExceptionLabel]) -> None:
    """Replace the run's exception labels. Each must name a distinct unmatched row."""
    check_can_classify(run)
    pools = {Side.A: set(run.unmatched_a), Side.B: set(run.unmatched_b)}
    seen: set[tuple[Side, int]] = set()
    for label in labels:
        if label.row_idx not in pools[label.side]:
            raise ValidationError(
                f"Cannot label source {label.side.value} row {label.row_idx}: it is not unmatched"
            )
        if (label.side, label.row_idx) in seen:
            raise ValidationError(
                f"Source {label.side.value} row {label.row_idx} is labelled more than once"
            )
        seen.add((label.side, label.row_idx))
    with _mutation(run):
        run.exceptions = sorted(labels, key=lambda e: (e.side.value, e.row_idx))
    log.info("Run %s: labelled %d unmatched row(s)", run.id, len(labels))


def mark_failed(run: ReconciliationRun, reason: str) -> None:
    """Move a run to FAILED, keeping its rows and partitions for inspection."""
    require_mutable(run, "mark the run failed")
    with _mutation(run):
        _set_status(run, RunStatus.FAILED)
        run.failure_reason = reason
    log.warning("Run %s failed: %s", run.id, reason)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def current_exceptions(run: ReconciliationRun) -> list[ExceptionLabel]:
    """Exception labels whose rows are still unmatched."""
    pools = {Side.A: set(run.unmatched_a), Side.B: set(run.unmatched_b)}
    return [e for e in run.exceptions if e.row_idx in pools[e.side]]


def summarize(run: ReconciliationRun) -> dict[str, Any]:
    """Counts by match type and exception category, and unmatched amount variance."""
    by_type = {t.value: 0 for t in MatchType}
    for p in run.matched_pairs:
        by_type[p.match_type.value] += 1
    by_category = {c.value: 0 for c in ExceptionCategory}
    for e in current_exceptions(run):
        by_category[e.category.value] += 1
    return {
        "run_id": run.id,
        "status": run.status.value,
        "source_a_count": run.row_count(Side.A),
        "source_b_count": run.row_count(Side.B),
        "matched_count": len(run.matched_pairs),
        "matched_by_type": by_type,
        "unmatched_a_count": len(run.unmatched_a),
        "unmatched_b_count": len(run.unmatched_b),
        "variance": variance(
            run.source_a_rows or [],
            run.source_b_rows or [],
            run.unmatched_a,
            run.unmatched_b,
            run.mapping,
        ),
        "exceptions_by_category": by_category,
        "failure_reason": run.failure_reason,
    }


def new_run_for(config: ReconciliationConfig) -> ReconciliationRun:
    """Create a PENDING run pinned to the config's current mapping and rules."""
    return ReconciliationRun(
        config_id=config.id,
        mapping=list(config.mapping),
        rules=config.rules,
    )
