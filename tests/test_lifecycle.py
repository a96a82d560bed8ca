import pytest

from tests.conftest import LEDGER_TYPES, _ledger_config, _mapping, _typed
from recon import lifecycle
from recon.errors import (
    InvalidTransitionError,
    NotFoundError,
    PartitionError,
    TerminalStateError,
    ValidationError,
)
from recon.matching import MatchResult
from recon.models import (
    ExceptionCategory,
    ExceptionLabel,
    MatchedPair,
    MatchingRules,
    MatchType,
    ReconciliationConfig,
    ReconciliationRun,
    RunStatus,
    Side,
    SourceFile,
)
from recon.values import ColumnType

LEDGER = _mapping(
    ("date", ColumnType.DATE), ("amt", ColumnType.CURRENCY), ("ref", ColumnType.TEXT)
)

ROWS_A = _typed(
    [
        {"date": "2024-01-05", "amt": "100.00", "ref": "INV-1"},
        {"date": "2024-01-06", "amt": "50.00", "ref": "INV-2"},
    ],
    LEDGER_TYPES,
)
ROWS_B = _typed([{"date": "2024-01-05", "amt": "100.00", "ref": "INV-1"}], LEDGER_TYPES)


def _run(mapping=None) -> ReconciliationRun:
    return ReconciliationRun(
        config_id="cfg",
        mapping=list(LEDGER if mapping is None else mapping),
        rules=MatchingRules(),
    )


def _loaded_run() -> ReconciliationRun:
    run = _run()
    lifecycle.load_source(run, Side.A, ROWS_A)
    lifecycle.load_source(run, Side.B, ROWS_B)
    return run


def _matched_run() -> ReconciliationRun:
    run = _loaded_run()
    lifecycle.run_auto_match(run)
    return run


def _state(run: ReconciliationRun):
    return (
        run.status,
        [(p.id, p.source_a_idx, p.source_b_idx) for p in run.matched_pairs],
        list(run.unmatched_a),
        list(run.unmatched_b),
    )


class TestLoadSource:
    """Tests for load_source: pools rebuilt, status advanced once both sides exist."""

    def test_one_side_stays_pending(self):
        run = _run()
        lifecycle.load_source(run, "a", ROWS_A, SourceFile(key="k", name="bank.csv"))
        assert run.status is RunStatus.PENDING
        assert run.unmatched_a == [0, 1]
        assert run.unmatched_b == []
        assert run.source_a_file.name == "bank.csv"
        assert run.version == 1
        assert run.partition_errors() == []

    def test_both_sides_ready(self):
        run = _loaded_run()
        assert run.status is RunStatus.READY_TO_MATCH
        assert run.unmatched_b == [0]
        assert run.version == 2

    def test_reload_drops_pairs(self):
        run = _matched_run()
        assert run.matched_pairs
        lifecycle.load_source(run, Side.B, ROWS_B)
        assert run.matched_pairs == []
        assert run.unmatched_a == [0, 1]
        assert run.status is RunStatus.READY_TO_MATCH
        assert run.partition_errors() == []

    def test_missing_mapping_rolls_back(self):
        run = _run(mapping=[])
        lifecycle.load_source(run, Side.A, ROWS_A)
        with pytest.raises(ValidationError, match="no column mapping"):
            lifecycle.load_source(run, Side.B, ROWS_B)
        assert run.source_b_rows is None
        assert run.unmatched_b == []
        assert run.status is RunStatus.PENDING
        assert run.version == 1

    def test_duplicate_mapping_key(self):
        mapping = _mapping(("ref", ColumnType.TEXT)) + _mapping(("ref", ColumnType.TEXT))
        run = _run(mapping=mapping)
        lifecycle.load_source(run, Side.A, ROWS_A)
        with pytest.raises(ValidationError, match="reuses source A column 'ref'"):
            lifecycle.load_source(run, Side.B, ROWS_B)

    def test_bad_side(self):
        with pytest.raises(ValidationError, match="Side"):
            lifecycle.load_source(_run(), "C", ROWS_A)


class TestAutoMatch:
    """Tests for run_auto_match and apply_match_result."""

    def test_end_to_end(self):
        run = _loaded_run()
        result = lifecycle.run_auto_match(run)
        assert [(p.source_a_idx, p.source_b_idx, p.match_type) for p in run.matched_pairs] == [
            (0, 0, MatchType.EXACT)
        ]
        assert run.unmatched_a == [1]
        assert run.unmatched_b == []
        assert run.status is RunStatus.MATCHED
        assert result.exact_count == 1
        assert run.partition_errors() == []

    def test_idempotent(self):
        run = _matched_run()
        before = _state(run)
        result = lifecycle.run_auto_match(run)
        assert result.new_pairs == []
        assert _state(run) == before

    def test_requires_both_sides(self):
        run = _run()
        lifecycle.load_source(run, Side.A, ROWS_A)
        with pytest.raises(InvalidTransitionError, match="PENDING"):
            lifecycle.run_auto_match(run)

    def test_keeps_reviewed_status(self):
        run = _matched_run()
        pair = run.matched_pairs[0]
        lifecycle.undo_match(run, pair.id)
        lifecycle.run_auto_match(run)
        assert run.status is RunStatus.REVIEWED
        assert [(p.source_a_idx, p.source_b_idx) for p in run.matched_pairs] == [(0, 0)]

    def test_overlapping_result_rolls_back(self):
        run = _matched_run()
        before = _state(run)
        version = run.version
        clash = MatchResult(new_pairs=[MatchedPair(1, 0, MatchType.FUZZY, 0.7)])
        with pytest.raises(PartitionError):
            lifecycle.apply_match_result(run, clash)
        assert _state(run) == before
        assert run.version == version

    def test_out_of_range_result_rolls_back(self):
        run = _loaded_run()
        bad = MatchResult(new_pairs=[MatchedPair(5, 0, MatchType.EXACT, 1.0)])
        with pytest.raises(PartitionError, match="out of range"):
            lifecycle.apply_match_result(run, bad)
        assert run.matched_pairs == []
        assert run.status is RunStatus.READY_TO_MATCH


class TestManualReview:
    """Tests for accept_manual_match and undo_match."""

    def test_accept(self):
        run = _matched_run()
        # second B row, too far off for the fuzzy pass
        rows_b = ROWS_B + _typed([{"date": "2024-02-01", "amt": "49.00", "ref": "?"}], LEDGER_TYPES)
        lifecycle.load_source(run, Side.B, rows_b)
        lifecycle.run_auto_match(run)
        pair = lifecycle.accept_manual_match(run, 1, 1)
        assert pair.match_type is MatchType.MANUAL
        assert pair.confidence == 1.0
        assert run.unmatched_a == []
        assert run.unmatched_b == []
        assert run.status is RunStatus.REVIEWED
        assert run.partition_errors() == []

    def test_accept_from_ready(self):
        run = _loaded_run()
        lifecycle.accept_manual_match(run, 1, 0)
        assert run.status is RunStatus.REVIEWED
        assert run.unmatched_a == [0]

    def test_already_matched_index(self):
        run = _matched_run()
        before = _state(run)
        with pytest.raises(ValidationError, match="already matched"):
            lifecycle.accept_manual_match(run, 0, 0)
        with pytest.raises(ValidationError, match="already matched"):
            lifecycle.accept_manual_match(run, 1, 0)
        assert _state(run) == before

    @pytest.mark.parametrize("a_idx, b_idx", [(2, 0), (-1, 0), (1, 3), ("1", 0), (True, 0)])
    def test_bad_indices(self, a_idx, b_idx):
        run = _loaded_run()
        with pytest.raises(ValidationError):
            lifecycle.accept_manual_match(run, a_idx, b_idx)
        assert run.matched_pairs == []

    def test_accept_before_loading(self):
        with pytest.raises(InvalidTransitionError):
            lifecycle.accept_manual_match(_run(), 0, 0)

    def test_undo(self):
        run = _matched_run()
        pair = run.matched_pairs[0]
        undone = lifecycle.undo_match(run, pair.id)
        assert undone == pair
        assert run.matched_pairs == []
        assert run.unmatched_a == [0, 1]
        assert run.unmatched_b == [0]
        assert run.status is RunStatus.REVIEWED
        assert run.partition_errors() == []

    def test_undo_unknown_pair(self):
        run = _matched_run()
        with pytest.raises(NotFoundError, match="no matched pair 'nope'"):
            lifecycle.undo_match(run, "nope")


class TestTerminalStates:
    """Tests for finalize and mark_failed: terminal runs reject every mutation."""

    def _assert_frozen(self, run: ReconciliationRun):
        before = _state(run)
        pair_id = run.matched_pairs[0].id if run.matched_pairs else "x"
        for call in (
            lambda: lifecycle.load_source(run, Side.A, ROWS_A),
            lambda: lifecycle.run_auto_match(run),
            lambda: lifecycle.accept_manual_match(run, 1, 0),
            lambda: lifecycle.undo_match(run, pair_id),
            lambda: lifecycle.finalize(run),
            lambda: lifecycle.mark_failed(run, "again"),
        ):
            with pytest.raises(TerminalStateError):
                call()
        assert _state(run) == before

    def test_finalize(self):
        run = _matched_run()
        lifecycle.finalize(run, completed_by="auditor@example.com")
        assert run.status is RunStatus.COMPLETE
        assert run.completed_by == "auditor@example.com"
        assert run.completed_at is not None
        self._assert_frozen(run)

    def test_finalize_needs_match(self):
        with pytest.raises(InvalidTransitionError, match="READY_TO_MATCH"):
            lifecycle.finalize(_loaded_run())

    def test_mark_failed_keeps_partitions(self):
        run = _matched_run()
        lifecycle.mark_failed(run, "corrupt upload")
        assert run.status is RunStatus.FAILED
        assert run.failure_reason == "corrupt upload"
        assert len(run.matched_pairs) == 1
        self._assert_frozen(run)


class TestSummarize:
    def test_counts_and_variance(self):
        run = _matched_run()
        summary = lifecycle.summarize(run)
        assert summary["status"] == "MATCHED"
        assert summary["source_a_count"] == 2
        assert summary["source_b_count"] == 1
        assert summary["matched_count"] == 1
        assert summary["matched_by_type"] == {"exact": 1, "fuzzy": 0, "manual": 0}
        assert summary["unmatched_a_count"] == 1
        assert summary["unmatched_b_count"] == 0
        assert summary["variance"] == 50.0

    def test_new_run_pins_mapping(self):
        config = ReconciliationConfig.from_dict(_ledger_config())
        run = lifecycle.new_run_for(config)
        assert run.config_id == config.id
        assert run.status is RunStatus.PENDING
        assert [m.source_a_key for m in run.mapping] == ["date", "amt", "ref"]
        config.mapping.clear()
        assert len(run.mapping) == 3


class TestExceptions:
    """Exception labels on unmatched rows."""

    def test_set_and_summarize(self):
        run = _matched_run()
        version = run.version
        lifecycle.set_exceptions(
            run, [ExceptionLabel(Side.A, 1, ExceptionCategory.TIMING_DIFFERENCE, "Clears Feb 2")]
        )
        assert run.version == version + 1
        summary = lifecycle.summarize(run)
        assert summary["exceptions_by_category"]["timing_difference"] == 1
        assert sum(summary["exceptions_by_category"].values()) == 1

    def test_matched_rows_drop_out(self):
        run = _matched_run()
        lifecycle.set_exceptions(run, [ExceptionLabel(Side.A, 1, ExceptionCategory.DUPLICATE)])
        pair = run.matched_pairs[0]
        lifecycle.undo_match(run, pair.id)
        lifecycle.accept_manual_match(run, 1, 0)
        assert lifecycle.current_exceptions(run) == []
        assert run.exceptions != []

    def test_reload_clears_labels(self):
        run = _matched_run()
        lifecycle.set_exceptions(run, [ExceptionLabel(Side.A, 1)])
        lifecycle.load_source(run, Side.B, ROWS_B)
        assert run.exceptions == []

    @pytest.mark.parametrize(
        "labels, message",
        [
            ([ExceptionLabel(Side.A, 0)], "not unmatched"),
            ([ExceptionLabel(Side.B, 5)], "not unmatched"),
            ([ExceptionLabel(Side.A, 1), ExceptionLabel(Side.A, 1)], "more than once"),
        ],
    )
    def test_invalid_labels(self, labels, message):
        run = _matched_run()
        before = (_state(run), run.version)
        with pytest.raises(ValidationError, match=message):
            lifecycle.set_exceptions(run, labels)
        assert (_state(run), run.version) == before
        assert run.exceptions == []

    def test_needs_matched_run(self):
        with pytest.raises(InvalidTransitionError):
            lifecycle.set_exceptions(_loaded_run(), [])
        run = _matched_run()
        lifecycle.finalize(run)
        with pytest.raises(TerminalStateError):
            lifecycle.set_exceptions(run, [])
