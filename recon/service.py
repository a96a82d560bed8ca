"""Reconciliation service: the run operations callers use.

Wraps the lifecycle functions with persistence and per-run serialization.
Every mutation of a run takes that run's ``asyncio.Lock``, reloads the run
from the store, applies one lifecycle operation, and saves. Reads
(:meth:`ReconciliationService.get_run`) take no lock. Once a run is COMPLETE or
FAILED it is never mutated again and its lock is dropped.

Matching is the one slow operation. :meth:`compute_matches` starts a
background job that runs the engine in a worker thread and waits for it up
to a deadline. If the deadline passes the call returns
``status="processing"``; the job keeps going and commits when done. A job
only commits if the run's version is unchanged since it started, so a load
or manual edit made meanwhile wins and the stale result is dropped.

    service = ReconciliationService(RunStore(conn))
    config = service.create_config({...})
    run = await service.create_run(config.id)
    await service.load_from_file(run.id, "A", data_a, "bank.csv")
    await service.load_from_file(run.id, "B", data_b, "ledger.xlsx")
    outcome = await service.compute_matches(run.id)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Sequence

import duckdb

from . import lifecycle
from .blob import BlobStore, upload_key
from .classify import (
    ExceptionClassifier,
    FallbackExceptionClassifier,
    classify_exceptions,
    unmatched_items,
)
from .database import DuckDBDatabaseSource, RowFilter
from .detect import TypeDetection
from .errors import (
    ParseWarning,
    TerminalStateError,
    UnrecoverableLoadError,
    ValidationError,
)
from .ingest import (
    DetectedColumn,
    ParsedSource,
    add_signed_amount,
    parse_file,
    resolve_column_types,
    type_rows,
)
from .mapping import (
    LabelMappingSuggester,
    MappingResolution,
    MappingSuggester,
    suggest_mappings,
    validate_config_mapping,
)
from .matching import MatchResult
from .models import (
    ColumnDef,
    ExceptionLabel,
    MatchedPair,
    ReconciliationConfig,
    ReconciliationRun,
    Side,
    SourceFile,
)
from .pdf_extract import TableExtractor
from .settings import Settings
from .store import RunStore

log = logging.getLogger(__name__)


@dataclass
class LoadResult:
    row_count: int
    detected_columns: list[DetectedColumn] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_count": self.row_count,
            "detected_columns": [c.to_dict() for c in self.detected_columns],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass(frozen=True)
class MatchOutcome:
    """What :meth:`ReconciliationService.compute_matches` reports.

    ``status`` is ``complete``, ``processing`` (deadline passed, job still
    running), ``superseded`` (run changed while matching; nothing
    committed) or ``failed``.
    """

    status: str
    new_match_count: int = 0
    unmatched_a_count: int = 0
    unmatched_b_count: int = 0
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status,
            "new_match_count": self.new_match_count,
            "unmatched_a_count": self.unmatched_a_count,
            "unmatched_b_count": self.unmatched_b_count,
        }
        if self.failure_reason:
            out["failure_reason"] = self.failure_reason
        return out


class ReconciliationService:
    def __init__(
        self,
        store: RunStore,
        *,
        settings: Settings | None = None,
        blob_store: BlobStore | None = None,
        database: DuckDBDatabaseSource | None = None,
        pdf_extractor: TableExtractor | None = None,
        suggester: MappingSuggester | None = None,
        classifier: ExceptionClassifier | None = None,
        today: date | None = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.blob_store = blob_store
        self.database = database
        self.pdf_extractor = pdf_extractor
        self.suggester = suggester
        self.classifier = classifier
        self.today = today
        if self.store.default_rules is None:
            self.store.default_rules = self.settings.default_rules()
        self._locks: dict[str, asyncio.Lock] = {}
        self._jobs: dict[str, asyncio.Task] = {}

    def _lock(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = self._locks[run_id] = asyncio.Lock()
        return lock

    def _release(self, run: ReconciliationRun) -> None:
        if run.status.is_terminal:
            self._locks.pop(run.id, None)

    @asynccontextmanager
    async def _serialized(self, run_id: str) -> AsyncIterator[None]:
        """Hold the run's lock. A terminal run gives its lock up."""
        try:
            async with self._lock(run_id):
                yield
        except TerminalStateError:
            self._locks.pop(run_id, None)
            raise

    # -- configs and runs ----------------------------------------------------

    def create_config(self, data: dict[str, Any] | ReconciliationConfig) -> ReconciliationConfig:
        """Validate and store a config. Its mapping must resolve against its columns."""
        if isinstance(data, ReconciliationConfig):
            config = data
        else:
            config = ReconciliationConfig.from_dict(data, self.settings.default_rules())
        validate_config_mapping(config)
        self.store.save_config(config)
        log.info("Created config %s (%s, %d mapped column(s))", config.id, config.name, len(config.mapping))
        return config

    def get_config(self, config_id: str) -> ReconciliationConfig:
        return self.store.get_config(config_id)

    async def create_run(self, config_id: str) -> ReconciliationRun:
        config = self.store.get_config(config_id)
        run = lifecycle.new_run_for(config)
        self.store.save_run(run)
        log.info("Created run %s for config %s", run.id, config.id)
        return run

    def get_run(self, run_id: str) -> ReconciliationRun:
        return self.store.get_run(run_id)

    def summarize(self, run_id: str) -> dict[str, Any]:
        return lifecycle.summarize(self.store.get_run(run_id))

    # -- loading -------------------------------------------------------------

    def _fail(self, run: ReconciliationRun, reason: str) -> None:
        lifecycle.mark_failed(run, reason)
        self.store.save_run(run)
        self._release(run)

    async def load_from_file(
        self, run_id: str, side: Side | str, data: bytes, filename: str
    ) -> LoadResult:
        """Parse an uploaded file and load it as one side of the run.

        An unreadable file fails the run and re-raises.
        """
        side = Side.parse(side)
        async with self._serialized(run_id):
            run = self.store.get_run(run_id)
            lifecycle.require_mutable(run, f"load source {side.value}")
            config = self.store.get_config(run.config_id)
            source = config.source(side)
            try:
                parsed = await parse_file(
                    data,
                    filename,
                    mode="full",
                    mapping_hint=source,
                    pdf_extractor=self.pdf_extractor,
                    sample_rows=self.settings.sample_rows,
                    max_rows=self.settings.max_rows,
                )
            except UnrecoverableLoadError as e:
                self._fail(run, f"Could not load {filename} into source {side.value}: {e}")
                raise

            types = resolve_column_types(side, source, run.mapping, parsed.columns)
            rows = add_signed_amount(
                type_rows(parsed.rows, types, today=self.today), source.signed_amount
            )

            key = ""
            if self.blob_store is not None:
                key = upload_key(run.id, side.value, filename)
                self.blob_store.upload(data, key)
            lifecycle.load_source(run, side, rows, SourceFile(key=key, name=filename))
            self.store.save_run(run)

        return LoadResult(
            row_count=len(rows), detected_columns=parsed.columns, warnings=parsed.warnings
        )

    async def load_from_database(
        self, run_id: str, side: Side | str, filter_spec: dict[str, Any] | None = None
    ) -> LoadResult:
        """Load one side from the table its source config is bound to.

        ``filter_spec`` may give only ``period_key``; the date column and
        cadence then come from the source config.
        """
        side = Side.parse(side)
        if self.database is None:
            raise ValidationError("No database source is configured")
        async with self._serialized(run_id):
            run = self.store.get_run(run_id)
            lifecycle.require_mutable(run, f"load source {side.value}")
            config = self.store.get_config(run.config_id)
            source = config.source(side)
            if not source.database_id:
                raise ValidationError(f"Source {side.value} of config '{config.name}' has no database_id")

            row_filter = None
            if filter_spec:
                spec = {"date_column_key": source.date_column_key, "cadence": source.cadence}
                spec = {k: v for k, v in spec.items() if v}
                spec.update(filter_spec)
                row_filter = RowFilter.from_dict(spec)

            try:
                db_columns = self.database.columns(source.database_id)
                raw_rows = self.database.fetch_rows(
                    source.database_id, source.keys or None, row_filter
                )
            except duckdb.Error as e:
                self._fail(run, f"Could not read database '{source.database_id}': {e}")
                raise UnrecoverableLoadError(str(e)) from e
            if len(raw_rows) > self.settings.max_rows:
                raise ValidationError(
                    f"Database '{source.database_id}' returned {len(raw_rows)} rows; "
                    f"the limit is {self.settings.max_rows}"
                )

            types = resolve_column_types(side, source, run.mapping, db_columns)
            rows = add_signed_amount(
                type_rows(raw_rows, types, today=self.today), source.signed_amount
            )
            lifecycle.load_source(
                run,
                side,
                rows,
                SourceFile(key=f"database:{source.database_id}", name=source.database_id),
            )
            self.store.save_run(run)

        detected = [
            DetectedColumn(key=c.key, label=c.label, detection=TypeDetection(c.type, 1.0))
            for c in db_columns
        ]
        return LoadResult(row_count=len(rows), detected_columns=detected)

    # -- matching ------------------------------------------------------------

    async def compute_matches(self, run_id: str, deadline: float | None = None) -> MatchOutcome:
        """Run automatic matching, waiting at most ``deadline`` seconds."""
        deadline = self.settings.match_deadline_seconds if deadline is None else deadline
        async with self._serialized(run_id):
            job = self._jobs.get(run_id)
            if job is None or job.done():
                run = self.store.get_run(run_id)
                lifecycle.check_can_match(run)
                job = asyncio.create_task(self._match_job(run))
                self._jobs[run_id] = job
        try:
            return await asyncio.wait_for(asyncio.shield(job), deadline)
        except asyncio.TimeoutError:
            log.info("Run %s: matching still running after %.1fs", run_id, deadline)
            run = self.store.get_run(run_id)
            return MatchOutcome(
                status="processing",
                unmatched_a_count=len(run.unmatched_a),
                unmatched_b_count=len(run.unmatched_b),
            )

    async def _match_job(self, snapshot: ReconciliationRun) -> MatchOutcome:
        run_id = snapshot.id
        try:
            try:
                result: MatchResult = await asyncio.to_thread(lifecycle.compute_match, snapshot)
            except Exception as e:
                log.exception("Run %s: matching failed", run_id)
                async with self._serialized(run_id):
                    run = self.store.get_run(run_id)
                    if run.version != snapshot.version or run.status.is_terminal:
                        self._release(run)
                        return MatchOutcome(status="superseded")
                    reason = f"Matching failed: {type(e).__name__}: {e}"
                    self._fail(run, reason)
                    return MatchOutcome(
                        status="failed",
                        unmatched_a_count=len(run.unmatched_a),
                        unmatched_b_count=len(run.unmatched_b),
                        failure_reason=reason,
                    )

            async with self._serialized(run_id):
                run = self.store.get_run(run_id)
                if run.version != snapshot.version:
                    log.warning(
                        "Run %s changed during matching (version %d -> %d); discarding result",
                        run_id,
                        snapshot.version,
                        run.version,
                    )
                    self._release(run)
                    return MatchOutcome(
                        status="superseded",
                        unmatched_a_count=len(run.unmatched_a),
                        unmatched_b_count=len(run.unmatched_b),
                    )
                lifecycle.apply_match_result(run, result)
                self.store.save_run(run)
                return MatchOutcome(
                    status="complete",
                    new_match_count=len(result.new_pairs),
                    unmatched_a_count=len(run.unmatched_a),
                    unmatched_b_count=len(run.unmatched_b),
                )
        finally:
            if self._jobs.get(run_id) is asyncio.current_task():
                del self._jobs[run_id]

    async def wait_for_matches(self) -> None:
        """Wait for every background matching job to finish."""
        jobs = list(self._jobs.values())
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)

    # -- manual review -------------------------------------------------------

    async def accept_match(self, run_id: str, source_a_idx: int, source_b_idx: int) -> MatchedPair:
        async with self._serialized(run_id):
            run = self.store.get_run(run_id)
            pair = lifecycle.accept_manual_match(run, source_a_idx, source_b_idx)
            self.store.save_run(run)
            return pair

    async def undo_match(self, run_id: str, pair_id: str) -> MatchedPair:
        async with self._serialized(run_id):
            run = self.store.get_run(run_id)
            pair = lifecycle.undo_match(run, pair_id)
            self.store.save_run(run)
            return pair

    async def finalize(self, run_id: str, completed_by: str | None = None) -> ReconciliationRun:
        async with self._serialized(run_id):
            run = self.store.get_run(run_id)
            lifecycle.finalize(run, completed_by)
            self.store.save_run(run)
            self._release(run)
            return run

    # -- exceptions ----------------------------------------------------------

    async def classify_exceptions(
        self, run_id: str, classifier: ExceptionClassifier | None = None
    ) -> list[ExceptionLabel]:
        """Label every unmatched row with an exception category and store the labels."""
        classifier = classifier or self.classifier or FallbackExceptionClassifier()
        async with self._serialized(run_id):
            run = self.store.get_run(run_id)
            lifecycle.check_can_classify(run)
            config = self.store.get_config(run.config_id)
            source_labels = (
                config.source_a.label or "Source A",
                config.source_b.label or "Source B",
            )
            labels = await classify_exceptions(classifier, unmatched_items(run), source_labels)
            lifecycle.set_exceptions(run, labels)
            self.store.save_run(run)
        return labels

    # -- analysis ------------------------------------------------------------

    async def analyze_file(self, data: bytes, filename: str) -> ParsedSource:
        """Preview a file: detected columns, types and sample rows. No run is touched."""
        return await parse_file(
            data,
            filename,
            mode="sample",
            pdf_extractor=self.pdf_extractor,
            sample_rows=self.settings.sample_rows,
        )

    async def suggest_mappings(
        self,
        columns_a: Sequence[ColumnDef],
        columns_b: Sequence[ColumnDef],
        suggester: MappingSuggester | None = None,
    ) -> MappingResolution:
        """Propose a mapping and validate it. Rejections are returned, not raised."""
        suggester = suggester or self.suggester or LabelMappingSuggester()
        return await suggest_mappings(suggester, columns_a, columns_b)
