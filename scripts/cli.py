"""CLI entry point for the reconciliation engine.

Usage:
    # Preview a file: detected columns, types and sample values
    recon analyze bank.csv

    # Propose a column mapping and write a starter config
    recon suggest bank.csv ledger.xlsx -o config.json

    # Create a run from a config, load both files and match
    recon run config.json bank.csv ledger.xlsx

    # Review
    recon show RUN_ID
    recon accept RUN_ID 3 7
    recon undo RUN_ID PAIR_ID
    recon classify RUN_ID --ai
    recon finalize RUN_ID --by alice

    # Tables database-backed sources can read
    recon databases --db recon.db
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import duckdb
from dotenv import find_dotenv, load_dotenv

# Load .env by walking upward from the CWD.
_dotenv_path = find_dotenv(usecwd=True)
DOTENV_PATH = Path(_dotenv_path) if _dotenv_path else None
if _dotenv_path:
    load_dotenv(_dotenv_path)

from recon.api import OPENROUTER_API_KEY_ENV, OpenRouterClient, has_openrouter_api_key
from recon.blob import LocalBlobStore
from recon.catalog import count_rows
from recon.database import DuckDBDatabaseSource
from recon.errors import ReconError
from recon.ingest import file_format
from recon.classify import LLMExceptionClassifier
from recon.lifecycle import current_exceptions
from recon.mapping import LLMMappingSuggester
from recon.models import ReconciliationRun, Side, SourceKind
from recon.pdf_extract import LLMTableExtractor
from recon.service import ReconciliationService
from recon.settings import Settings, load_settings
from recon.store import RunStore
from recon.values import display_value

log = logging.getLogger(__name__)

DEFAULT_DB = "recon.db"


def _setup_logging(quiet: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else logging.INFO,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def _require_openrouter_api_key() -> None:
    if has_openrouter_api_key():
        return

    hint = (
        f"Set OPENROUTER_API_KEY in your environment or in {DOTENV_PATH}"
        if DOTENV_PATH
        else "Set OPENROUTER_API_KEY in your environment or in a .env in the current directory (or a parent directory)."
    )
    raise click.ClickException(f"{OPENROUTER_API_KEY_ENV} is required. {hint}")


def _settings() -> Settings:
    try:
        return load_settings()
    except ReconError as e:
        raise click.ClickException(str(e))


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise click.ClickException(f"Failed to read {path}: {e}")


def _run_async(coro_fn) -> Any:
    """Run a coroutine, turning engine errors into CLI errors."""
    try:
        return asyncio.run(coro_fn())
    except ReconError as e:
        raise click.ClickException(str(e))


def _open_service(db: Path, uploads: Path | None = None, client: Any = None):
    try:
        conn = duckdb.connect(str(db))
    except duckdb.Error as e:
        raise click.ClickException(f"Cannot open {db} as a DuckDB database: {e}")
    settings = _settings()
    service = ReconciliationService(
        RunStore(conn, settings.default_rules()),
        settings=settings,
        database=DuckDBDatabaseSource(conn),
        blob_store=LocalBlobStore(uploads) if uploads else None,
        pdf_extractor=LLMTableExtractor(client, settings.llm_model) if client else None,
    )
    return conn, service


def _scratch_service(settings: Settings, client: Any = None) -> ReconciliationService:
    """Service over a throwaway in-memory store, for commands that touch no run."""
    return ReconciliationService(
        RunStore(duckdb.connect(":memory:")),
        settings=settings,
        pdf_extractor=LLMTableExtractor(client, settings.llm_model) if client else None,
    )


def _db_option(fn):
    return click.option(
        "--db",
        default=DEFAULT_DB,
        show_default=True,
        type=click.Path(dir_okay=False, path_type=Path),
        help="DuckDB file holding configs and runs",
    )(fn)


@click.group()
def main():
    """Recon — two-source reconciliation matching."""


# ---------------------------------------------------------------------------
# analyze / suggest
# ---------------------------------------------------------------------------


def _describe_columns(parsed) -> None:
    click.echo(f"Columns ({len(parsed.columns)}):")
    for c in parsed.columns:
        samples = ", ".join(repr(v) for v in c.sample_values)
        click.echo(
            f"  {c.key:<20} {c.type.value:<9} ({c.detection.confidence:.0%})  {samples}"
        )
    if parsed.warnings:
        click.echo("\nWarnings:")
        for w in parsed.warnings:
            click.echo(f"  - [{w.code}] {w.message}")


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the analysis as JSON")
def analyze(file: Path, as_json: bool):
    """Detect the columns and types of FILE from a sample of its rows."""
    _setup_logging(quiet=True)
    data = _read_file(file)
    settings = _settings()
    needs_llm = _is_pdf(file)
    if needs_llm:
        _require_openrouter_api_key()

    async def _analyze(client=None):
        return await _scratch_service(settings, client).analyze_file(data, file.name)

    async def _run():
        if needs_llm:
            async with OpenRouterClient() as client:
                return await _analyze(client)
        return await _analyze()

    parsed = _run_async(_run)
    if as_json:
        click.echo(json.dumps(parsed.to_dict(), indent=2))
        return
    click.echo(f"File: {file}  ({parsed.row_count} sample rows)\n")
    _describe_columns(parsed)


def _is_pdf(path: Path) -> bool:
    try:
        return file_format(path.name) == "pdf"
    except ReconError as e:
        raise click.ClickException(str(e))


@main.command()
@click.argument("file_a", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("file_b", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write a starter config with the accepted mapping to this path",
)
@click.option("--ai", is_flag=True, help="Ask the LLM for the mapping instead of matching labels")
@click.option("--name", default=None, help="Config name (default: FILE_A vs FILE_B)")
def suggest(file_a: Path, file_b: Path, output: Path | None, ai: bool, name: str | None):
    """Propose a column mapping between FILE_A and FILE_B."""
    _setup_logging(quiet=True)
    settings = _settings()
    data_a, data_b = _read_file(file_a), _read_file(file_b)
    needs_llm = ai or _is_pdf(file_a) or _is_pdf(file_b)
    if needs_llm:
        _require_openrouter_api_key()

    async def _suggest(client=None):
        service = _scratch_service(settings, client)
        parsed_a = await service.analyze_file(data_a, file_a.name)
        parsed_b = await service.analyze_file(data_b, file_b.name)
        cols_a = [c.as_column_def() for c in parsed_a.columns]
        cols_b = [c.as_column_def() for c in parsed_b.columns]
        suggester = None
        if ai:
            samples = {
                "A": {c.key: list(c.sample_values) for c in parsed_a.columns},
                "B": {c.key: list(c.sample_values) for c in parsed_b.columns},
            }
            suggester = LLMMappingSuggester(client, settings.llm_model, samples)
        resolution = await service.suggest_mappings(cols_a, cols_b, suggester)
        return cols_a, cols_b, resolution

    async def _run():
        if needs_llm:
            async with OpenRouterClient() as client:
                return await _suggest(client)
        return await _suggest()

    cols_a, cols_b, resolution = _run_async(_run)

    click.echo(f"Mapping ({len(resolution.valid)} accepted):")
    for m in resolution.valid:
        click.echo(
            f"  {m.source_a_key:<20} <-> {m.source_b_key:<20} {m.type.value:<9} {m.role.value}"
        )
    if resolution.rejected:
        click.echo(f"\nRejected ({len(resolution.rejected)}):")
        for r in resolution.rejected:
            click.echo(f"  - [{r.reason}] {r.detail}")

    if output is not None:
        config = {
            "name": name or f"{file_a.stem} vs {file_b.stem}",
            "source_type": "document_document",
            "source_a": {"label": file_a.name, "columns": [c.to_dict() for c in cols_a]},
            "source_b": {"label": file_b.name, "columns": [c.to_dict() for c in cols_b]},
            "mapping": [m.to_dict() for m in resolution.valid],
            "matching_rules": settings.default_rules().to_dict(),
        }
        output.write_text(json.dumps(config, indent=2) + "\n")
        click.echo(f"\nWrote {output}")


# ---------------------------------------------------------------------------
# run / show / accept / undo / finalize
# ---------------------------------------------------------------------------


def _print_run(run: ReconciliationRun, summary: dict[str, Any]) -> None:
    click.echo(f"Run: {run.id}  (config {run.config_id})")
    click.echo(f"Status: {run.status.value}")
    if run.failure_reason:
        click.echo(f"Failure: {run.failure_reason}")
    for side, f in ((Side.A, run.source_a_file), (Side.B, run.source_b_file)):
        loaded = f"{run.row_count(side)} rows" if run.is_loaded(side) else "not loaded"
        click.echo(f"Source {side.value}: {loaded}" + (f" from {f.name}" if f else ""))

    by_type = ", ".join(f"{k} {v}" for k, v in summary["matched_by_type"].items() if v)
    click.echo(f"\nMatched: {summary['matched_count']}" + (f" ({by_type})" if by_type else ""))
    click.echo(f"Unmatched A: {summary['unmatched_a_count']}")
    click.echo(f"Unmatched B: {summary['unmatched_b_count']}")
    if summary["variance"] is not None:
        click.echo(f"Variance: {summary['variance']:,.2f}")
    by_category = ", ".join(f"{k} {v}" for k, v in summary["exceptions_by_category"].items() if v)
    if by_category:
        click.echo(f"Exceptions: {by_category}")
    if run.completed_at:
        by = f" by {run.completed_by}" if run.completed_by else ""
        click.echo(f"Completed: {run.completed_at}{by}")

    def _row(side: Side, idx: int) -> str:
        rows = run.rows(side) or []
        keys = [m.source_a_key if side is Side.A else m.source_b_key for m in run.mapping]
        return " | ".join(display_value(rows[idx].get(k)) if k in rows[idx] else "" for k in keys)

    if run.matched_pairs:
        click.echo("\nPairs:")
        for p in run.matched_pairs:
            click.echo(
                f"  {p.id}  A[{p.source_a_idx}] <-> B[{p.source_b_idx}]  "
                f"{p.match_type.value} {p.confidence:.2f}"
            )
            click.echo(f"      A: {_row(Side.A, p.source_a_idx)}")
            click.echo(f"      B: {_row(Side.B, p.source_b_idx)}")
    labels = {(e.side, e.row_idx): e for e in current_exceptions(run)}
    for side, idxs in ((Side.A, run.unmatched_a), (Side.B, run.unmatched_b)):
        if idxs:
            click.echo(f"\nUnmatched {side.value}:")
            for i in idxs:
                click.echo(f"  [{i}] {_row(side, i)}")
                label = labels.get((side, i))
                if label is not None:
                    click.echo(f"      {label.category.value}: {label.reason}")


@main.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("file_a", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("file_b", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_db_option
@click.option("--period", default=None, help="Period key for database sources (2024-01, 2024-Q1, 2024)")
@click.option(
    "--uploads",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory to keep copies of the loaded files",
)
@click.option("--deadline", type=float, default=None, help="Seconds to wait for matching")
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
def run(
    config: Path,
    file_a: Path | None,
    file_b: Path | None,
    db: Path,
    period: str | None,
    uploads: Path | None,
    deadline: float | None,
    quiet: bool,
):
    """Create a run from CONFIG, load FILE_A and FILE_B, and match them.

    Database-backed sides are read from tables in --db and need no file.
    """
    _setup_logging(quiet)
    try:
        config_data = json.loads(config.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Failed to read config {config}: {e}")

    files = {Side.A: file_a, Side.B: file_b}
    needs_llm = any(f is not None and _is_pdf(f) for f in files.values())
    if needs_llm:
        _require_openrouter_api_key()

    async def _load_and_match(service: ReconciliationService):
        cfg = service.create_config(config_data)
        recon_run = await service.create_run(cfg.id)
        for side in (Side.A, Side.B):
            if cfg.source_type.kind(side) is SourceKind.DATABASE:
                filter_spec = {"period_key": period} if period else None
                await service.load_from_database(recon_run.id, side, filter_spec)
                continue
            path = files[side]
            if path is None:
                raise click.ClickException(f"Source {side.value} is a document; pass FILE_{side.value}.")
            result = await service.load_from_file(recon_run.id, side, _read_file(path), path.name)
            for w in result.warnings:
                click.echo(f"  warning [{w.code}] source {side.value}: {w.message}")
        outcome = await service.compute_matches(recon_run.id, deadline=deadline)
        if outcome.status == "processing":
            # The CLI process is the only worker; let the job finish.
            await service.wait_for_matches()
        return recon_run.id

    async def _run(client=None):
        conn, service = _open_service(db, uploads, client)
        try:
            return await _load_and_match(service), conn, service
        except BaseException:
            conn.close()
            raise

    async def _run_with_client():
        if needs_llm:
            async with OpenRouterClient() as client:
                return await _run(client)
        return await _run()

    run_id, conn, service = _run_async(_run_with_client)
    try:
        recon_run = service.get_run(run_id)
        click.echo()
        _print_run(recon_run, service.summarize(run_id))
    finally:
        conn.close()


@main.command()
@click.argument("run_id")
@_db_option
@click.option("--json", "as_json", is_flag=True, help="Print the run as JSON")
def show(run_id: str, db: Path, as_json: bool):
    """Show a run's status, pairs and unmatched rows."""
    _setup_logging(quiet=True)
    if not db.exists():
        raise click.ClickException(f"{db} does not exist.")
    conn, service = _open_service(db)
    try:
        try:
            recon_run = service.get_run(run_id)
            summary = service.summarize(run_id)
        except ReconError as e:
            raise click.ClickException(str(e))
        if as_json:
            out = recon_run.to_dict(include_rows=False)
            out["summary"] = summary
            click.echo(json.dumps(out, indent=2))
        else:
            _print_run(recon_run, summary)
    finally:
        conn.close()


def _mutate(db: Path, action) -> Any:
    if not db.exists():
        raise click.ClickException(f"{db} does not exist.")
    conn, service = _open_service(db)
    try:
        return _run_async(lambda: action(service))
    finally:
        conn.close()


@main.command()
@click.argument("run_id")
@click.argument("a_idx", type=int)
@click.argument("b_idx", type=int)
@_db_option
def accept(run_id: str, a_idx: int, b_idx: int, db: Path):
    """Manually pair source A row A_IDX with source B row B_IDX."""
    _setup_logging(quiet=True)
    pair = _mutate(db, lambda s: s.accept_match(run_id, a_idx, b_idx))
    click.echo(f"Matched A[{pair.source_a_idx}] <-> B[{pair.source_b_idx}] as {pair.id}")


@main.command()
@click.argument("run_id")
@click.argument("pair_id")
@_db_option
def undo(run_id: str, pair_id: str, db: Path):
    """Remove a matched pair and return its rows to the unmatched pools."""
    _setup_logging(quiet=True)
    pair = _mutate(db, lambda s: s.undo_match(run_id, pair_id))
    click.echo(f"Unmatched A[{pair.source_a_idx}] and B[{pair.source_b_idx}]")


@main.command()
@click.argument("run_id")
@_db_option
@click.option("--ai", is_flag=True, help="Ask the LLM for categories instead of labelling all 'other'")
def classify(run_id: str, db: Path, ai: bool):
    """Label each unmatched row of a run with an exception category."""
    _setup_logging(quiet=True)
    if not db.exists():
        raise click.ClickException(f"{db} does not exist.")
    if ai:
        _require_openrouter_api_key()
    settings = _settings()

    async def _classify(service: ReconciliationService, client=None):
        classifier = LLMExceptionClassifier(client, settings.llm_model) if client else None
        return await service.classify_exceptions(run_id, classifier)

    async def _run(service: ReconciliationService):
        if ai:
            async with OpenRouterClient() as client:
                return await _classify(service, client)
        return await _classify(service)

    labels = _mutate(db, _run)
    click.echo(f"Labelled {len(labels)} unmatched row(s)")
    for e in labels:
        click.echo(f"  {e.side.value}[{e.row_idx}]  {e.category.value:<20} {e.reason}")


@main.command()
@click.argument("run_id")
@_db_option
@click.option("--by", "completed_by", default=None, help="Who signed off the run")
def finalize(run_id: str, db: Path, completed_by: str | None):
    """Mark a run COMPLETE. It cannot be changed afterwards."""
    _setup_logging(quiet=True)
    recon_run = _mutate(db, lambda s: s.finalize(run_id, completed_by))
    click.echo(f"Run {recon_run.id} is {recon_run.status.value}")


@main.command()
@_db_option
def databases(db: Path):
    """List the tables in --db that database-backed sources can read."""
    _setup_logging(quiet=True)
    if not db.exists():
        raise click.ClickException(f"{db} does not exist.")
    conn, service = _open_service(db)
    try:
        tables = service.database.list_databases()
        if not tables:
            click.echo("No tables.")
            return
        for name in tables:
            n = count_rows(conn, name)
            click.echo(f"{name}  ({'?' if n is None else n} rows)")
            for col in service.database.columns(name):
                click.echo(f"  {col.key:<20} {col.type.value}")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
