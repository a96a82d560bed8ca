import json
import re

import duckdb
import pytest
from click.testing import CliRunner

from tests.conftest import _csv, _ledger_config
from scripts.cli import main

BANK_CSV = _csv(
    "Date,Amount,Reference",
    "2024-01-05,$100.00,INV-1",
    "2024-01-06,$50.00,INV-2",
)
LEDGER_CSV = _csv("Date,Amount,Reference", "01/05/2024,100,INV-1", "01/09/2024,48.00,X-9")


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run each CLI test from an empty directory with no API key."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    (tmp_path / "bank.csv").write_bytes(BANK_CSV)
    (tmp_path / "ledger.csv").write_bytes(LEDGER_CSV)
    (tmp_path / "config.json").write_text(json.dumps(_ledger_config()))
    return tmp_path


def _invoke(args):
    result = CliRunner().invoke(main, args, env={"OPENROUTER_API_KEY": ""})
    return result


def _run_id(output: str) -> str:
    m = re.search(r"^Run: (\S+)", output, re.MULTILINE)
    assert m, output
    return m.group(1)


class TestAnalyze:
    def test_text_output(self, workdir):
        result = _invoke(["analyze", "bank.csv"])
        assert result.exit_code == 0, result.output
        assert "2 sample rows" in result.output
        assert re.search(r"amount\s+currency", result.output)
        assert re.search(r"date\s+date", result.output)

    def test_json_output(self, workdir):
        result = _invoke(["analyze", "bank.csv", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [c["key"] for c in data["columns"]] == ["date", "amount", "reference"]

    def test_unsupported_file(self, workdir):
        (workdir / "notes.docx").write_bytes(b"x")
        result = _invoke(["analyze", "notes.docx"])
        assert result.exit_code != 0
        assert "Unsupported" in result.output or "unsupported" in result.output

    def test_pdf_requires_api_key(self, workdir):
        (workdir / "statement.pdf").write_bytes(b"%PDF-1.4")
        result = _invoke(["analyze", "statement.pdf"])
        assert result.exit_code != 0
        assert "OPENROUTER_API_KEY is required" in result.output


class TestSuggest:
    def test_label_mapping_and_starter_config(self, workdir):
        result = _invoke(["suggest", "bank.csv", "ledger.csv", "-o", "starter.json"])
        assert result.exit_code == 0, result.output
        assert "Mapping (3 accepted)" in result.output

        config = json.loads((workdir / "starter.json").read_text())
        assert config["name"] == "bank vs ledger"
        assert config["source_type"] == "document_document"
        assert {(m["source_a_key"], m["type"]) for m in config["mapping"]} == {
            ("date", "date"),
            ("amount", "currency"),
            ("reference", "text"),
        }
        assert config["matching_rules"]["amount_band"] == 1.0

    def test_ai_requires_api_key(self, workdir):
        result = _invoke(["suggest", "bank.csv", "ledger.csv", "--ai"])
        assert result.exit_code != 0
        assert "OPENROUTER_API_KEY is required" in result.output


class TestRunAndReview:
    def test_run_does_not_require_api_key(self, workdir):
        """CSV-only runs never touch the LLM."""
        result = _invoke(["run", "config.json", "bank.csv", "ledger.csv", "-q"])
        assert result.exit_code == 0, result.output
        assert "Status: MATCHED" in result.output
        assert "Matched: 1 (exact 1)" in result.output
        assert "Unmatched A: 1" in result.output
        assert "Unmatched B: 1" in result.output
        assert (workdir / "recon.db").exists()

    def test_review_flow(self, workdir):
        result = _invoke(["run", "config.json", "bank.csv", "ledger.csv", "-q"])
        assert result.exit_code == 0, result.output
        run_id = _run_id(result.output)

        result = _invoke(["accept", run_id, "1", "1"])
        assert result.exit_code == 0, result.output
        assert "Matched A[1] <-> B[1]" in result.output

        result = _invoke(["show", run_id, "--json"])
        assert result.exit_code == 0, result.output
        shown = json.loads(result.output)
        assert shown["status"] == "REVIEWED"
        assert shown["summary"]["matched_by_type"] == {"exact": 1, "fuzzy": 0, "manual": 1}
        assert "source_a_rows" not in shown
        manual = next(p for p in shown["matched_pairs"] if p["match_type"] == "manual")

        result = _invoke(["undo", run_id, manual["id"]])
        assert result.exit_code == 0, result.output
        assert "Unmatched A[1] and B[1]" in result.output

        result = _invoke(["finalize", run_id, "--by", "alice"])
        assert result.exit_code == 0, result.output
        assert f"Run {run_id} is COMPLETE" in result.output

        # completed runs are frozen
        result = _invoke(["accept", run_id, "1", "1"])
        assert result.exit_code != 0
        assert "COMPLETE" in result.output

    def test_classify_without_ai(self, workdir):
        result = _invoke(["run", "config.json", "bank.csv", "ledger.csv", "-q"])
        run_id = _run_id(result.output)

        result = _invoke(["classify", run_id])
        assert result.exit_code == 0, result.output
        assert "Labelled 2 unmatched row(s)" in result.output
        assert "A[1]  other" in result.output

        result = _invoke(["show", run_id])
        assert result.exit_code == 0, result.output
        assert "Exceptions: other 2" in result.output
        assert "other: Unmatched item" in result.output

    def test_classify_ai_requires_api_key(self, workdir):
        result = _invoke(["run", "config.json", "bank.csv", "ledger.csv", "-q"])
        result = _invoke(["classify", _run_id(result.output), "--ai"])
        assert result.exit_code != 0
        assert "OPENROUTER_API_KEY is required" in result.output

    def test_uploads_kept(self, workdir):
        result = _invoke(
            ["run", "config.json", "bank.csv", "ledger.csv", "--uploads", "uploads", "-q"]
        )
        assert result.exit_code == 0, result.output
        run_id = _run_id(result.output)
        assert (workdir / "uploads" / "runs" / run_id / "A" / "bank.csv").read_bytes() == BANK_CSV

    def test_missing_document(self, workdir):
        result = _invoke(["run", "config.json", "bank.csv", "-q"])
        assert result.exit_code != 0
        assert "pass FILE_B" in result.output

    def test_bad_config(self, workdir):
        (workdir / "bad.json").write_text("{not json")
        result = _invoke(["run", "bad.json", "bank.csv", "ledger.csv"])
        assert result.exit_code != 0
        assert "Failed to read config" in result.output

    def test_show_unknown_run(self, workdir):
        _invoke(["run", "config.json", "bank.csv", "ledger.csv", "-q"])
        result = _invoke(["show", "nope"])
        assert result.exit_code != 0
        assert "Unknown run: 'nope'" in result.output

    def test_show_without_db(self, workdir):
        result = _invoke(["show", "anything", "--db", "missing.db"])
        assert result.exit_code != 0
        assert "missing.db does not exist" in result.output


class TestDatabases:
    def test_lists_tables_with_counts(self, workdir):
        conn = duckdb.connect(str(workdir / "recon.db"))
        conn.execute("CREATE TABLE gl (posted DATE, amount DECIMAL(12,2), memo VARCHAR)")
        conn.execute("INSERT INTO gl VALUES ('2024-01-05', 100.00, 'INV-1')")
        conn.close()

        result = _invoke(["databases"])
        assert result.exit_code == 0, result.output
        assert "gl  (1 rows)" in result.output
        assert re.search(r"amount\s+currency", result.output)
        assert "_recon_" not in result.output
