"""DuckDB persistence for configs and runs.

Two engine-owned tables, each keyed by id with the object stored as JSON:

- ``_recon_configs``: :class:`ReconciliationConfig`
- ``_recon_runs``: :class:`ReconciliationRun`, rows included

Runs are written whole on every save; at spreadsheet scale that is simpler
than tracking row-level changes and keeps a saved run self-contained.
"""

from __future__ import annotations

import json
from typing import Any

import duckdb

from .errors import NotFoundError
from .models import MatchingRules, ReconciliationConfig, ReconciliationRun


def init_store(conn: duckdb.DuckDBPyConnection) -> None:
    """Ensure the config and run tables exist."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _recon_configs (
            id VARCHAR PRIMARY KEY,
            name VARCHAR NOT NULL,
            created_at VARCHAR NOT NULL,
            config_json VARCHAR NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _recon_runs (
            id VARCHAR PRIMARY KEY,
            config_id VARCHAR NOT NULL,
            status VARCHAR NOT NULL,
            version INTEGER NOT NULL,
            updated_at VARCHAR NOT NULL,
            run_json VARCHAR NOT NULL
        )
        """
    )


class RunStore:
    """Load and save configs and runs on one DuckDB connection."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, default_rules: MatchingRules | None = None):
        self.conn = conn
        self.default_rules = default_rules
        init_store(conn)

    # -- configs -------------------------------------------------------------

    def save_config(self, config: ReconciliationConfig) -> None:
        self.conn.execute(
            """
            INSERT INTO _recon_configs (id, name, created_at, config_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                config_json = excluded.config_json
            """,
            [config.id, config.name, config.created_at, json.dumps(config.to_dict(), sort_keys=True)],
        )

    def get_config(self, config_id: str) -> ReconciliationConfig:
        row = self.conn.execute(
            "SELECT config_json FROM _recon_configs WHERE id = ?", [config_id]
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Unknown config: '{config_id}'")
        return ReconciliationConfig.from_dict(json.loads(row[0]), self.default_rules)

    def list_configs(self) -> list[dict[str, str]]:
        rows = self.conn.execute(
            "SELECT id, name, created_at FROM _recon_configs ORDER BY created_at, id"
        ).fetchall()
        return [{"id": r[0], "name": r[1], "created_at": r[2]} for r in rows]

    # -- runs ----------------------------------------------------------------

    def save_run(self, run: ReconciliationRun) -> None:
        self.conn.execute(
            """
            INSERT INTO _recon_runs (id, config_id, status, version, updated_at, run_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                version = excluded.version,
                updated_at = excluded.updated_at,
                run_json = excluded.run_json
            """,
            [
                run.id,
                run.config_id,
                run.status.value,
                run.version,
                run.updated_at,
                json.dumps(run.to_dict(include_rows=True)),
            ],
        )

    def get_run(self, run_id: str) -> ReconciliationRun:
        row = self.conn.execute(
            "SELECT run_json FROM _recon_runs WHERE id = ?", [run_id]
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Unknown run: '{run_id}'")
        return ReconciliationRun.from_dict(json.loads(row[0]))

    def list_runs(self, config_id: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT id, config_id, status, version, updated_at FROM _recon_runs"
        params: list[Any] = []
        if config_id is not None:
            sql += " WHERE config_id = ?"
            params.append(config_id)
        rows = self.conn.execute(sql + " ORDER BY updated_at, id", params).fetchall()
        return [
            {
                "id": r[0],
                "config_id": r[1],
                "status": r[2],
                "version": r[3],
                "updated_at": r[4],
            }
            for r in rows
        ]
