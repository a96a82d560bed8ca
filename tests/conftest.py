"""Shared fixtures and helpers for the reconciliation test suite."""

import json
from typing import Any

import duckdb
import pytest

from recon.ingest import type_rows
from recon.models import MappingEntry, MatchingRules
from recon.store import RunStore, init_store
from recon.values import ColumnType


@pytest.fixture
def conn():
    """In-memory DuckDB connection for each test."""
    c = duckdb.connect(":memory:")
    init_store(c)
    yield c
    c.close()


@pytest.fixture
def store(conn):
    return RunStore(conn)


class FakeChatClient:
    """Stands in for OpenRouterClient: replays canned replies, records requests."""

    def __init__(self, replies: list[Any]):
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def chat(self, model, messages, response_format=None, temperature=None):
        self.calls.append(
            {"model": model, "messages": messages, "response_format": response_format}
        )
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return {"message": {"role": "assistant", "content": content}, "usage": {}}


def _csv(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode()


def _typed(rows: list[dict[str, Any]], types: dict[str, ColumnType]):
    """Typed rows from raw dicts, for driving the engine directly."""
    return type_rows(rows, types)


def _mapping(*pairs: tuple[str, ColumnType]) -> list[MappingEntry]:
    """Mapping entries pairing identically-named columns."""
    return [MappingEntry(source_a_key=k, source_b_key=k, type=t) for k, t in pairs]


def _rules(**kwargs) -> MatchingRules:
    return MatchingRules.from_dict(kwargs) if kwargs else MatchingRules()


# The three-column statement/ledger setup used across tests.
LEDGER_TYPES = {
    "date": ColumnType.DATE,
    "amt": ColumnType.CURRENCY,
    "ref": ColumnType.TEXT,
}


def _ledger_config(**overrides) -> dict[str, Any]:
    columns = [
        {"key": "date", "label": "Date", "type": "date"},
        {"key": "amt", "label": "Amount", "type": "currency"},
        {"key": "ref", "label": "Reference", "type": "text"},
    ]
    config = {
        "name": "Bank vs ledger",
        "source_type": "document_document",
        "source_a": {"label": "Bank", "columns": columns},
        "source_b": {"label": "Ledger", "columns": columns},
        "mapping": [
            {"source_a_key": "date", "source_b_key": "date", "type": "date"},
            {"source_a_key": "amt", "source_b_key": "amt", "type": "currency"},
            {"source_a_key": "ref", "source_b_key": "ref", "type": "text"},
        ],
    }
    config.update(overrides)
    return config


def _split_ledger_config(**signed_overrides):
    """Bank with one signed amount against a ledger with debit and credit columns."""
    signed = {"key": "net", "debit_key": "debit", "credit_key": "credit", "label": "Net"}
    signed.update(signed_overrides)
    return _ledger_config(
        source_b={
            "label": "Ledger",
            "columns": [
                {"key": "date", "label": "Date", "type": "date"},
                {"key": "debit", "label": "Debit", "type": "currency"},
                {"key": "credit", "label": "Credit", "type": "currency"},
                {"key": "ref", "label": "Reference", "type": "text"},
            ],
            "signed_amount": signed,
        },
        mapping=[
            {"source_a_key": "date", "source_b_key": "date"},
            {"source_a_key": "amt", "source_b_key": "net"},
            {"source_a_key": "ref", "source_b_key": "ref"},
        ],
    )
