"""Shared fixtures: sample metadata, a per-test SQLite store and callers."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import text

from entityforge.auth import UserContext
from entityforge.effects import InMemoryOutbox
from entityforge.engine import ReadService, WritePipeline
from entityforge.metadata import load_registry
from entityforge.persistence import Store

METADATA_PATH = Path(__file__).resolve().parents[2] / "metadata"

FROZEN_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

SCHEMA = [
    """
    CREATE TABLE customers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT UNIQUE,
        tier TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE invoices (
        id TEXT PRIMARY KEY,
        number TEXT NOT NULL UNIQUE,
        customer_id TEXT,
        status TEXT,
        total REAL,
        total_with_tax REAL,
        issued_at TEXT,
        created_at TEXT,
        updated_at TEXT,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE invoice_items (
        id TEXT PRIMARY KEY,
        invoice_id TEXT NOT NULL,
        description TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        unit_price REAL
    )
    """,
    """
    CREATE TABLE notes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        invoice_id TEXT,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE tags (
        code TEXT PRIMARY KEY,
        label TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE invoice_tags (
        invoice_id TEXT NOT NULL,
        tag_code TEXT NOT NULL,
        PRIMARY KEY (invoice_id, tag_code)
    )
    """,
]


def create_schema(store: Store) -> None:
    with store.transaction() as conn:
        for statement in SCHEMA:
            conn.execute(text(statement))


def rows(store: Store, sql: str, **params) -> list[dict]:
    """Raw rows for asserting on stored state."""
    with store.connect() as conn:
        return [dict(r._mapping) for r in conn.execute(text(sql), params)]


@pytest.fixture
def registry():
    return load_registry(METADATA_PATH)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def store(database_url):
    s = Store(database_url)
    create_schema(s)
    yield s
    s.dispose()


@pytest.fixture
def outbox():
    return InMemoryOutbox()


@pytest.fixture
def pipeline(registry, store, outbox):
    return WritePipeline(registry, store, outbox, clock=lambda: FROZEN_NOW)


@pytest.fixture
def reader(registry, store):
    return ReadService(registry, store)


@pytest.fixture
def admin():
    return UserContext(user_id="admin-1", roles=["admin"])


@pytest.fixture
def sales():
    return UserContext(user_id="sales-1", roles=["sales"])


@pytest.fixture
def accountant():
    return UserContext(user_id="acct-1", roles=["accountant"])


@pytest.fixture
def seed_tags(store):
    with store.transaction() as conn:
        for code, label in (("urgent", "Urgent"), ("export", "Export"), ("vip", "VIP")):
            conn.execute(text("INSERT INTO tags (code, label) VALUES (:c, :l)"), {"c": code, "l": label})
