"""
Pytest fixtures for indexer tests. Uses a temporary SQLite database per test.
"""

from __future__ import annotations

import pytest


@pytest.fixture
def store(tmp_path, monkeypatch):
    """
    SqlAlchemyStore on a temporary SQLite file with tables created.
    Unset DATABASE_URL so nothing points at a real database.
    """
    monkeypatch.delenv("DATABASE_URL", raising=False)

    from onchain_indexer.database import SqlAlchemyStore

    s = SqlAlchemyStore(f"sqlite:///{tmp_path / 'indexer.db'}")
    s.init_db()
    yield s
    s.dispose()


@pytest.fixture
def sleeps():
    """Sleep recorder: pass `sleeps.append` wherever a sleep callable is injected."""
    return []


@pytest.fixture
def client(store):
    """FastAPI TestClient bound to the temporary store."""
    from fastapi.testclient import TestClient

    from onchain_indexer.api_server.server import create_app

    return TestClient(create_app(store))
