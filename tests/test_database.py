"""Tests for engine and session factory setup."""

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from evv_engine import database


@pytest.fixture
def fresh_database(monkeypatch):
    monkeypatch.setattr(database, "_engine", None)
    monkeypatch.setattr(database, "_session_factory", None)
    monkeypatch.setattr(
        database, "get_engine", lambda: create_async_engine("sqlite+aiosqlite:///:memory:")
    )


class TestInitDb:
    """Lazy engine initialization."""

    def test_init_is_cached(self, fresh_database):
        engine, factory = database.init_db()

        assert database.init_db() == (engine, factory)

    def test_engine_without_factory_is_an_error(self, fresh_database, monkeypatch):
        monkeypatch.setattr(database, "_engine", object())

        with pytest.raises(RuntimeError, match="session factory"):
            database.init_db()
