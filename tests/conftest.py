"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.store import postgres as pg  # noqa: E402


class FakePool:
    """In-memory stand-in for an asyncpg pool that understands the backend's SQL."""

    def __init__(self) -> None:
        self.rows: List[Dict[str, Any]] = []
        self.queries: List[str] = []
        self.fail: Optional[BaseException] = None
        self.closed = 0
        self._next_id = 1
        self._clock = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)

    def _check(self, query: str) -> None:
        self.queries.append(query)
        if self.fail is not None:
            raise self.fail

    async def fetch(self, query: str, *args: Any) -> List[Dict[str, Any]]:
        self._check(query)
        assert query == pg.SELECT_RECENT
        ordered = sorted(self.rows, key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return [dict(r) for r in ordered[: args[0]]]

    async def fetchrow(self, query: str, *args: Any) -> Optional[Dict[str, Any]]:
        self._check(query)
        if query == pg.INSERT:
            text, user = args
            self._clock += timedelta(milliseconds=5)
            row = {"id": self._next_id, "text": text, "user_name": user, "created_at": self._clock}
            self._next_id += 1
            self.rows.append(row)
            return dict(row)
        if query == pg.UPDATE:
            text, pk, user = args
            for row in self.rows:
                if row["id"] == pk and row["user_name"] == user:
                    row["text"] = text
                    return dict(row)
            return None
        raise AssertionError(f"unexpected query: {query}")

    async def execute(self, query: str, *args: Any) -> str:
        self._check(query)
        if query in (pg.SCHEMA, pg.INDEX):
            return "CREATE"
        if query == pg.DELETE:
            pk, user = args
            before = len(self.rows)
            self.rows = [r for r in self.rows if not (r["id"] == pk and r["user_name"] == user)]
            return f"DELETE {before - len(self.rows)}"
        if query == pg.CLEAR:
            count = len(self.rows)
            self.rows = []
            return f"DELETE {count}"
        raise AssertionError(f"unexpected query: {query}")

    async def close(self) -> None:
        self.closed += 1


class PoolFactory:
    """Records the connect kwargs and hands out a FakePool (or raises)."""

    def __init__(self, pool: Optional[FakePool] = None, error: Optional[BaseException] = None) -> None:
        self.pool = pool or FakePool()
        self.error = error
        self.kwargs: Dict[str, Any] = {}
        self.calls = 0

    async def __call__(self, **kwargs: Any) -> FakePool:
        self.calls += 1
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.pool


class FakeConnection:
    """Collects frames sent by the hub."""

    def __init__(self, name: str = "conn", broken: bool = False) -> None:
        self.name = name
        self.broken = broken
        self.frames: List[Dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.frames.append(data)

    def events(self) -> List[str]:
        return [f["event"] for f in self.frames]

    def last(self) -> Dict[str, Any]:
        return self.frames[-1]


@pytest.fixture
def run():
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Location of the JSON fallback document for a test."""
    return tmp_path / "data" / "db.json"


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in list(os.environ):
        if var == "CHAT_RELAY_CONFIG" or var.startswith("CHAT_RELAY__"):
            monkeypatch.delenv(var, raising=False)
    yield
