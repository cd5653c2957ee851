"""Shared fixtures: an in-process network double and a fresh cache store."""

import sqlite3
import threading
from pathlib import Path

import pytest

from swcache.models import Request, Response, normalize_url
from swcache.network import NetworkError
from swcache.store import init_store

ORIGIN = "http://app.test"


class FakeFetcher:
    """Network double: serves canned responses and records every fetch."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._routes: dict[str, Response] = {}
        self.calls: list[Request] = []
        self.offline = False
        self.failing: set[str] = set()
        self.gate: threading.Event | None = None  # when set, fetches block until the event fires

    def serve(self, url: str, body: bytes = b"", status: int = 200, headers: dict | None = None) -> None:
        self._routes[normalize_url(url)] = Response(
            status=status,
            headers=headers or {"Content-Type": "text/plain"},
            body=body,
            url=url,
            reason="OK" if status == 200 else "",
        )

    def fetch(self, request: Request) -> Response:
        with self._lock:
            self.calls.append(request)
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.offline or normalize_url(request.url) in self.failing:
            raise NetworkError(f"offline: {request.url}")
        response = self._routes.get(normalize_url(request.url))
        if response is None:
            return Response(status=404, body=b"not found", url=request.url, reason="Not Found")
        return response

    def count(self, url: str) -> int:
        with self._lock:
            return sum(1 for r in self.calls if normalize_url(r.url) == normalize_url(url))


@pytest.fixture
def fetcher() -> FakeFetcher:
    """Create a network double with no routes."""
    return FakeFetcher()


@pytest.fixture
def conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a cache store connection with initialized tables."""
    db_conn = init_store(str(tmp_path / "cache.db"))
    yield db_conn
    db_conn.close()
