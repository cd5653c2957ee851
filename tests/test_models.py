"""Tests for request keys and cache entry models."""

from datetime import UTC, datetime

import pytest

from swcache.models import SOURCE_CACHE, CacheEntry, Request, Response, make_key, normalize_url


class TestNormalizeUrl:
    """Tests for URL normalization."""

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("HTTP://App.Test/index.html", "http://app.test/index.html"),
            ("http://app.test:80/a.js", "http://app.test/a.js"),
            ("https://app.test:443/a.js", "https://app.test/a.js"),
            ("http://app.test:8000/a.js", "http://app.test:8000/a.js"),
            ("http://app.test", "http://app.test/"),
            ("http://app.test/a.js#top", "http://app.test/a.js"),
            ("http://app.test/api?b=2&a=1", "http://app.test/api?b=2&a=1"),
        ],
    )
    def test_normalization(self, url: str, expected: str) -> None:
        """Scheme, host, default ports, empty paths and fragments are normalized."""
        assert normalize_url(url) == expected


class TestRequest:
    """Tests for the Request model."""

    def test_key_combines_method_and_url(self) -> None:
        """Keys are method plus normalized URL."""
        assert Request("http://App.test/x").key == "GET http://app.test/x"
        assert make_key("post", "http://app.test/x") == "POST http://app.test/x"

    def test_header_lookup_is_case_insensitive(self) -> None:
        """Header names are matched case-insensitively."""
        request = Request("http://app.test/", headers={"Accept-Language": "pt-BR"})
        assert request.header("accept-language") == "pt-BR"
        assert request.header("X-Missing", "none") == "none"


class TestCacheEntry:
    """Tests for CacheEntry."""

    def test_captures_and_restores_response(self) -> None:
        """A stored entry rebuilds the same response, marked as cached."""
        response = Response(status=200, headers={"Content-Type": "text/css"}, body=b"a{}", url="http://app.test/a.css")
        captured_at = datetime(2024, 1, 1, tzinfo=UTC)

        entry = CacheEntry.from_response("GET http://app.test/a.css", response, captured_at)
        restored = entry.to_response()

        assert entry.captured_at == captured_at
        assert restored.status == 200
        assert restored.body == b"a{}"
        assert restored.headers == {"Content-Type": "text/css"}
        assert restored.source == SOURCE_CACHE

    @pytest.mark.parametrize("status, ok", [(200, True), (204, True), (304, False), (404, False), (500, False)])
    def test_ok_range(self, status: int, ok: bool) -> None:
        """Only 2xx responses are ok."""
        assert Response(status=status).ok is ok
