"""Tests for the cache worker and generation registration."""

import json
import sqlite3
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import ORIGIN, FakeFetcher
from swcache.config import AssetsConfig, Config, WorkerConfig
from swcache.models import SOURCE_CACHE, SOURCE_NETWORK, SOURCE_OFFLINE, Request
from swcache.store import get_entry, has_partition, init_store, list_partitions
from swcache.worker import (
    STATE_ACTIVATED,
    STATE_INSTALLED,
    STATE_PARSED,
    STATE_REDUNDANT,
    CacheWorker,
    Registration,
    find_previous_version,
    recover_previous_generation,
)

LOCAL = ("/", "/index.html", "/src/js/core/app.js", "/icons/icon-192x192.png")


def _config(version: str, skip_waiting: bool = True, local: tuple[str, ...] = LOCAL) -> Config:
    return Config(
        worker=WorkerConfig(version=version, origin=ORIGIN, skip_waiting=skip_waiting),
        assets=AssetsConfig(local=local),
    )


@pytest.fixture
def online(fetcher: FakeFetcher) -> FakeFetcher:
    """Serve every local asset and a data endpoint."""
    for path in LOCAL:
        fetcher.serve(ORIGIN + path, f"{path} content".encode())
    fetcher.serve(ORIGIN + "/api/history", b'{"items": []}')
    return fetcher


@pytest.fixture
def worker(conn: sqlite3.Connection, online: FakeFetcher) -> CacheWorker:
    """Create an installed and activated v2 worker."""
    w = CacheWorker(_config("v2"), conn, online)
    w.install()
    w.activate()
    return w


class TestCacheWorker:
    """Tests for CacheWorker."""

    def test_initial_state(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """A new worker is parsed and reports its version."""
        w = CacheWorker(_config("v2"), conn, online)
        assert w.state == STATE_PARSED
        assert w.version == "v2"

    def test_install_requests_skip_waiting(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """A successful install marks the worker ready to take over."""
        w = CacheWorker(_config("v2"), conn, online)
        w.install()
        assert w.state == STATE_INSTALLED
        assert w.skip_waiting_requested is True

    def test_install_without_skip_waiting(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """skip_waiting: false leaves the worker waiting."""
        w = CacheWorker(_config("v2", skip_waiting=False), conn, online)
        w.install()
        assert w.skip_waiting_requested is False

    def test_non_get_passes_through(self, worker: CacheWorker) -> None:
        """Non-GET requests are not intercepted."""
        assert worker.handle_fetch(Request(ORIGIN + "/api/save", method="POST")) is None

    def test_non_http_passes_through(self, worker: CacheWorker) -> None:
        """Non-http schemes are not intercepted."""
        assert worker.handle_fetch(Request("chrome-extension://abc/script.js")) is None

    def test_installed_asset_served_from_cache(self, worker: CacheWorker, online: FakeFetcher) -> None:
        """Pre-cached static assets do not hit the network."""
        online.calls.clear()

        response = worker.handle_fetch(Request(ORIGIN + "/src/js/core/app.js"))

        assert response is not None
        assert response.source == SOURCE_CACHE
        assert online.calls == []

    def test_data_endpoint_prefers_network(self, worker: CacheWorker) -> None:
        """Data endpoints are fetched live."""
        response = worker.handle_fetch(Request(ORIGIN + "/api/history"))

        assert response is not None
        assert response.source == SOURCE_NETWORK
        assert response.body == b'{"items": []}'

    def test_navigation_online_then_offline(self, worker: CacheWorker, online: FakeFetcher) -> None:
        """A navigation is served online, then from cache once offline."""
        request = Request(ORIGIN + "/index.html", destination="document")

        first = worker.handle_fetch(request)
        worker.wait_for_background(timeout=2.0)
        online.offline = True
        second = worker.handle_fetch(request)
        worker.wait_for_background(timeout=2.0)

        assert first is not None and second is not None
        assert first.status == 200
        assert second.status == 200
        assert second.body == b"/index.html content"

    def test_offline_unknown_navigation_gets_root_document(self, worker: CacheWorker, online: FakeFetcher) -> None:
        """Uncached navigations fall back to the root document when offline."""
        online.offline = True

        response = worker.handle_fetch(Request(ORIGIN + "/scan/history", destination="document"))

        assert response is not None
        assert response.status == 200
        assert response.source == SOURCE_OFFLINE
        assert response.body == b"/index.html content"

    def test_offline_data_request_gets_503(self, worker: CacheWorker, online: FakeFetcher) -> None:
        """Uncached data requests get the offline JSON response."""
        online.offline = True

        response = worker.handle_fetch(Request(ORIGIN + "/api/history"))

        assert response is not None
        assert response.status == 503
        assert json.loads(response.body)["error"] == "Offline"

    def test_unexpected_error_goes_to_resolver(self, worker: CacheWorker) -> None:
        """Unexpected strategy errors still produce a response."""
        with patch("swcache.strategies.NetworkFirst.handle", side_effect=RuntimeError("boom")):
            response = worker.handle_fetch(Request(ORIGIN + "/api/history"))

        assert response is not None
        assert response.status == 503

    def test_closed_store_still_serves_network_response(self, tmp_path: Path, online: FakeFetcher) -> None:
        """A cache write that fails at shutdown does not turn a network 200 into an offline response."""
        db = init_store(str(tmp_path / "closing.db"))
        w = CacheWorker(_config("v2"), db, online)
        w.install()
        w.activate()
        online.serve(ORIGIN + "/data.bin", b"payload")
        db.close()

        response = w.handle_fetch(Request(ORIGIN + "/data.bin"))

        assert response is not None
        assert response.status == 200
        assert response.source == SOURCE_NETWORK
        assert response.body == b"payload"


class TestRefresh:
    """Tests for refreshing the static partition."""

    def test_refresh_updates_static_assets(
        self, worker: CacheWorker, online: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        """Changed assets replace the installed copies."""
        online.serve(ORIGIN + "/index.html", b"new index")

        assert worker.refresh() == len(LOCAL)

        entry = get_entry(conn, "static-v2", Request(ORIGIN + "/index.html").key)
        assert entry is not None
        assert entry.body == b"new index"

    def test_failed_fetch_keeps_cached_copy(
        self, worker: CacheWorker, online: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        """Assets that cannot be fetched keep their previous entry."""
        online.failing.add(ORIGIN + "/index.html")
        online.serve(ORIGIN + "/src/js/core/app.js", b"broken", status=500)

        assert worker.refresh() == len(LOCAL) - 2

        entry = get_entry(conn, "static-v2", Request(ORIGIN + "/index.html").key)
        assert entry is not None
        assert entry.body == b"/index.html content"
        entry = get_entry(conn, "static-v2", Request(ORIGIN + "/src/js/core/app.js").key)
        assert entry is not None
        assert entry.body == b"/src/js/core/app.js content"

    def test_retired_worker_does_not_refresh(self, worker: CacheWorker, online: FakeFetcher) -> None:
        """A superseded generation neither fetches nor writes."""
        online.calls.clear()
        worker.retire()

        assert worker.refresh() == 0
        assert online.calls == []


class TestMessages:
    """Tests for the control message channel."""

    def test_get_version(self, worker: CacheWorker) -> None:
        """GET_VERSION replies with the active version."""
        assert worker.handle_message({"type": "GET_VERSION"}) == {"version": "v2"}

    def test_clear_cache(self, worker: CacheWorker, conn: sqlite3.Connection) -> None:
        """CLEAR_CACHE deletes every partition."""
        reply = worker.handle_message({"type": "CLEAR_CACHE"})

        assert reply is not None
        assert reply["cleared"] >= 1
        assert list_partitions(conn) == []

    def test_skip_waiting(self, worker: CacheWorker) -> None:
        """SKIP_WAITING is acknowledged."""
        assert worker.handle_message({"type": "SKIP_WAITING"}) == {"ok": True}
        assert worker.skip_waiting_requested is True

    def test_unknown_message(self, worker: CacheWorker) -> None:
        """Unknown messages are ignored."""
        assert worker.handle_message({"type": "PING"}) is None
        assert worker.handle_message({}) is None


class TestRegistration:
    """Tests for generation registration."""

    def test_first_worker_takes_control(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """The first installed worker becomes active and controlling."""
        registration = Registration()
        w = CacheWorker(_config("v1"), conn, online)

        assert registration.register(w) is True

        assert registration.active is w
        assert registration.controller is w
        assert w.state == STATE_ACTIVATED

    def test_first_worker_activates_without_skip_waiting(
        self, conn: sqlite3.Connection, online: FakeFetcher
    ) -> None:
        """With nothing active there is nobody to wait for."""
        registration = Registration()
        w = CacheWorker(_config("v1", skip_waiting=False), conn, online)

        registration.register(w)

        assert registration.active is w

    def test_new_generation_supersedes_and_prunes(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """A new version replaces the old one and deletes its partitions."""
        registration = Registration()
        old = CacheWorker(_config("v1"), conn, online)
        registration.register(old)
        new = CacheWorker(_config("v2"), conn, online)

        registration.register(new)

        assert registration.controller is new
        assert old.state == STATE_REDUNDANT
        assert not has_partition(conn, "static-v1")
        assert has_partition(conn, "static-v2")

    def test_failed_install_keeps_old_generation(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """An install failure leaves the active generation in charge."""
        registration = Registration()
        old = CacheWorker(_config("v1"), conn, online)
        registration.register(old)
        broken = CacheWorker(_config("v2", local=LOCAL + ("/missing.css",)), conn, online)

        assert registration.register(broken) is False

        assert registration.controller is old
        assert broken.state == STATE_REDUNDANT
        assert has_partition(conn, "static-v1")
        assert not has_partition(conn, "static-v2")
        response = registration.handle_fetch(Request(ORIGIN + "/src/js/core/app.js"))
        assert response is not None
        assert response.source == SOURCE_CACHE

    def test_waiting_until_skip_waiting_message(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """Without skip_waiting a new generation waits for the message."""
        registration = Registration()
        old = CacheWorker(_config("v1"), conn, online)
        registration.register(old)
        new = CacheWorker(_config("v2", skip_waiting=False), conn, online)

        registration.register(new)

        assert registration.waiting is new
        assert registration.controller is old
        assert has_partition(conn, "static-v1")

        assert registration.post_message({"type": "SKIP_WAITING"}) == {"ok": True}

        assert registration.waiting is None
        assert registration.controller is new
        assert not has_partition(conn, "static-v1")

    def test_messages_go_to_controller(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """Non-lifecycle messages are answered by the controlling worker."""
        registration = Registration()
        registration.register(CacheWorker(_config("v1"), conn, online))

        assert registration.post_message({"type": "GET_VERSION"}) == {"version": "v1"}

    def test_in_flight_request_does_not_recreate_pruned_partitions(
        self, conn: sqlite3.Connection, online: FakeFetcher
    ) -> None:
        """A fetch still running on the old generation when it is superseded writes nothing."""
        slow = FakeFetcher()
        for path in LOCAL:
            slow.serve(ORIGIN + path, f"{path} content".encode())
        slow.serve(ORIGIN + "/data.bin", b"payload")
        registration = Registration()
        registration.register(CacheWorker(_config("v1"), conn, slow))
        slow.gate = threading.Event()

        results = []
        thread = threading.Thread(
            target=lambda: results.append(registration.handle_fetch(Request(ORIGIN + "/data.bin")))
        )
        thread.start()
        deadline = time.monotonic() + 2.0
        while slow.count(ORIGIN + "/data.bin") == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

        registration.register(CacheWorker(_config("v2"), conn, online))
        slow.gate.set()
        thread.join(timeout=5.0)

        assert results[0] is not None
        assert results[0].status == 200
        assert results[0].body == b"payload"
        assert not any(name.endswith("-v1") for name in list_partitions(conn))
        assert has_partition(conn, "static-v2")

    def test_restore_previous_generation_after_failed_upgrade(
        self, conn: sqlite3.Connection, online: FakeFetcher
    ) -> None:
        """After a restart whose install fails, the generation left in the store serves offline requests."""
        Registration().register(CacheWorker(_config("v1"), conn, online))

        # Fresh process: nothing is active yet and the upgrade cannot install.
        registration = Registration()
        broken = CacheWorker(_config("v2", local=LOCAL + ("/missing.css",)), conn, online)
        assert registration.register(broken) is False
        assert registration.controller is None

        restored = recover_previous_generation(registration, _config("v2"), conn, online)

        assert restored is not None
        assert restored.version == "v1"
        assert registration.controller is restored
        assert restored.state == STATE_ACTIVATED
        online.offline = True
        response = registration.handle_fetch(Request(ORIGIN + "/", destination="document"))
        restored.wait_for_background(timeout=2.0)
        assert response is not None
        assert response.status == 200
        assert response.body == b"/ content"
        assert has_partition(conn, "static-v1")

    def test_nothing_to_restore(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """Without an older generation in the store nothing is restored."""
        registration = Registration()

        assert recover_previous_generation(registration, _config("v2"), conn, online) is None
        assert registration.controller is None

    def test_find_previous_version(self, conn: sqlite3.Connection, online: FakeFetcher) -> None:
        """The newest other generation with a static partition is found."""
        CacheWorker(_config("v1"), conn, online).install()
        CacheWorker(_config("v3"), conn, online).install()

        manifest = CacheWorker(_config("v4"), conn, online).manifest

        assert find_previous_version(conn, manifest) == "v3"

    def test_no_worker(self) -> None:
        """Without a controller requests pass through and messages are dropped."""
        registration = Registration()

        assert registration.handle_fetch(Request(ORIGIN + "/")) is None
        assert registration.post_message({"type": "GET_VERSION"}) is None
