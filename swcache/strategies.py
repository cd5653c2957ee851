"""Caching strategy executors.

Three policies decide how a request is satisfied from the current
generation's partitions versus the network:

- Cache-first: cached entry when present, network only on a miss.
- Network-first: live network response, cache only when the network fails.
- Stale-while-revalidate: cached entry immediately, refreshed in background.

Executors raise NetworkError when they cannot produce a response; the
worker then hands the request to the offline fallback resolver.
"""

import logging
import sqlite3
import threading
from collections.abc import Callable

from .config import ExpirationPolicy
from .manifest import VersionManifest
from .models import CacheEntry, Request, Response
from .network import Fetcher, NetworkError
from .routing import CACHE_FIRST, NETWORK_FIRST, STALE_WHILE_REVALIDATE
from .store import StoreError, match_entry, put_entry

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Detached daemon threads whose failures never reach a caller.

    Threads are tracked so shutdown (and tests) can wait for them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def spawn(self, target: Callable[..., None], *args: object, name: str = "background-task") -> threading.Thread:
        """Run target(*args) on a daemon thread, swallowing any exception."""

        def _run() -> None:
            try:
                target(*args)
            except Exception as e:
                logger.debug("Background task %s failed: %s", name, e)

        thread = threading.Thread(target=_run, name=name, daemon=True)
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for t in self._threads if t.is_alive())

    def join(self, timeout: float | None = None) -> bool:
        """Wait for tracked threads. Returns True if none are still running."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=timeout)
        return all(not t.is_alive() for t in threads)


class WriteGate:
    """Lets a worker generation stop writing once it has been superseded.

    Writes run under the gate's lock, so after close() returns no write
    from this generation is in progress and none will start.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def run(self, action: Callable[[], None]) -> bool:
        """Run action unless the gate is closed. Returns False if skipped."""
        with self._lock:
            if self._closed:
                return False
            action()
            return True


class Strategy:
    """Base executor: shared cache lookup and write helpers."""

    name = ""
    write_kind = ""

    def __init__(
        self,
        conn: sqlite3.Connection,
        manifest: VersionManifest,
        fetcher: Fetcher,
        policies: dict[str, ExpirationPolicy] | None = None,
        gate: WriteGate | None = None,
    ) -> None:
        self._conn = conn
        self._manifest = manifest
        self._fetcher = fetcher
        self._policies = policies or {}
        self._gate = gate or WriteGate()

    def handle(self, request: Request) -> Response:
        raise NotImplementedError

    def _partition_policies(self) -> dict[str, ExpirationPolicy]:
        return {self._manifest.partition(kind): policy for kind, policy in self._policies.items()}

    def _lookup(self, request: Request) -> Response | None:
        """Look up the freshest current-generation entry; read failures count as misses."""
        try:
            entry = match_entry(self._conn, request.key, self._manifest.partitions, self._partition_policies())
        except StoreError as e:
            logger.warning("Cache lookup failed for %s: %s", request.url, e)
            return None
        return entry.to_response() if entry is not None else None

    def _store(self, request: Request, response: Response) -> None:
        """Store an ok response in this strategy's partition; write failures are logged and ignored."""
        if not response.ok:
            return
        partition = self._manifest.partition(self.write_kind)
        entry = CacheEntry.from_response(request.key, response)
        policy = self._policies.get(self.write_kind)
        try:
            written = self._gate.run(lambda: put_entry(self._conn, partition, entry, policy))
        except StoreError as e:
            logger.warning("Cache write failed for %s: %s", request.url, e)
            return
        if not written:
            logger.debug("Generation %s is retired, not caching %s", self._manifest.version, request.url)


class CacheFirst(Strategy):
    """Serve from cache when present; on a miss fetch and store in the dynamic partition.

    Concurrent misses for the same key are not coalesced.
    """

    name = CACHE_FIRST
    write_kind = "dynamic"

    def handle(self, request: Request) -> Response:
        cached = self._lookup(request)
        if cached is not None:
            return cached

        response = self._fetcher.fetch(request)
        self._store(request, response)
        return response


class NetworkFirst(Strategy):
    """Prefer the network; store in the runtime partition; fall back to cache when offline."""

    name = NETWORK_FIRST
    write_kind = "runtime"

    def handle(self, request: Request) -> Response:
        try:
            response = self._fetcher.fetch(request)
        except NetworkError:
            logger.info("Network failed, trying cache: %s", request.url)
            cached = self._lookup(request)
            if cached is not None:
                return cached
            raise

        self._store(request, response)
        return response


class StaleWhileRevalidate(Strategy):
    """Serve the cached entry at once and refresh it on a background thread.

    Without a cached entry the caller waits for the network.
    """

    name = STALE_WHILE_REVALIDATE
    write_kind = "static"

    def __init__(
        self,
        conn: sqlite3.Connection,
        manifest: VersionManifest,
        fetcher: Fetcher,
        policies: dict[str, ExpirationPolicy] | None = None,
        tasks: BackgroundTasks | None = None,
        gate: WriteGate | None = None,
    ) -> None:
        super().__init__(conn, manifest, fetcher, policies, gate)
        self._tasks = tasks or BackgroundTasks()

    def handle(self, request: Request) -> Response:
        cached = self._lookup(request)
        if cached is not None:
            self._tasks.spawn(self._revalidate, request, name=f"revalidate {request.url}")
            return cached

        response = self._fetcher.fetch(request)
        self._store(request, response)
        return response

    def _revalidate(self, request: Request) -> None:
        try:
            response = self._fetcher.fetch(request)
        except NetworkError as e:
            logger.debug("Background revalidation failed for %s: %s", request.url, e)
            return
        self._store(request, response)


def build_strategies(
    conn: sqlite3.Connection,
    manifest: VersionManifest,
    fetcher: Fetcher,
    policies: dict[str, ExpirationPolicy] | None = None,
    tasks: BackgroundTasks | None = None,
    gate: WriteGate | None = None,
) -> dict[str, Strategy]:
    """Create one executor per strategy identifier, sharing one write gate."""
    gate = gate or WriteGate()
    return {
        CACHE_FIRST: CacheFirst(conn, manifest, fetcher, policies, gate),
        NETWORK_FIRST: NetworkFirst(conn, manifest, fetcher, policies, gate),
        STALE_WHILE_REVALIDATE: StaleWhileRevalidate(conn, manifest, fetcher, policies, tasks, gate),
    }
