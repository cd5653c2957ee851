"""Cache worker service object and generation registration.

A CacheWorker is built once per generation and owns everything that
generation needs: the version manifest, the rule table, the strategy
executors and the offline resolver. A Registration decides which worker
is installed, waiting, active and in control of clients.
"""

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from .config import Config
from .lifecycle import InstallError, LifecycleManager
from .manifest import PartitionName, VersionManifest, build_manifests
from .models import Request, Response
from .network import Fetcher, NetworkError
from .offline import OfflineFallbackResolver
from .routing import build_rule_table, is_interceptable
from .strategies import BackgroundTasks, WriteGate, build_strategies
from .store import StoreError, list_partitions

logger = logging.getLogger(__name__)

STATE_PARSED = "parsed"
STATE_INSTALLING = "installing"
STATE_INSTALLED = "installed"
STATE_ACTIVATING = "activating"
STATE_ACTIVATED = "activated"
STATE_REDUNDANT = "redundant"

# Control messages accepted on the message channel.
MSG_SKIP_WAITING = "SKIP_WAITING"
MSG_GET_VERSION = "GET_VERSION"
MSG_CLEAR_CACHE = "CLEAR_CACHE"


class CacheWorker:
    """Intercepts resource requests for one cache generation."""

    def __init__(
        self,
        config: Config,
        conn: sqlite3.Connection,
        fetcher: Fetcher | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Application configuration.
            conn: Cache store connection.
            fetcher: Network fetcher; a requests-backed one is created if omitted.
        """
        self._config = config
        self._conn = conn
        self._fetcher = fetcher or Fetcher(config.network)
        self.manifest, self.assets = build_manifests(config)
        self.rules = build_rule_table(config.worker.origin, config.routes)
        self._tasks = BackgroundTasks()
        self._gate = WriteGate()
        self._strategies = build_strategies(
            conn, self.manifest, self._fetcher, config.expiration, self._tasks, self._gate
        )
        self._resolver = OfflineFallbackResolver(conn, self.manifest, config.worker.origin, config.offline)
        self.lifecycle = LifecycleManager(conn, self.manifest, self.assets, self._fetcher)

        self.state = STATE_PARSED
        self.skip_waiting_requested = False
        self.on_skip_waiting: Callable[["CacheWorker"], None] | None = None

    def __repr__(self) -> str:
        return f"<CacheWorker {self.version} {self.state}>"

    @property
    def version(self) -> str:
        return self.manifest.version

    def install(self) -> int:
        """Run the install phase and ask to supersede the previous generation.

        Raises:
            InstallError: If a mandatory asset could not be cached.
        """
        self.state = STATE_INSTALLING
        try:
            cached = self.lifecycle.install()
        except InstallError:
            self.state = STATE_REDUNDANT
            raise
        self.state = STATE_INSTALLED
        if self._config.worker.skip_waiting:
            # Ready to take over without waiting for existing clients to close.
            self.skip_waiting_requested = True
        return cached

    def activate(self) -> list[str]:
        """Run the activate phase, pruning partitions of other generations."""
        self.state = STATE_ACTIVATING
        try:
            return self.lifecycle.activate()
        finally:
            self.state = STATE_ACTIVATED

    def skip_waiting(self) -> None:
        self.skip_waiting_requested = True
        if self.on_skip_waiting is not None:
            self.on_skip_waiting(self)

    @property
    def retired(self) -> bool:
        return self._gate.closed

    def retire(self) -> None:
        """Stop cache writes from this generation.

        Requests already in flight still get their responses, but nothing
        they fetch is stored once this returns.
        """
        self._gate.close()

    def refresh(self) -> int:
        """Re-fetch the local assets into this generation's static partition."""
        if self.retired:
            return 0
        return self.lifecycle.refresh(self._gate)

    def handle_fetch(self, request: Request) -> Response | None:
        """Answer an intercepted request.

        Returns:
            A response from cache, network or the offline resolver, or None
            for requests that are not intercepted (non-GET, non-http).
        """
        if not is_interceptable(request):
            return None

        strategy = self._strategies[self.rules.select(request)]
        try:
            return strategy.handle(request)
        except (NetworkError, StoreError) as e:
            logger.info("%s failed for %s: %s", strategy.name, request.url, e)
        except Exception as e:
            logger.exception("Fetch error for %s: %s", request.url, e)
        return self._resolver.resolve(request)

    def handle_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Handle a control message and return the reply, if any."""
        msg_type = message.get("type") if isinstance(message, dict) else None

        if msg_type == MSG_SKIP_WAITING:
            self.skip_waiting()
            return {"ok": True}

        if msg_type == MSG_GET_VERSION:
            return {"version": self.version}

        if msg_type == MSG_CLEAR_CACHE:
            try:
                return {"cleared": self.lifecycle.clear_all()}
            except StoreError as e:
                logger.error("Error clearing caches: %s", e)
                return {"error": str(e)}

        logger.warning("Ignoring unknown message: %r", message)
        return None

    def wait_for_background(self, timeout: float | None = None) -> bool:
        """Wait for background revalidations to finish."""
        return self._tasks.join(timeout=timeout)


class Registration:
    """Tracks worker generations: which one is waiting, active and in control."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.active: CacheWorker | None = None
        self.waiting: CacheWorker | None = None
        self.controller: CacheWorker | None = None

    def register(self, worker: CacheWorker) -> bool:
        """Install a new generation and promote it when it is ready.

        On install failure the worker becomes redundant and the current
        active worker keeps serving.

        Returns:
            True if the worker was installed.
        """
        with self._lock:
            worker.on_skip_waiting = self._handle_skip_waiting
            try:
                worker.install()
            except InstallError as e:
                logger.error(
                    "Install of generation %s failed, keeping %s active: %s",
                    worker.version,
                    self.active.version if self.active else "no worker",
                    e,
                )
                return False

            if self.waiting is not None and self.waiting is not worker:
                self.waiting.state = STATE_REDUNDANT
            self.waiting = worker

            # With no active generation there is nobody to wait for.
            if worker.skip_waiting_requested or self.active is None:
                self._promote()
            return True

    def _handle_skip_waiting(self, worker: CacheWorker) -> None:
        with self._lock:
            if self.waiting is worker:
                self._promote()

    def _promote(self) -> None:
        worker = self.waiting
        if worker is None:
            return
        self.waiting = None
        previous = self.active

        # Take control of already-open clients without a reload. New requests
        # reach the new generation before the old one's partitions go away.
        self.active = worker
        self.controller = worker

        if previous is not None and previous is not worker:
            previous.retire()
            previous.wait_for_background(timeout=5.0)

        try:
            worker.activate()
        except StoreError as e:
            logger.error("Activation of %s could not prune old partitions: %s", worker.version, e)

        if previous is not None and previous is not worker:
            previous.state = STATE_REDUNDANT
        logger.info("Generation %s is now active", worker.version)

    def restore(self, worker: CacheWorker) -> None:
        """Put a generation that is already in the store back in control.

        The worker is not installed again; its partitions are used as they
        are. Used when an upgrade fails and nothing is active yet.
        """
        with self._lock:
            worker.on_skip_waiting = self._handle_skip_waiting
            worker.state = STATE_INSTALLED
            self.waiting = worker
            self._promote()

    def handle_fetch(self, request: Request) -> Response | None:
        """Route a request to the controlling worker; None means pass through."""
        controller = self.controller
        if controller is None:
            return None
        return controller.handle_fetch(request)

    def post_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Deliver a control message.

        SKIP_WAITING goes to the waiting worker when there is one; everything
        else goes to the controlling worker.
        """
        with self._lock:
            target = self.controller
            if isinstance(message, dict) and message.get("type") == MSG_SKIP_WAITING and self.waiting is not None:
                target = self.waiting
        if target is None:
            logger.warning("No worker to receive message: %r", message)
            return None
        return target.handle_message(message)


def find_previous_version(conn: sqlite3.Connection, manifest: VersionManifest) -> str | None:
    """Newest generation other than the manifest's that still has a static partition.

    Raises:
        StoreError: If partitions cannot be listed.
    """
    previous = None
    for name in list_partitions(conn):
        parsed = PartitionName.parse(name, manifest.prefix)
        if parsed is None or parsed.kind != "static" or parsed.version == manifest.version:
            continue
        previous = parsed.version
    return previous


def recover_previous_generation(
    registration: Registration,
    config: Config,
    conn: sqlite3.Connection,
    fetcher: Fetcher | None = None,
) -> CacheWorker | None:
    """Serve the generation left in the store after a failed install.

    Returns:
        The restored worker, or None if the store holds no other generation.
    """
    manifest, _ = build_manifests(config)
    try:
        version = find_previous_version(conn, manifest)
    except StoreError as e:
        logger.error("Could not look for a previous generation: %s", e)
        return None
    if version is None:
        return None

    previous_config = replace(config, worker=replace(config.worker, version=version))
    worker = CacheWorker(previous_config, conn, fetcher)
    registration.restore(worker)
    logger.warning("Serving previous generation %s from the cache store", version)
    return worker
