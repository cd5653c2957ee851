"""Periodic refresh of the static partition.

Re-fetches the local assets into whichever generation is in control, so a
long-running process picks up changed files without a new version tag.
Each pass is best-effort: failures keep the copies already cached.
"""

import logging
from threading import Event, Thread

from .store import StoreError
from .worker import Registration

logger = logging.getLogger(__name__)


class StaticRefresher:
    """Runs static asset refreshes on a fixed interval in a background thread."""

    def __init__(self, registration: Registration, interval: float) -> None:
        """Initialize the refresher.

        Args:
            registration: Registration whose controlling worker is refreshed.
            interval: Seconds between refresh passes.
        """
        self._registration = registration
        self._interval = interval
        self._stop_event = Event()
        self._thread: Thread | None = None

    def start(self) -> None:
        """Start the refresh loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Refresher already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="refresh-loop")
        self._thread.start()
        logger.info("Static refresh started, every %s seconds", self._interval)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the refresh loop.

        Args:
            timeout: Maximum seconds to wait for the loop to stop.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Refresh thread did not stop within timeout")
        else:
            logger.info("Static refresh stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> int:
        """Refresh the controlling worker once.

        Returns:
            Number of assets refreshed; 0 when no worker is in control.
        """
        worker = self._registration.controller
        if worker is None:
            return 0
        try:
            return worker.refresh()
        except StoreError as e:
            logger.warning("Static refresh of %s failed: %s", worker.version, e)
            return 0

    def _run_loop(self) -> None:
        logger.debug("Refresh loop started")

        # The first pass waits a full interval; install has just cached everything.
        while not self._stop_event.wait(timeout=self._interval):
            try:
                self.tick()
            except Exception as e:
                logger.error("Unexpected error in refresh loop: %s", e)

        logger.debug("Refresh loop exited")
