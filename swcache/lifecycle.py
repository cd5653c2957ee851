"""Install and activate phases of a worker generation.

Install pre-warms the static partition from the asset manifest. Local
assets are all-or-nothing: if any of them cannot be fetched the install
fails and nothing is written, so the previous generation stays in charge.
External library URLs are cached best-effort.

Activate garbage-collects partitions that are not part of the current
version manifest. Each deletion is independent.

Refresh re-fetches the local assets into the static partition on a
schedule, best-effort, so a long-running generation picks up changes.
"""

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor, as_completed

from .manifest import AssetManifest, VersionManifest
from .models import CacheEntry, Request, Response
from .network import Fetcher, NetworkError
from .store import (
    StoreError,
    delete_all_partitions,
    delete_partition,
    has_partition,
    list_partitions,
    open_partition,
    put_entries,
    put_entry,
)
from .strategies import WriteGate

logger = logging.getLogger(__name__)

# Concurrent fetches while pre-warming the cache at install time.
INSTALL_WORKERS = 4


class InstallError(Exception):
    """Raised when a mandatory asset cannot be cached during install."""

    pass


class LifecycleManager:
    """Drives installation and activation for one generation."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        manifest: VersionManifest,
        assets: AssetManifest,
        fetcher: Fetcher,
    ) -> None:
        self._conn = conn
        self._manifest = manifest
        self._assets = assets
        self._fetcher = fetcher

    def _fetch_all(self, urls: list[str]) -> dict[str, Response | Exception]:
        """Fetch URLs concurrently; each maps to its response or the error it raised."""
        results: dict[str, Response | Exception] = {}
        if not urls:
            return results

        with ThreadPoolExecutor(max_workers=INSTALL_WORKERS) as executor:
            futures = {executor.submit(self._fetcher.fetch, Request(url)): url for url in urls}
            for future in as_completed(futures):
                url = futures[future]
                try:
                    results[url] = future.result()
                except Exception as e:
                    if not isinstance(e, NetworkError):
                        logger.error("Unexpected error fetching %s: %s", url, e)
                    results[url] = e
        return results

    def install(self) -> int:
        """Populate the static partition from the asset manifest.

        Returns:
            Number of entries cached.

        Raises:
            InstallError: If any local asset could not be fetched or stored.
        """
        static = self._manifest.partition("static")
        logger.info("Installing generation %s into %s", self._manifest.version, static)

        try:
            created = not has_partition(self._conn, static)
            open_partition(self._conn, static)
        except StoreError as e:
            raise InstallError(f"Cannot open partition {static}: {e}")

        local_urls = self._assets.local_urls
        results = self._fetch_all(local_urls)

        failures: list[str] = []
        entries: list[CacheEntry] = []
        for url in local_urls:
            result = results[url]
            if isinstance(result, Exception):
                failures.append(f"{url} ({result})")
            elif not result.ok:
                failures.append(f"{url} (HTTP {result.status})")
            else:
                entries.append(CacheEntry.from_response(Request(url).key, result))

        if failures:
            self._discard(static, created)
            raise InstallError(f"Failed to cache {len(failures)} local asset(s): {', '.join(failures)}")

        try:
            put_entries(self._conn, static, entries)
        except StoreError as e:
            self._discard(static, created)
            raise InstallError(f"Failed to store local assets: {e}")

        cached = len(entries)
        external_urls = list(self._assets.external)
        for url, result in self._fetch_all(external_urls).items():
            if isinstance(result, Exception):
                logger.warning("Failed to cache external asset %s: %s", url, result)
                continue
            if not result.ok:
                logger.warning("Failed to cache external asset %s: HTTP %d", url, result.status)
                continue
            try:
                put_entry(self._conn, static, CacheEntry.from_response(Request(url).key, result))
                cached += 1
            except StoreError as e:
                logger.warning("Failed to store external asset %s: %s", url, e)

        logger.info("Installation complete: %d entries cached in %s", cached, static)
        return cached

    def refresh(self, gate: WriteGate | None = None) -> int:
        """Re-fetch local assets into the current static partition, best-effort.

        Failed or non-ok fetches keep the previously cached copy. Nothing is
        written once the gate is closed.

        Returns:
            Number of entries refreshed.
        """
        static = self._manifest.partition("static")
        gate = gate or WriteGate()
        refreshed = 0
        for url, result in self._fetch_all(self._assets.local_urls).items():
            if isinstance(result, Exception):
                logger.debug("Refresh of %s failed: %s", url, result)
                continue
            if not result.ok:
                logger.debug("Refresh of %s returned HTTP %d", url, result.status)
                continue
            entry = CacheEntry.from_response(Request(url).key, result)
            try:
                if not gate.run(lambda: put_entry(self._conn, static, entry)):
                    logger.debug("Generation %s is retired, stopping refresh", self._manifest.version)
                    break
            except StoreError as e:
                logger.warning("Failed to store refreshed asset %s: %s", url, e)
                continue
            refreshed += 1

        logger.info("Refreshed %d of %d static assets in %s", refreshed, len(self._assets.local), static)
        return refreshed

    def _discard(self, partition: str, created: bool) -> None:
        if not created:
            return
        try:
            delete_partition(self._conn, partition)
        except StoreError as e:
            logger.error("Failed to discard partition %s after failed install: %s", partition, e)

    def activate(self) -> list[str]:
        """Delete partitions that are not part of the current generation.

        Partitions outside the manifest's prefix namespace are left alone.

        Returns:
            Names of the deleted partitions.

        Raises:
            StoreError: If the partitions cannot be listed.
        """
        logger.info("Activating generation %s", self._manifest.version)

        deleted: list[str] = []
        for name in list_partitions(self._conn):
            if not self._manifest.owns(name) or self._manifest.is_current(name):
                continue
            try:
                delete_partition(self._conn, name)
                deleted.append(name)
                logger.info("Deleted old partition: %s", name)
            except StoreError as e:
                logger.error("Failed to delete partition %s: %s", name, e)

        logger.info("Activation complete")
        return deleted

    def clear_all(self) -> int:
        """Delete every partition regardless of generation."""
        count = delete_all_partitions(self._conn)
        logger.info("All caches cleared (%d partitions)", count)
        return count
