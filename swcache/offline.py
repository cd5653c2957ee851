"""Offline fallback resolver.

Invoked only after a strategy has exhausted both cache and network. It
never raises: every request ends with some response.
"""

import json
import logging
import sqlite3
from urllib.parse import urljoin

from .config import OfflineConfig
from .manifest import VersionManifest
from .models import SOURCE_OFFLINE, Request, Response, make_key
from .routing import KIND_DOCUMENT, KIND_IMAGE, infer_kind
from .store import StoreError, match_entry

logger = logging.getLogger(__name__)


def _parse_accept_language(header: str) -> list[str]:
    """Return language tags from an Accept-Language header, best first."""
    weighted: list[tuple[float, int, str]] = []
    for index, part in enumerate(header.split(",")):
        part = part.strip()
        if not part:
            continue
        tag, _, params = part.partition(";")
        quality = 1.0
        params = params.strip()
        if params.startswith("q="):
            try:
                quality = float(params[2:])
            except ValueError:
                quality = 0.0
        if quality > 0 and tag.strip() != "*":
            weighted.append((-quality, index, tag.strip()))
    return [tag for _, _, tag in sorted(weighted)]


def select_message(messages: dict[str, str], accept_language: str, default_language: str) -> str:
    """Pick the offline message best matching the requester's languages.

    Exact tags win over primary-subtag matches; the default language is used
    when nothing matches.
    """
    by_lower = {lang.lower(): text for lang, text in messages.items()}
    for tag in _parse_accept_language(accept_language):
        text = by_lower.get(tag.lower())
        if text is not None:
            return text
        primary = tag.split("-")[0].lower()
        for lang, text in messages.items():
            if lang.split("-")[0].lower() == primary:
                return text
    return messages[default_language]


class OfflineFallbackResolver:
    """Produces a degraded response when both network and cache failed.

    Decision order:
    1. navigation/document -> cached root document, if present
    2. image -> cached placeholder icon, if present
    3. anything else -> 503 with a JSON {error, message} body
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        manifest: VersionManifest,
        origin: str,
        config: OfflineConfig | None = None,
    ) -> None:
        self._conn = conn
        self._manifest = manifest
        self._origin = origin
        self._config = config or OfflineConfig()

    def resolve(self, request: Request) -> Response:
        """Return a fallback response for a request. Never raises."""
        try:
            kind = infer_kind(request)
            if kind == KIND_DOCUMENT:
                cached = self._cached(self._config.root_document)
                if cached is not None:
                    logger.info("Offline: serving cached root document for %s", request.url)
                    return cached
            elif kind == KIND_IMAGE:
                cached = self._cached(self._config.placeholder_image)
                if cached is not None:
                    logger.info("Offline: serving placeholder image for %s", request.url)
                    return cached
        except Exception as e:
            logger.error("Offline fallback lookup failed for %s: %s", request.url, e)

        return self._offline_response(request)

    def _cached(self, path: str) -> Response | None:
        key = make_key("GET", urljoin(self._origin + "/", path))
        try:
            entry = match_entry(self._conn, key, self._manifest.partitions)
        except StoreError as e:
            logger.warning("Offline fallback could not read %s: %s", path, e)
            return None
        if entry is None:
            return None
        response = entry.to_response()
        return Response(
            status=response.status,
            headers=response.headers,
            body=response.body,
            url=response.url,
            reason=response.reason,
            source=SOURCE_OFFLINE,
        )

    def _offline_response(self, request: Request) -> Response:
        try:
            message = select_message(
                self._config.messages,
                request.header("Accept-Language"),
                self._config.default_language,
            )
        except Exception as e:
            logger.error("Failed to select offline message: %s", e)
            message = "Offline"

        body = json.dumps({"error": "Offline", "message": message}).encode("utf-8")
        return Response(
            status=503,
            headers={"Content-Type": "application/json"},
            body=body,
            url=request.url,
            reason="Service Unavailable",
            source=SOURCE_OFFLINE,
        )
