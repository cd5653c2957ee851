"""Data models for intercepted requests, responses and cache entries."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import urlsplit, urlunsplit

# Default ports dropped during URL normalization.
_DEFAULT_PORTS = {"http": 80, "https": 443}

# Where a response handed back to the requester came from.
SOURCE_NETWORK = "network"
SOURCE_CACHE = "cache"
SOURCE_OFFLINE = "offline"


def normalize_url(url: str) -> str:
    """Normalize a URL for use in a cache key.

    Lowercases scheme and host, drops default ports and the fragment, and
    turns an empty path into "/". The query string is kept as-is.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    netloc = host
    if parts.username:
        netloc = f"{parts.username}@{netloc}"
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def make_key(method: str, url: str) -> str:
    """Build a request key from an HTTP method and URL."""
    return f"{method.upper()} {normalize_url(url)}"


@dataclass(frozen=True)
class Request:
    """An intercepted resource request.

    Attributes:
        url: Absolute URL of the resource.
        method: HTTP method.
        destination: Destination hint (e.g. "document", "image"), or "" if unknown.
        headers: Request headers.
        body: Request body, only meaningful for bypassed non-GET requests.
    """

    url: str
    method: str = "GET"
    destination: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @property
    def key(self) -> str:
        """Cache key: method plus normalized URL."""
        return make_key(self.method, self.url)

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme.lower()

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


@dataclass(frozen=True)
class Response:
    """An HTTP-shaped response returned to the requester.

    Attributes:
        status: HTTP status code.
        headers: Response headers.
        body: Response body bytes.
        url: Final URL the response was served for.
        reason: HTTP reason phrase.
        source: Where the response came from (network, cache or offline).
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""
    reason: str = ""
    source: str = SOURCE_NETWORK

    @property
    def ok(self) -> bool:
        """Whether the status is in the 200 range."""
        return 200 <= self.status < 300


@dataclass(frozen=True)
class CacheEntry:
    """A captured response stored in a cache partition.

    Entries are never mutated in place; a newer response for the same key
    replaces the whole entry.
    """

    key: str
    status: int
    headers: dict[str, str]
    body: bytes
    captured_at: datetime
    url: str = ""
    reason: str = ""

    @classmethod
    def from_response(cls, key: str, response: Response, captured_at: datetime | None = None) -> "CacheEntry":
        """Capture a response for storage under the given key."""
        return cls(
            key=key,
            status=response.status,
            headers=dict(response.headers),
            body=response.body,
            captured_at=captured_at or datetime.now(UTC),
            url=response.url,
            reason=response.reason,
        )

    def to_response(self) -> Response:
        """Rebuild the stored response, marked as coming from the cache."""
        return Response(
            status=self.status,
            headers=dict(self.headers),
            body=self.body,
            url=self.url,
            reason=self.reason,
            source=SOURCE_CACHE,
        )
