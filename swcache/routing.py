"""Strategy rule table: maps each intercepted request to a caching strategy."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import urlsplit

from .config import RoutesConfig
from .models import Request

logger = logging.getLogger(__name__)

# Strategy identifiers.
CACHE_FIRST = "cache-first"
NETWORK_FIRST = "network-first"
STALE_WHILE_REVALIDATE = "stale-while-revalidate"

STRATEGIES = (CACHE_FIRST, NETWORK_FIRST, STALE_WHILE_REVALIDATE)

# Resource kinds.
KIND_DOCUMENT = "document"
KIND_IMAGE = "image"
KIND_SCRIPT = "script"
KIND_STYLE = "style"
KIND_FONT = "font"
KIND_OTHER = "other"

STATIC_KINDS = (KIND_SCRIPT, KIND_STYLE, KIND_IMAGE, KIND_FONT)

_DESTINATION_KINDS = {
    "document": KIND_DOCUMENT,
    "iframe": KIND_DOCUMENT,
    "frame": KIND_DOCUMENT,
    "image": KIND_IMAGE,
    "script": KIND_SCRIPT,
    "worker": KIND_SCRIPT,
    "style": KIND_STYLE,
    "font": KIND_FONT,
}

_EXTENSION_KINDS = {
    ".html": KIND_DOCUMENT,
    ".htm": KIND_DOCUMENT,
    ".js": KIND_SCRIPT,
    ".mjs": KIND_SCRIPT,
    ".css": KIND_STYLE,
    ".png": KIND_IMAGE,
    ".jpg": KIND_IMAGE,
    ".jpeg": KIND_IMAGE,
    ".gif": KIND_IMAGE,
    ".svg": KIND_IMAGE,
    ".webp": KIND_IMAGE,
    ".ico": KIND_IMAGE,
    ".woff": KIND_FONT,
    ".woff2": KIND_FONT,
    ".ttf": KIND_FONT,
    ".otf": KIND_FONT,
}


def is_interceptable(request: Request) -> bool:
    """Only GET requests over http(s) are intercepted; everything else passes through."""
    return request.method.upper() == "GET" and request.scheme in ("http", "https")


def infer_kind(request: Request) -> str:
    """Infer the resource kind from the destination hint, falling back to the URL."""
    if request.destination:
        return _DESTINATION_KINDS.get(request.destination.lower(), KIND_OTHER)
    if request.header("Sec-Fetch-Mode").lower() == "navigate":
        return KIND_DOCUMENT

    path = urlsplit(request.url).path or "/"
    if path.endswith("/"):
        return KIND_DOCUMENT
    return _EXTENSION_KINDS.get(PurePosixPath(path).suffix.lower(), KIND_OTHER)


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port or (443 if scheme == "https" else 80)
    return f"{scheme}://{host}:{port}"


def pattern_matches(pattern: str, url: str) -> bool:
    """Check a route pattern against a URL.

    Patterns starting with http(s):// match a URL prefix, patterns starting
    with "/" match a path prefix, anything else matches a path suffix.
    """
    if pattern.startswith(("http://", "https://")):
        return url.startswith(pattern)
    path = urlsplit(url).path
    if pattern.startswith("/"):
        return path.startswith(pattern)
    return path.lower().endswith(pattern.lower())


@dataclass(frozen=True)
class RouteInfo:
    """What a matcher gets to see about a request."""

    request: Request
    kind: str
    same_origin: bool


@dataclass(frozen=True)
class StrategyRule:
    """A (matcher, strategy) binding."""

    name: str
    matcher: Callable[[RouteInfo], bool]
    strategy: str


class RuleTable:
    """Ordered rule list, evaluated top to bottom, first match wins.

    Immutable once built; unmatched requests use the default strategy.
    """

    def __init__(self, origin: str, rules: list[StrategyRule], default: str = CACHE_FIRST) -> None:
        for rule in rules:
            if rule.strategy not in STRATEGIES:
                raise ValueError(f"Unknown strategy '{rule.strategy}' in rule '{rule.name}'")
        if default not in STRATEGIES:
            raise ValueError(f"Unknown default strategy '{default}'")
        self._origin = _origin_of(origin)
        self._rules = tuple(rules)
        self._default = default

    @property
    def rules(self) -> tuple[StrategyRule, ...]:
        return self._rules

    @property
    def default(self) -> str:
        return self._default

    def route_info(self, request: Request) -> RouteInfo:
        return RouteInfo(
            request=request,
            kind=infer_kind(request),
            same_origin=_origin_of(request.url) == self._origin,
        )

    def select(self, request: Request) -> str:
        """Return the strategy identifier for a request."""
        info = self.route_info(request)
        for rule in self._rules:
            if rule.matcher(info):
                logger.debug("%s matched rule '%s' -> %s", request.url, rule.name, rule.strategy)
                return rule.strategy
        return self._default


def build_rule_table(origin: str, routes: RoutesConfig) -> RuleTable:
    """Build the standard rule table.

    1. data endpoints (network_first patterns) -> network-first
    2. same-origin navigation/document -> stale-while-revalidate
    3. same-origin static assets, or cache_first patterns -> cache-first
    4. cross-origin (CDN/library) -> network-first
    default -> cache-first
    """

    def is_data_endpoint(info: RouteInfo) -> bool:
        return any(pattern_matches(p, info.request.url) for p in routes.network_first)

    def is_navigation(info: RouteInfo) -> bool:
        return info.same_origin and info.kind == KIND_DOCUMENT

    def is_static_asset(info: RouteInfo) -> bool:
        if info.same_origin and info.kind in STATIC_KINDS:
            return True
        return any(pattern_matches(p, info.request.url) for p in routes.cache_first)

    def is_cross_origin(info: RouteInfo) -> bool:
        return not info.same_origin

    return RuleTable(
        origin,
        [
            StrategyRule("data-endpoint", is_data_endpoint, NETWORK_FIRST),
            StrategyRule("navigation", is_navigation, STALE_WHILE_REVALIDATE),
            StrategyRule("static-asset", is_static_asset, CACHE_FIRST),
            StrategyRule("cross-origin", is_cross_origin, NETWORK_FIRST),
        ],
        default=CACHE_FIRST,
    )
