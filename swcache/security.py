"""Host allow-list checks for the proxy front end."""

import logging
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

# Schemes the proxy is willing to forward.
ALLOWED_SCHEMES = ("http", "https")


class OriginNotAllowedError(Exception):
    """Raised when a proxied URL targets a host outside the allow-list."""

    pass


def build_allowed_hosts(origin: str, external_hosts: set[str], extra_hosts: tuple[str, ...] = ()) -> frozenset[str]:
    """Collect the hosts the proxy may reach: origin, asset libraries and extras."""
    hosts = {(urlsplit(origin).hostname or "").lower()}
    hosts.update(host.lower() for host in external_hosts)
    hosts.update(host.lower() for host in extra_hosts)
    hosts.discard("")
    return frozenset(hosts)


def validate_proxy_target(url: str, allowed_hosts: frozenset[str]) -> None:
    """Validate that a URL may be fetched through the proxy.

    Args:
        url: Absolute URL requested by a client.
        allowed_hosts: Lowercased host names that may be reached.

    Raises:
        OriginNotAllowedError: If the scheme or host is not allowed.
    """
    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise OriginNotAllowedError(f"Invalid URL format: {e}")

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise OriginNotAllowedError(
            f"Scheme '{parsed.scheme}' not allowed. Only http:// and https:// are permitted."
        )

    if not hostname:
        raise OriginNotAllowedError("No hostname in URL")

    if hostname.lower() not in allowed_hosts:
        logger.warning("Blocked proxy request to non-allowed host: %s", hostname)
        raise OriginNotAllowedError(f"Host not allowed: {hostname}")
