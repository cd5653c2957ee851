"""Network access for the caching layer."""

import logging

import requests

from .config import NetworkConfig
from .models import SOURCE_NETWORK, Request, Response

logger = logging.getLogger(__name__)

# Hop-by-hop and transfer headers that must not be replayed from a stored body.
_DROPPED_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "transfer-encoding",
    "content-encoding",
    "content-length",
}

# Request headers never forwarded upstream.
_DROPPED_REQUEST_HEADERS = {"host", "connection", "proxy-connection", "keep-alive", "content-length"}


class NetworkError(Exception):
    """Raised when a fetch fails at the transport level (offline, DNS, timeout)."""

    pass


class Fetcher:
    """Issues network fetches through a shared requests session.

    HTTP error statuses are returned as responses; only transport failures
    raise NetworkError. The configured timeout is the only deadline applied.
    """

    def __init__(self, config: NetworkConfig | None = None) -> None:
        self._config = config or NetworkConfig()
        self._session = requests.Session()
        self._session.headers["User-Agent"] = self._config.user_agent

    def fetch(self, request: Request) -> Response:
        """Fetch a request from the network.

        Args:
            request: The request to issue.

        Returns:
            The network response with redirects followed.

        Raises:
            NetworkError: If the request could not be completed.
        """
        headers = {
            name: value for name, value in request.headers.items() if name.lower() not in _DROPPED_REQUEST_HEADERS
        }
        try:
            resp = self._session.request(
                request.method,
                request.url,
                headers=headers,
                data=request.body,
                timeout=self._config.timeout,
                allow_redirects=True,
            )
        except requests.RequestException as e:
            logger.debug("Fetch failed for %s: %s", request.url, e)
            raise NetworkError(f"Fetch failed for {request.url}: {e}") from e

        return Response(
            status=resp.status_code,
            headers={
                name: value for name, value in resp.headers.items() if name.lower() not in _DROPPED_RESPONSE_HEADERS
            },
            body=resp.content,
            url=resp.url,
            reason=resp.reason or "",
            source=SOURCE_NETWORK,
        )

    def close(self) -> None:
        self._session.close()
