"""HTTP proxy front end that feeds real traffic through the cache worker."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

from .config import Config
from .manifest import build_manifests
from .models import Request, Response
from .network import Fetcher, NetworkError
from .security import OriginNotAllowedError, build_allowed_hosts, validate_proxy_target
from .worker import Registration

logger = logging.getLogger(__name__)

# Control endpoints, only reachable with origin-relative paths.
CONTROL_PREFIX = "/__swcache"
HEALTH_PATH = f"{CONTROL_PREFIX}/health"
MESSAGE_PATH = f"{CONTROL_PREFIX}/message"

# Maximum accepted request body size (10MB).
MAX_REQUEST_BODY = 10 * 1024 * 1024

# Response headers recomputed by the proxy instead of copied.
_SKIPPED_RESPONSE_HEADERS = {"connection", "keep-alive", "transfer-encoding", "content-length", "content-encoding"}

SOURCE_BYPASS = "bypass"


class ProxyError(Exception):
    """Raised when the proxy server fails to start."""

    pass


class RequestBodyError(Exception):
    """Raised when a request body cannot be read; carries the HTTP status to send."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class ProxyHandler(BaseHTTPRequestHandler):
    """Translates HTTP requests into worker fetches."""

    # Class-level references set by factory
    registration: Optional[Registration] = None
    fetcher: Optional[Fetcher] = None
    origin: str = ""
    allowed_hosts: frozenset = frozenset()

    protocol_version = "HTTP/1.1"

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _send_response(self, response: Response, source: str) -> None:
        """Relay a worker or network response to the client."""
        self.send_response(response.status, response.reason or None)
        for name, value in response.headers.items():
            if name.lower() not in _SKIPPED_RESPONSE_HEADERS:
                self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("X-Cache-Source", source)
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _target_url(self) -> str:
        if self.path.startswith(("http://", "https://")):
            return self.path
        return self.origin + self.path

    def _read_body(self) -> Optional[bytes]:
        raw_length = self.headers.get("Content-Length") or "0"
        try:
            length = int(raw_length)
        except ValueError:
            raise RequestBodyError(400, f"Invalid Content-Length: {raw_length!r}")
        if length <= 0:
            return None
        if length > MAX_REQUEST_BODY:
            raise RequestBodyError(413, f"Request body too large ({length} bytes)")
        return self.rfile.read(length)

    def _build_request(self, url: str, body: Optional[bytes]) -> Request:
        destination = self.headers.get("Sec-Fetch-Dest", "")
        if destination == "empty":
            destination = ""
        return Request(
            url=url,
            method=self.command,
            destination=destination,
            headers=dict(self.headers.items()),
            body=body,
        )

    def _handle(self) -> None:
        try:
            if self.path == HEALTH_PATH:
                self._handle_health()
                return
            if self.path == MESSAGE_PATH:
                self._handle_message()
                return

            url = self._target_url()
            try:
                validate_proxy_target(url, self.allowed_hosts)
            except OriginNotAllowedError as e:
                self._send_error_json(403, str(e))
                return

            try:
                body = self._read_body()
            except RequestBodyError as e:
                self._send_error_json(e.status, str(e))
                return

            request = self._build_request(url, body)
            response = self.registration.handle_fetch(request) if self.registration else None
            if response is not None:
                self._send_response(response, response.source)
                return

            # Not intercepted: plain network passthrough.
            try:
                response = self.fetcher.fetch(request)
            except NetworkError as e:
                logger.warning("Passthrough failed for %s %s: %s", request.method, url, e)
                self._send_error_json(502, "Upstream unavailable")
                return
            self._send_response(response, SOURCE_BYPASS)

        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _handle_health(self) -> None:
        """Handle GET /__swcache/health."""
        controller = self.registration.controller if self.registration else None
        self._send_json(
            200,
            {
                "status": "ok",
                "version": controller.version if controller else None,
                "state": controller.state if controller else None,
            },
        )

    def _handle_message(self) -> None:
        """Handle POST /__swcache/message - deliver a control message to the worker."""
        if self.command != "POST":
            self._send_error_json(405, "Method not allowed")
            return

        try:
            raw = self._read_body() or b""
        except RequestBodyError as e:
            self._send_error_json(e.status, str(e))
            return
        try:
            message = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            self._send_error_json(400, "Message must be a JSON object")
            return
        if not isinstance(message, dict):
            self._send_error_json(400, "Message must be a JSON object")
            return

        reply = self.registration.post_message(message) if self.registration else None
        if reply is None:
            self._send_error_json(400, f"Unsupported message type: {message.get('type')!r}")
            return
        self._send_json(200, reply)

    do_GET = _handle
    do_HEAD = _handle
    do_POST = _handle
    do_PUT = _handle
    do_PATCH = _handle
    do_DELETE = _handle
    do_OPTIONS = _handle


def _create_handler_class(
    registration: Registration,
    fetcher: Fetcher,
    origin: str,
    allowed_hosts: frozenset,
) -> type:
    """Create a handler class with the registration and settings bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.registration = registration
    BoundProxyHandler.fetcher = fetcher
    BoundProxyHandler.origin = origin
    BoundProxyHandler.allowed_hosts = allowed_hosts
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP proxy in front of the application origin."""

    def __init__(
        self,
        config: Config,
        registration: Registration,
        fetcher: Optional[Fetcher] = None,
    ) -> None:
        """Initialize the proxy server.

        Args:
            config: Application configuration.
            registration: Worker registration answering intercepted requests.
            fetcher: Fetcher for requests the worker does not intercept.
        """
        self.config = config
        self.registration = registration
        self._fetcher = fetcher or Fetcher(config.network)
        _, assets = build_manifests(config)
        self._allowed_hosts = build_allowed_hosts(
            config.worker.origin,
            assets.external_hosts,
            config.proxy.allowed_hosts,
        )
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    @property
    def port(self) -> int:
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.proxy.port

    def start(self) -> None:
        """Start the proxy server in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        port = self.config.proxy.port
        try:
            handler_class = _create_handler_class(
                self.registration,
                self._fetcher,
                self.config.worker.origin,
                self._allowed_hosts,
            )
            self._server = ThreadingHTTPServer((self.config.proxy.host, port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on %s:%d for %s", self.config.proxy.host, port, self.config.worker.origin)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {port} is already in use. "
                    f"Another process may be using this port, or swcache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
