"""HTTP server for the status dashboard and its JSON API."""

import errno
import json
import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlsplit

from ._dashboard import FALLBACK_ICON_SVG, HTML_DASHBOARD, render_error_page
from .config import Config
from .icon import FALLBACK_ICON_PATH, proxy_icon
from .normalize import calculate_monitor_status_counts
from .security import validate_page_id
from .services import DataService
from .tabs import (
    AllPagesUnavailableError,
    PageUnavailableError,
    assert_global_availability,
    assert_page_availability,
    build_page_tabs,
    parse_error_details,
)

logger = logging.getLogger(__name__)

# Rate limiting configuration.
# Allows 60 requests per minute per IP, sufficient for normal dashboard
# refresh cycles while protecting against DoS attacks.
RATE_LIMIT_MAX_REQUESTS = 60
RATE_LIMIT_WINDOW_SECONDS = 60

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
PUBLIC_CACHE_HEADERS = {"Cache-Control": "public, s-maxage=60, stale-while-revalidate=30"}
ICON_CACHE_HEADERS = {"Cache-Control": "public, max-age=300, s-maxage=300, stale-while-revalidate=600"}


class RateLimiter:
    """Simple sliding window rate limiter by IP address.

    Allows up to max_requests requests per IP within the time window.
    Thread-safe for use in multi-threaded HTTP server.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def is_allowed(self, client_ip: str) -> bool:
        """Check if a request from the given IP is allowed.

        Args:
            client_ip: The client's IP address.

        Returns:
            True if the request is allowed, False if rate limited.
        """
        now = time.monotonic()
        cutoff = now - self._window_seconds

        with self._lock:
            timestamps = self._requests[client_ip]
            timestamps[:] = [ts for ts in timestamps if ts > cutoff]

            if len(timestamps) >= self._max_requests:
                return False

            timestamps.append(now)
            return True

    def cleanup(self) -> None:
        """Remove stale entries from the rate limiter."""
        now = time.monotonic()
        cutoff = now - self._window_seconds

        with self._lock:
            empty_ips = []
            for ip, timestamps in self._requests.items():
                timestamps[:] = [ts for ts in timestamps if ts > cutoff]
                if not timestamps:
                    empty_ips.append(ip)
            for ip in empty_ips:
                del self._requests[ip]


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


def frame_headers(allow_embedding: str) -> Dict[str, str]:
    """Build the framing headers for an ``allow_embedding`` setting.

    Empty or ``false`` keeps pages same-origin only, ``true`` allows any
    ancestor and a comma list allows those origins (bare hosts get https).
    """
    value = allow_embedding.strip()
    if not value or value == "false":
        return {"X-Frame-Options": "SAMEORIGIN"}
    if value == "true":
        return {"Content-Security-Policy": "frame-ancestors 'self' *;"}

    origins = [
        origin if origin.startswith("http") else f"https://{origin}"
        for origin in (item.strip() for item in value.split(","))
        if origin
    ]
    if not origins:
        return {"X-Frame-Options": "SAMEORIGIN"}
    return {"Content-Security-Policy": f"frame-ancestors 'self' {' '.join(origins)};"}


def _timestamp() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


def _with_failure(payload: Dict[str, Any], failure_type: Optional[str], error: Optional[str]) -> Dict[str, Any]:
    if failure_type is not None:
        payload["failureType"] = failure_type
    if error is not None:
        payload["error"] = error
    payload["timestamp"] = _timestamp()
    return payload


def build_pages_response(service: DataService) -> Dict[str, Any]:
    """Envelope for GET /api/pages."""
    result = build_page_tabs(service)
    return {
        "tabs": [tab.to_dict() for tab in result.tabs],
        "matrix": result.matrix.to_dict(),
        "success": result.matrix.status != "all_failed",
        "status": result.matrix.status,
        "timestamp": _timestamp(),
    }


def build_config_response(service: DataService, page_id: Optional[str]) -> Dict[str, Any]:
    """Envelope for GET /api/config."""
    result = service.get_global_config(page_id)
    return _with_failure(
        {
            "config": result.config,
            "incident": result.incident,
            "maintenanceList": result.maintenance_list,
            "success": result.success,
            "status": result.status,
            "features": {
                "editThisPage": service.config.features.edit_this_page,
                "showStarButton": service.config.features.show_star_button,
            },
        },
        result.failure_type,
        result.error,
    )


def build_monitor_response(service: DataService, page_id: Optional[str]) -> Dict[str, Any]:
    """Envelope for GET /api/monitor."""
    result = service.get_monitoring_data(page_id)
    counts = calculate_monitor_status_counts(result.monitor_groups, result.heartbeat_list)
    return _with_failure(
        {
            "monitorGroups": result.monitor_groups,
            "heartbeatList": result.heartbeat_list,
            "uptimeList": result.uptime_list,
            "counts": asdict(counts),
            "success": result.success,
            "status": result.status,
        },
        result.failure_type,
        result.error,
    )


class StatusHandler(BaseHTTPRequestHandler):
    """HTTP request handler for dashboard and API endpoints."""

    # Class-level references set by factory
    app_config: Optional[Config] = None
    rate_limiter: Optional[RateLimiter] = None
    framing_headers: Dict[str, str] = {}

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def end_headers(self) -> None:
        for name, value in self.framing_headers.items():
            self.send_header(name, value)
        super().end_headers()

    def _check_rate_limit(self) -> bool:
        """Check if the request should be rate limited.

        Returns:
            True if request is allowed, False if rate limited.
            Sends 429 response automatically if rate limited.
        """
        if self.rate_limiter is None:
            return True

        client_ip = self.client_address[0]
        if not self.rate_limiter.is_allowed(client_ip):
            logger.warning("Rate limit exceeded for %s", client_ip)
            self._send_error_json(429, "Rate limit exceeded. Try again later.")
            return False
        return True

    def _send_body(self, code: int, body: bytes, content_type: str, headers: Optional[Dict[str, str]] = None) -> None:
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_json(self, code: int, data: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self._send_body(code, body, "application/json", headers)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message}, NO_STORE_HEADERS)

    def _send_envelope(self, data: Dict[str, Any]) -> None:
        """Send an aggregated read, 503 and uncached when everything failed."""
        if data["status"] == "all_failed":
            self._send_json(503, data, NO_STORE_HEADERS)
        else:
            self._send_json(200, data, PUBLIC_CACHE_HEADERS)

    def _send_html(self, code: int, html: str) -> None:
        """Send an HTML response with the given status code."""
        cache = {"Cache-Control": "no-store"} if code >= 400 else {"Cache-Control": "max-age=60"}
        self._send_body(code, html.encode("utf-8"), "text/html; charset=utf-8", cache)

    def _send_redirect(self, location: str) -> None:
        self.send_response(307)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.send_header("Cache-Control", "no-store")
        self.send_header("Connection", "close")
        self.end_headers()

    def _requested_page_id(self, query: Dict[str, List[str]]) -> Optional[str]:
        """The ``pageId`` query parameter when it names a configured page."""
        raw = (query.get("pageId") or [""])[0]
        page_id = validate_page_id(raw) if raw else None
        if page_id is None or page_id not in self.app_config.page_ids:
            if raw:
                logger.debug("Unknown pageId %r, using default page", raw)
            return None
        return page_id

    def do_GET(self) -> None:
        """Handle GET requests."""
        if not self._check_rate_limit():
            return

        try:
            parts = urlsplit(self.path)
            path = parts.path
            query = parse_qs(parts.query)

            if path == "/health":
                self._handle_health()
            elif path == "/api/pages":
                self._handle_pages()
            elif path == "/api/config":
                self._handle_config(self._requested_page_id(query))
            elif path == "/api/monitor":
                self._handle_monitor(self._requested_page_id(query))
            elif path == "/api/icon":
                self._handle_icon(self._requested_page_id(query))
            elif path == "/api/manage-status-page":
                self._handle_manage_status_page()
            elif path == FALLBACK_ICON_PATH:
                self._send_body(200, FALLBACK_ICON_SVG.encode("utf-8"), "image/svg+xml", {"Cache-Control": "max-age=3600"})
            elif path == "/":
                self._handle_dashboard(None)
            elif path.startswith("/api/"):
                self._send_error_json(404, "Not found")
            else:
                page_id = unquote(path[1:].rstrip("/"))
                if validate_page_id(page_id) is None or page_id not in self.app_config.page_ids:
                    self._send_error_json(404, f"Status page '{page_id}' not found")
                else:
                    self._handle_dashboard(page_id)
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _new_service(self) -> DataService:
        """A data service with a fresh memo for this request."""
        return DataService(self.app_config)

    def _handle_health(self) -> None:
        """Handle GET /health endpoint."""
        self._send_json(200, {"status": "ok"})

    def _handle_dashboard(self, page_id: Optional[str]) -> None:
        """Handle GET / and GET /<pageId> - serve the HTML dashboard.

        Unavailable pages render an error page instead of the dashboard.
        """
        service = self._new_service()
        result = build_page_tabs(service)
        current = page_id or self.app_config.default_page

        try:
            assert_global_availability(
                result.matrix,
                result.tabs,
                len(self.app_config.page_ids),
                self.app_config.server.strict_availability,
            )
            assert_page_availability(result.tabs, current)
        except (PageUnavailableError, AllPagesUnavailableError) as e:
            details = parse_error_details(e.message)
            title = "All status pages unavailable" if details.kind == "all_unavailable" else "Status page unavailable"
            self._send_html(
                503,
                render_error_page(title, details.diagnostics, details.status_code, details.status_message),
            )
            return

        self._send_html(200, HTML_DASHBOARD)

    def _handle_pages(self) -> None:
        """Handle GET /api/pages endpoint."""
        self._send_envelope(build_pages_response(self._new_service()))

    def _handle_config(self, page_id: Optional[str]) -> None:
        """Handle GET /api/config endpoint."""
        self._send_envelope(build_config_response(self._new_service(), page_id))

    def _handle_monitor(self, page_id: Optional[str]) -> None:
        """Handle GET /api/monitor endpoint."""
        self._send_envelope(build_monitor_response(self._new_service(), page_id))

    def _handle_icon(self, page_id: Optional[str]) -> None:
        """Handle GET /api/icon - proxy the upstream icon or redirect to the fallback."""
        icon = proxy_icon(self._new_service(), page_id, self.app_config.icon.max_bytes)
        if icon is None:
            self._send_redirect(FALLBACK_ICON_PATH)
            return
        self._send_body(200, icon.content, icon.content_type, ICON_CACHE_HEADERS)

    def _handle_manage_status_page(self) -> None:
        """Handle GET /api/manage-status-page - redirect to the upstream editor."""
        if not self.app_config.features.edit_this_page:
            self._send_redirect("/")
            return
        self._send_redirect(f"{self.app_config.base_url}/manage-status-page")


def _create_handler_class(config: Config, rate_limiter: Optional[RateLimiter] = None) -> type:
    """Create a handler class with the configuration bound."""

    class BoundStatusHandler(StatusHandler):
        pass

    BoundStatusHandler.app_config = config
    BoundStatusHandler.rate_limiter = rate_limiter
    BoundStatusHandler.framing_headers = frame_headers(config.server.allow_embedding)
    return BoundStatusHandler


class ApiServer:
    """Threaded HTTP server for the dashboard and API."""

    def __init__(self, config: Config, rate_limiter: Optional[RateLimiter] = None) -> None:
        """Initialize the API server.

        Args:
            config: Application configuration.
            rate_limiter: Rate limiter, a default one when omitted.
        """
        self.config = config
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()
        self._rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()

    @property
    def port(self) -> int:
        return self.config.server.port

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.config, self._rate_limiter)
            self._server = ThreadingHTTPServer((self.config.server.host, self.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.port)

        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise ApiError(
                    f"Port {self.port} is already in use. "
                    f"Another process may be using this port, or kumadash is already running."
                )
            elif e.errno == errno.EACCES:
                raise ApiError(
                    f"Permission denied for port {self.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ApiError(f"Failed to start API server on port {self.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        cycles = 0
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()
            cycles += 1
            if cycles % 600 == 0:
                self._rate_limiter.cleanup()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
