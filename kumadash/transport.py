"""Retrying HTTP client for upstream Uptime Kuma requests."""

import errno
import http
import json
import logging
import socket
import ssl
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .errors import TransportError, error_chain

logger = logging.getLogger(__name__)

# Defaults match the upstream-friendly budget used by the data service.
DEFAULT_TIMEOUT_MS = 8000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 500

USER_AGENT = "kumadash/0.1"
DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/json,*/*",
}

# Pre-response failures that are worth re-issuing the request for.
RETRYABLE_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EHOSTUNREACH"})

_CONNECT_ERROR_CODES = {
    ConnectionResetError: "ECONNRESET",
    ConnectionRefusedError: "ECONNREFUSED",
    ConnectionAbortedError: "ECONNABORTED",
    BrokenPipeError: "EPIPE",
}

_insecure_tls = False
_insecure_tls_warned = False
_tls_lock = threading.Lock()


def set_allow_insecure_tls(allow: bool) -> None:
    """Enable or disable TLS certificate verification for every request."""
    global _insecure_tls, _insecure_tls_warned
    with _tls_lock:
        _insecure_tls = allow
        _insecure_tls_warned = False


def _ssl_context() -> ssl.SSLContext | None:
    global _insecure_tls_warned
    if not _insecure_tls:
        return None
    with _tls_lock:
        if not _insecure_tls_warned:
            _insecure_tls_warned = True
            logger.warning("ALLOW_INSECURE_TLS=true: TLS certificate verification is disabled for HTTPS requests.")
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Surface 3xx responses to the caller instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


def _urlopen(request: urllib.request.Request, timeout: float, follow_redirects: bool) -> Any:
    context = _ssl_context()
    if follow_redirects:
        return urllib.request.urlopen(request, timeout=timeout, context=context)
    opener = urllib.request.build_opener(urllib.request.HTTPSHandler(context=context), _NoRedirectHandler)
    return opener.open(request, timeout=timeout)


@dataclass(frozen=True)
class NormalizedResponse:
    """Response with the body already read into memory."""

    status_code: int
    status_text: str
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            json.JSONDecodeError: If the body is not valid JSON.
        """
        return json.loads(self.content.decode("utf-8", errors="replace"))


class Fetch(Protocol):
    def __call__(self, url: str, **kwargs: Any) -> NormalizedResponse: ...


def _transport_code(error: BaseException) -> str:
    """Derive a stable code for a urllib/socket failure."""
    for item in error_chain(error):
        if isinstance(item, ssl.SSLCertVerificationError):
            return "CERT_VERIFY_FAILED"
        if isinstance(item, ssl.SSLError):
            return "SSL_ERROR"
        if isinstance(item, (TimeoutError, socket.timeout)):
            return "ETIMEDOUT"
        if isinstance(item, socket.gaierror):
            return "ENOTFOUND"
        for error_type, code in _CONNECT_ERROR_CODES.items():
            if isinstance(item, error_type):
                return code
        if isinstance(item, OSError) and item.errno is not None:
            if item.errno == errno.EHOSTUNREACH:
                return "EHOSTUNREACH"
            if item.errno == errno.ETIMEDOUT:
                return "ETIMEDOUT"
    return "ERR_REQUEST_FAILED"


def _read_body(response: Any, url: str, max_body_bytes: int | None) -> bytes:
    if max_body_bytes is None:
        return response.read()

    declared = response.headers.get("Content-Length") if response.headers else None
    if declared:
        try:
            declared_size = int(declared)
        except ValueError:
            declared_size = None
        if declared_size is not None and declared_size > max_body_bytes:
            raise TransportError(
                f"Response too large: declared {declared_size} bytes exceeds {max_body_bytes}",
                code="BODY_TOO_LARGE",
            )

    body = response.read(max_body_bytes + 1)
    if len(body) > max_body_bytes:
        raise TransportError(f"Response too large: body exceeds {max_body_bytes} bytes", code="BODY_TOO_LARGE")
    return body


def _to_response(response: Any, url: str, max_body_bytes: int | None) -> NormalizedResponse:
    status_code = getattr(response, "status", None) or getattr(response, "code", 0) or 0
    status_text = getattr(response, "reason", None) or ""
    if not status_text:
        try:
            status_text = http.HTTPStatus(status_code).phrase
        except ValueError:
            status_text = ""
    headers = {k.lower(): v for k, v in response.headers.items()} if response.headers else {}
    body = _read_body(response, url, max_body_bytes)
    return NormalizedResponse(status_code=status_code, status_text=str(status_text), headers=headers, content=body)


def _open(
    url: str,
    method: str,
    headers: dict[str, str],
    body: bytes | None,
    timeout_ms: int,
    max_body_bytes: int | None,
    follow_redirects: bool = True,
) -> NormalizedResponse:
    try:
        request = urllib.request.Request(url, data=body, method=method, headers=headers)
    except ValueError as e:
        raise TransportError(f"Invalid URL: {url}", code="ERR_INVALID_URL", cause=e) from e

    try:
        with _urlopen(request, timeout_ms / 1000, follow_redirects) as response:
            return _to_response(response, url, max_body_bytes)
    except urllib.error.HTTPError as e:
        # Non-2xx responses, and 3xx when redirects are not followed, are returned to the caller, not raised
        try:
            return _to_response(e, url, max_body_bytes)
        finally:
            e.close()
    except TransportError:
        raise
    except urllib.error.URLError as e:
        code = _transport_code(e)
        reason = e.reason if e.reason else "Connection failed"
        if code == "ETIMEDOUT":
            raise TransportError(f"Request timed out: {reason}", code=code, cause=e) from e
        raise TransportError(f"Request failed: {reason}", code=code, cause=e) from e
    except (TimeoutError, socket.timeout) as e:
        raise TransportError("Request timed out", code="ETIMEDOUT", cause=e) from e
    except ValueError as e:
        raise TransportError(f"Invalid URL: {url}", code="ERR_INVALID_URL", cause=e) from e
    except OSError as e:
        raise TransportError(f"Request failed: {e}", code=_transport_code(e), cause=e) from e


def request(
    url: str,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    body: bytes | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
    max_body_bytes: int | None = None,
    follow_redirects: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> NormalizedResponse:
    """Perform an HTTP request, retrying transient network failures.

    Retry ``n`` (1-based) waits ``retry_delay_ms * n`` milliseconds before the
    identical request is sent again. At most ``max_retries`` retries happen.

    Args:
        url: Absolute http(s) URL.
        method: HTTP method.
        headers: Extra headers, merged over the defaults (case-insensitive).
        body: Optional request body.
        timeout_ms: Per-attempt timeout in milliseconds.
        max_retries: Maximum number of retries after the first attempt.
        retry_delay_ms: Base delay for linear backoff.
        max_body_bytes: Reject responses whose body exceeds this size.
        follow_redirects: Follow 3xx responses. When False a redirect is
            returned as a non-2xx response.
        sleep: Sleep function, replaceable in tests.

    Returns:
        NormalizedResponse for any HTTP status code.

    Raises:
        TransportError: On non-retryable failures or when retries are exhausted.
    """
    merged: dict[str, str] = {}
    for source in (DEFAULT_HEADERS, headers or {}):
        for key, value in source.items():
            for existing in [k for k in merged if k.lower() == key.lower()]:
                del merged[existing]
            merged[key] = value

    attempt = 0
    while True:
        try:
            return _open(url, method, merged, body, timeout_ms, max_body_bytes, follow_redirects)
        except TransportError as e:
            if e.code in RETRYABLE_CODES and attempt < max_retries:
                attempt += 1
                logger.warning(
                    "Request failed, retrying (%d/%d): %s [%s]",
                    attempt,
                    max_retries,
                    url,
                    e.code,
                )
                sleep(retry_delay_ms * attempt / 1000)
                continue
            logger.error("Request error: %s [%s] %s", url, e.code, e.message)
            raise


@dataclass(frozen=True)
class FetchSettings:
    """Transport settings applied to every upstream request."""

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS

    def fetch(self, url: str, **kwargs: Any) -> NormalizedResponse:
        """Call :func:`request` with these settings as defaults."""
        kwargs.setdefault("timeout_ms", self.timeout_ms)
        kwargs.setdefault("max_retries", self.max_retries)
        kwargs.setdefault("retry_delay_ms", self.retry_delay_ms)
        return request(url, **kwargs)
