"""Error types and failure classification for upstream requests."""

import errno
import re
from dataclasses import dataclass
from typing import Literal

FailureKind = Literal["timeout", "network_reset", "http_4xx", "http_5xx", "parse_error", "unknown"]

FAILURE_KINDS: tuple[str, ...] = ("timeout", "network_reset", "http_4xx", "http_5xx", "parse_error", "unknown")

# Maximum number of links followed in a cause chain.
# Also bounds traversal when a chain contains a cycle.
MAX_CAUSE_DEPTH = 4

STATUS_LINE_RE = re.compile(r"\b([1-5]\d\d)\s+([A-Za-z][A-Za-z\s-]{1,})\b")
_THREE_DIGIT_RE = re.compile(r"\b(\d{3})\b")

_ERRNO_CODES = {
    errno.ECONNRESET: "ECONNRESET",
    errno.ECONNREFUSED: "ECONNREFUSED",
    errno.ETIMEDOUT: "ETIMEDOUT",
    errno.EHOSTUNREACH: "EHOSTUNREACH",
    errno.ENETUNREACH: "ENETUNREACH",
    errno.ECONNABORTED: "ECONNABORTED",
    errno.EPIPE: "EPIPE",
}


class KumaError(Exception):
    """Base error carrying an explicit message, optional code and cause.

    The cause is stored as a plain attribute so that classification can walk
    the chain without relying on ``__cause__``/``__context__``.
    """

    def __init__(self, message: str, code: str | None = None, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause


class TransportError(KumaError):
    """Raised when an HTTP request fails before a response is received."""

    pass


class ConfigError(KumaError):
    """Raised when configuration or preload data is invalid or missing."""

    pass


class MonitorDataError(KumaError):
    """Raised when heartbeat API data cannot be used."""

    pass


class ApiDataError(KumaError):
    """Raised when an upstream payload has an unexpected shape."""

    pass


@dataclass(frozen=True)
class HttpStatusDetails:
    """HTTP-like status recovered from an error chain."""

    status_code: int | None = None
    status_message: str | None = None


def error_message(error: object) -> str:
    """Return a human readable message for any raised value."""
    if isinstance(error, KumaError):
        return error.message or "Unknown error"
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return "Unknown error"


def _error_code(error: BaseException) -> str | None:
    """Return a transport-level code for an error, if it has one."""
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code.upper()
    if isinstance(error, TimeoutError):
        return "ETIMEDOUT"
    if isinstance(error, OSError) and error.errno in _ERRNO_CODES:
        return _ERRNO_CODES[error.errno]
    return None


def _next_cause(error: BaseException) -> object:
    if isinstance(error, KumaError):
        return error.cause
    # urllib wraps socket errors in URLError.reason
    reason = getattr(error, "reason", None)
    if isinstance(reason, BaseException):
        return reason
    return None


def error_chain(error: object, max_depth: int = MAX_CAUSE_DEPTH) -> list[BaseException]:
    """Collect an error and its causes, at most ``max_depth`` entries."""
    chain: list[BaseException] = []
    current = error
    for _ in range(max_depth):
        if not isinstance(current, BaseException):
            break
        chain.append(current)
        current = _next_cause(current)
    return chain


def _first_code(chain: list[BaseException]) -> str | None:
    for item in chain:
        code = _error_code(item)
        if code:
            return code
    return None


def classify_request_error(error: object) -> FailureKind:
    """Map an error into one of the failure kinds.

    Never raises. Unknown input types classify as ``unknown``.
    """
    try:
        chain = error_chain(error)
        message = error_message(error).lower() if chain else ""
        code = _first_code(chain) or ""
    except Exception:
        return "unknown"

    if code == "ETIMEDOUT" or "timeout" in message or "timed out" in message:
        return "timeout"

    if code == "ECONNRESET" or "econnreset" in message or "network" in message:
        return "network_reset"

    if "json" in message or "parse" in message:
        return "parse_error"

    match = _THREE_DIGIT_RE.search(message)
    if match:
        status = int(match.group(1))
        if 400 <= status < 500:
            return "http_4xx"
        if 500 <= status < 600:
            return "http_5xx"

    return "unknown"


def extract_http_status_details(error: object) -> HttpStatusDetails:
    """Find an HTTP status line such as ``503 Service Unavailable`` in an error chain.

    Falls back to ``NO_HTTP_RESPONSE (<CODE>)`` when the chain carries a
    transport code but no status line.
    """
    chain = error_chain(error)

    for item in chain:
        match = STATUS_LINE_RE.search(error_message(item))
        if match:
            phrase = match.group(2).strip()
            return HttpStatusDetails(status_code=int(match.group(1)), status_message=phrase or None)

    code = _first_code(chain)
    if code:
        return HttpStatusDetails(status_message=f"NO_HTTP_RESPONSE ({code})")

    return HttpStatusDetails()
