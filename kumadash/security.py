"""Security utilities for kumadash."""

import logging
import re
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Schemes an icon reference may never use
BLOCKED_SCHEMES = ["file", "ftp", "gopher", "data", "dict", "ldap", "telnet", "javascript"]

DEFAULT_PORTS = {"http": 80, "https": 443}

# Uptime Kuma slugs are short; anything longer is not a real page id.
MAX_PAGE_ID_LENGTH = 64


class IconURLError(Exception):
    """Raised when an icon reference must not be fetched from the upstream."""

    pass


def _origin(url: str) -> tuple[str, str, int] | None:
    """Return (scheme, host, port) of an absolute http(s) URL."""
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return None
    if parsed.scheme not in DEFAULT_PORTS or not parsed.hostname:
        return None
    return parsed.scheme, parsed.hostname.lower(), port or DEFAULT_PORTS[parsed.scheme]


def is_same_origin(url: str, base_url: str) -> bool:
    """Check whether two absolute URLs share scheme, host and port."""
    origin = _origin(url)
    return origin is not None and origin == _origin(base_url)


def validate_icon_url(icon: str, base_url: str) -> str:
    """Resolve an upstream icon reference against the page's base URL.

    Only same-origin http(s) URLs are allowed. Relative paths are appended
    to ``base_url``, keeping any base path.

    Args:
        icon: Icon value from the upstream site config.
        base_url: The page's configured upstream base URL.

    Returns:
        Absolute icon URL on the upstream origin.

    Raises:
        IconURLError: If the icon must not be proxied.
    """
    value = icon.strip()
    if not value:
        raise IconURLError("Empty icon URL")

    if value.startswith("//") or value.startswith("\\\\"):
        raise IconURLError(f"Protocol-relative icon URL not allowed: {value}")

    scheme = urlparse(value).scheme.lower()
    if scheme in BLOCKED_SCHEMES:
        raise IconURLError(f"Scheme '{scheme}' not allowed for icon URLs")

    if scheme:
        if scheme not in DEFAULT_PORTS:
            raise IconURLError(f"Scheme '{scheme}' not allowed for icon URLs")
        resolved = value
    else:
        resolved = f"{base_url.rstrip('/')}/{value.lstrip('/')}"

    if not is_same_origin(resolved, base_url):
        logger.warning("Refusing cross-origin icon URL: %s (base %s)", resolved, base_url)
        raise IconURLError(f"Icon URL origin differs from upstream: {resolved}")

    return resolved


def validate_page_id(page_id: str) -> str | None:
    """Validate a page id received from a request.

    Args:
        page_id: Raw page id

    Returns:
        Validated id if safe, None if invalid
    """
    if not page_id or not isinstance(page_id, str):
        return None

    # Reject path traversal sequences
    if ".." in page_id or "/" in page_id or "\\" in page_id:
        logger.warning("Path traversal attempt in page id: %s", page_id)
        return None

    # Reject null bytes and control characters
    if any(ord(c) < 32 for c in page_id):
        logger.warning("Control characters in page id: %r", page_id)
        return None

    if len(page_id) > MAX_PAGE_ID_LENGTH:
        logger.warning("Page id too long: %s", page_id[:MAX_PAGE_ID_LENGTH])
        return None

    if not re.match(r"^[a-zA-Z0-9_.-]+$", page_id):
        logger.warning("Invalid characters in page id: %s", page_id)
        return None

    return page_id
