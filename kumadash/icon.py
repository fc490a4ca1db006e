"""Same-origin proxy for the upstream status page icon."""

import logging
from dataclasses import dataclass

from .errors import KumaError
from .security import IconURLError, validate_icon_url
from .services import DataService

logger = logging.getLogger(__name__)

FALLBACK_ICON_PATH = "/icon.svg"

ICON_ACCEPT = "image/*,*/*;q=0.8"
ICON_TIMEOUT_MS = 10000


@dataclass(frozen=True)
class IconResponse:
    """An icon body fetched from the upstream."""

    content_type: str
    content: bytes


def resolve_upstream_icon_url(icon: str, base_url: str) -> str | None:
    """Turn an upstream icon reference into a URL safe to fetch.

    Returns None for blank icons, the local fallback icon, ``data:`` URIs,
    protocol-relative URLs and URLs on another origin.
    """
    trimmed = icon.strip()
    if not trimmed or trimmed == FALLBACK_ICON_PATH:
        return None

    try:
        return validate_icon_url(trimmed, base_url)
    except IconURLError as e:
        logger.debug("Icon not proxied: %s", e)
        return None


def proxy_icon(service: DataService, page_id: str | None, max_bytes: int) -> IconResponse | None:
    """Fetch the icon of a page from its own upstream.

    Unknown page ids fall back to the default page.

    Returns:
        IconResponse, or None when the fallback icon should be served.
    """
    config = service.config
    page = config.get_page(page_id) or config.get_page()
    if page is None:
        return None

    icon = service.get_upstream_icon_url(page.id)
    if icon is None:
        return None

    target_url = resolve_upstream_icon_url(icon, page.base_url)
    if target_url is None:
        return None

    try:
        response = service.fetch(
            target_url,
            headers={"Accept": ICON_ACCEPT},
            timeout_ms=ICON_TIMEOUT_MS,
            max_body_bytes=max_bytes,
            follow_redirects=False,
        )
    except KumaError as e:
        logger.error("Failed to proxy icon for page %s: %s", page.id, e.message)
        return None

    if not response.ok:
        logger.warning("Icon request for page %s returned %d", page.id, response.status_code)
        return None

    content_type = response.headers.get("content-type", "")
    if not content_type.lower().startswith("image/"):
        logger.warning("Icon for page %s has non-image content type: %s", page.id, content_type)
        return None

    # Injected transports may ignore max_body_bytes
    if len(response.content) > max_bytes:
        return None

    return IconResponse(content_type=content_type, content=response.content)
