"""Per-page health tabs and the cluster-wide availability matrix."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Literal

from .errors import STATUS_LINE_RE, KumaError, classify_request_error, error_message, extract_http_status_details
from .models import PageEndpoint, PageTabMeta, PageTabsResult, PageTabsStatusMatrix
from .normalize import build_icon_proxy_url
from .services import DataService

logger = logging.getLogger(__name__)

CURRENT_PAGE_UNAVAILABLE = "CURRENT_PAGE_UNAVAILABLE"
ALL_PAGES_UNAVAILABLE = "ALL_PAGES_UNAVAILABLE"


class PageUnavailableError(KumaError):
    """Raised when the requested page is known but its upstream failed."""

    pass


class AllPagesUnavailableError(KumaError):
    """Raised in strict mode when every configured page failed."""

    pass


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _build_tab(service: DataService, page: PageEndpoint) -> PageTabMeta:
    """Resolve one page into a tab. Never raises."""
    try:
        preload = service.get_preload_data(page)
    except Exception as e:
        logger.error("Failed to resolve metadata for status page tab %s: %s", page.id, error_message(e))
        details = extract_http_status_details(e)
        return PageTabMeta(
            id=page.id,
            title=_text(page.site_meta.title) or page.id,
            description=_text(page.site_meta.description) or None,
            icon=build_icon_proxy_url(page.id),
            health="unavailable",
            failure_type=classify_request_error(e),
            failure_message=error_message(e),
            failure_status_code=details.status_code,
            failure_status_message=details.status_message,
        )

    meta = preload.config
    return PageTabMeta(
        id=page.id,
        title=_text(meta.get("title")) or _text(page.site_meta.title) or page.id,
        description=_text(meta.get("description")) or _text(page.site_meta.description) or None,
        icon=build_icon_proxy_url(page.id),
        health="healthy",
    )


def compute_status_matrix(tabs: list[PageTabMeta]) -> PageTabsStatusMatrix:
    """Reduce tabs into ``ok``, ``partial_failed`` or ``all_failed``.

    ``all_failed`` requires at least one tab; an empty list is ``ok``.
    """
    failed_page_ids = [tab.id for tab in tabs if tab.health == "unavailable"]

    if tabs and len(failed_page_ids) == len(tabs):
        return PageTabsStatusMatrix(status="all_failed", failed_page_ids=failed_page_ids)
    if failed_page_ids:
        return PageTabsStatusMatrix(status="partial_failed", failed_page_ids=failed_page_ids)
    return PageTabsStatusMatrix(status="ok", failed_page_ids=[])


def build_page_tabs(service: DataService) -> PageTabsResult:
    """Resolve every configured page concurrently into tabs plus a matrix.

    Tabs keep configuration order. Ids that do not resolve to a configured
    page are dropped from both the tabs and the matrix.
    """
    config = service.config
    pages: list[PageEndpoint] = []
    for page_id in config.page_ids:
        page = config.get_page(page_id)
        if page is None:
            logger.debug("Dropping unknown page id from tabs: %s", page_id)
            continue
        pages.append(page)

    if not pages:
        return PageTabsResult(tabs=[], matrix=compute_status_matrix([]))

    resolved: dict[str, PageTabMeta] = {}
    max_workers = min(len(pages), config.server.max_page_workers)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(_build_tab, service, page): page for page in pages}

        for future in as_completed(futures):
            page = futures[future]
            resolved[page.id] = future.result()

    tabs = [resolved[page.id] for page in pages]
    matrix = compute_status_matrix(tabs)

    if matrix.status != "ok":
        logger.warning("Status pages unavailable (%s): %s", matrix.status, ", ".join(matrix.failed_page_ids))

    return PageTabsResult(tabs=tabs, matrix=matrix)


def assert_page_availability(tabs: list[PageTabMeta], page_id: str) -> None:
    """Raise if ``page_id`` is among the tabs and unavailable.

    Raises:
        PageUnavailableError: With a ``CURRENT_PAGE_UNAVAILABLE::`` message.
    """
    current = next((tab for tab in tabs if tab.id == page_id), None)
    if current is None or current.health != "unavailable":
        return

    raise PageUnavailableError(
        "::".join(
            [
                CURRENT_PAGE_UNAVAILABLE,
                page_id,
                current.failure_type or "unknown",
                str(current.failure_status_code or 0),
                current.failure_status_message or "Unknown",
                current.failure_message or "Unknown error",
            ]
        )
    )


def assert_global_availability(
    matrix: PageTabsStatusMatrix,
    tabs: list[PageTabMeta],
    total_pages: int,
    strict: bool,
) -> None:
    """Raise in strict mode when more than one page is configured and all failed.

    Raises:
        AllPagesUnavailableError: With an ``ALL_PAGES_UNAVAILABLE::`` message.
    """
    if not strict or total_pages <= 1 or matrix.status != "all_failed":
        return

    first_failed = next((tab for tab in tabs if tab.health == "unavailable"), None)
    status_code = first_failed.failure_status_code if first_failed else None
    status_message = first_failed.failure_status_message if first_failed else None
    failure_message = first_failed.failure_message if first_failed else None

    raise AllPagesUnavailableError(
        "::".join(
            [
                ALL_PAGES_UNAVAILABLE,
                str(status_code or 0),
                status_message or "Unknown",
                failure_message or "All pages unavailable",
            ]
        )
    )


@dataclass(frozen=True)
class ParsedErrorDetails:
    """Display details decoded from an availability error message."""

    kind: Literal["current_unavailable", "all_unavailable", "generic"]
    diagnostics: str
    status_code: int | None = None
    status_message: str | None = None


def _parse_status_code(raw: str) -> int | None:
    try:
        status_code = int(raw)
    except ValueError:
        return None
    return status_code if status_code > 0 else None


def parse_error_details(message: str) -> ParsedErrorDetails:
    """Decode an availability error message into display details."""
    if message.startswith(CURRENT_PAGE_UNAVAILABLE + "::"):
        parts = message.split("::", 5)[1:]
        parts += [""] * (5 - len(parts))
        page_id, failure_type, status_code, status_message, diagnostics = parts
        return ParsedErrorDetails(
            kind="current_unavailable",
            diagnostics=f"{diagnostics or 'Unknown error'} (page: {page_id}, reason: {failure_type or 'unknown'})",
            status_code=_parse_status_code(status_code or "0"),
            status_message=status_message or "Unknown",
        )

    if message.startswith(ALL_PAGES_UNAVAILABLE + "::"):
        parts = message.split("::", 3)[1:]
        parts += [""] * (3 - len(parts))
        status_code, status_message, diagnostics = parts
        return ParsedErrorDetails(
            kind="all_unavailable",
            diagnostics=diagnostics or "All pages unavailable",
            status_code=_parse_status_code(status_code or "0"),
            status_message=status_message or "Unknown",
        )

    match = STATUS_LINE_RE.search(message)
    if match:
        return ParsedErrorDetails(
            kind="generic",
            diagnostics=message,
            status_code=int(match.group(1)),
            status_message=match.group(2).strip(),
        )

    return ParsedErrorDetails(kind="generic", diagnostics=message)
