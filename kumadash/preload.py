"""Recover the status page preload payload from upstream HTML.

Extraction runs as an ordered cascade of strategies. Each strategy either
yields a payload string or nothing; a payload that fails to parse is skipped
and the next strategy runs:

1. ``FastRegexStrategy``: the ``#preload-data`` element found by regex.
2. ``LegacyRegexStrategy``: ``window.preloadData = {...};`` found by regex.
3. ``DomFallbackStrategy``: both of the above against a real HTML parse.
4. ``ApiFallbackStrategy``: ``GET {base}/api/status-page/{id}``.

Only a failure of the final strategy is raised, as ``ConfigError``.
"""

import html
import json
import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Any

from .errors import ConfigError, KumaError, error_message
from .models import PreloadData, PreloadSource, ResolvedPreloadData
from .normalize import normalize_base_url
from .transport import Fetch, request

logger = logging.getLogger(__name__)

PRELOAD_ELEMENT_ID = "preload-data"
PRELOAD_DATA_ATTR = "data-json"

# Number of HTML characters included in diagnostics.
HTML_PREVIEW_CHARS = 500

_EMPTY_JSON_VALUES = ("", "{}", "[]")

_MARKER_RE = re.compile(
    r"<(?P<tag>[a-zA-Z][\w-]*)(?P<attrs>[^>]*?(?<![\w-])id\s*=\s*"
    r"(?:\"" + re.escape(PRELOAD_ELEMENT_ID) + r"\"|'" + re.escape(PRELOAD_ELEMENT_ID) + r"'|"
    + re.escape(PRELOAD_ELEMENT_ID) + r"(?=[\s/>]))[^>]*)>",
    re.IGNORECASE,
)
_DATA_ATTR_RE = re.compile(r"\b" + re.escape(PRELOAD_DATA_ATTR) + r"\s*=\s*(?:\"([^\"]*)\"|'([^']*)')", re.IGNORECASE)
_LEGACY_RE = re.compile(r"window\.preloadData\s*=\s*({[\s\S]*?});")
_TAG_RE = re.compile(r"<[^>]+>")

_RAW_TEXT_TAGS = ("script", "style")


@dataclass(frozen=True)
class PayloadCandidate:
    """A raw payload string and the source label it was extracted from."""

    payload: str
    source: PreloadSource


def _clean_candidate(payload: str | None) -> str | None:
    if payload is None:
        return None
    payload = payload.strip()
    return payload or None


def _data_json_candidate(value: str | None) -> PayloadCandidate | None:
    if value is None:
        return None
    trimmed = value.strip()
    if trimmed in _EMPTY_JSON_VALUES:
        return None
    return PayloadCandidate(trimmed, "data-json")


# --- JSON sanitizing and validation ---

_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


def sanitize_json_string(payload: str) -> str:
    """Clean up loosely templated JSON so that ``json.loads`` accepts it.

    - strips a byte-order mark, surrounding whitespace and a trailing ``;``
    - escapes raw control characters inside strings
    - drops control characters outside strings
    - removes trailing commas before ``}`` and ``]``
    """
    text = payload.lstrip("\ufeff").strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()

    out: list[str] = []
    in_string = False
    escaped = False
    i = 0
    length = len(text)

    while i < length:
        char = text[i]

        if in_string:
            if escaped:
                escaped = False
                out.append(char)
            elif char == "\\":
                escaped = True
                out.append(char)
            elif char == '"':
                in_string = False
                out.append(char)
            elif ord(char) < 0x20:
                out.append(_ESCAPES.get(char, f"\\u{ord(char):04x}"))
            else:
                out.append(char)
            i += 1
            continue

        if char == '"':
            in_string = True
            out.append(char)
        elif char == ",":
            j = i + 1
            while j < length and text[j] in " \t\r\n":
                j += 1
            if j >= length or text[j] not in "}]":
                out.append(char)
        elif ord(char) < 0x20 and char not in " \t\r\n":
            pass
        else:
            out.append(char)
        i += 1

    return "".join(out)


def validate_preload_data(data: Any) -> bool:
    """Check that a decoded payload has the required preload structure."""
    if not isinstance(data, dict):
        return False
    if not isinstance(data.get("config"), dict):
        return False
    if not isinstance(data.get("publicGroupList"), list):
        return False
    if "maintenanceList" in data and data["maintenanceList"] is not None and not isinstance(data["maintenanceList"], list):
        return False
    if "incident" in data and data["incident"] is not None and not isinstance(data["incident"], dict):
        return False
    return True


def extract_preload_data(data: Any) -> PreloadData:
    """Build :class:`PreloadData` from a decoded payload.

    Raises:
        ConfigError: If required fields are missing or have the wrong type.
    """
    if not validate_preload_data(data):
        raise ConfigError("Preload data is missing required fields")
    return PreloadData(
        config=data["config"],
        public_group_list=data["publicGroupList"],
        maintenance_list=data.get("maintenanceList"),
        incident=data.get("incident"),
    )


def parse_preload_payload(payload: str) -> PreloadData:
    """Sanitize, decode and validate a payload string.

    Raises:
        ConfigError: If the payload is not valid preload JSON.
    """
    try:
        decoded = json.loads(sanitize_json_string(payload))
    except json.JSONDecodeError as e:
        raise ConfigError(f"JSON parsing failed: {e.msg}\nProcessed data: {payload[:100]}...", cause=e) from e
    return extract_preload_data(decoded)


# --- regex fast paths ---


def _find_element_text(document: str, tag: str, start: int) -> str | None:
    close = re.compile(r"</\s*" + re.escape(tag) + r"\s*>", re.IGNORECASE)
    match = close.search(document, start)
    if not match:
        return None
    return document[start : match.start()]


def extract_marker_payload_fast(document: str) -> PayloadCandidate | None:
    """Find the ``#preload-data`` element without a full HTML parse."""
    match = _MARKER_RE.search(document)
    if not match:
        return None

    tag = match.group("tag").lower()
    attrs = match.group("attrs")

    inner = None
    if not attrs.rstrip().endswith("/"):
        inner = _find_element_text(document, tag, match.end())
    if inner is not None and tag not in _RAW_TEXT_TAGS:
        inner = html.unescape(_TAG_RE.sub("", inner))

    text = _clean_candidate(inner)
    if text:
        return PayloadCandidate(text, "script")

    attr_match = _DATA_ATTR_RE.search(attrs)
    if attr_match:
        value = attr_match.group(1) if attr_match.group(1) is not None else attr_match.group(2)
        return _data_json_candidate(html.unescape(value))

    return None


def extract_legacy_payload(text: str) -> str | None:
    """Return the object literal assigned to ``window.preloadData``."""
    match = _LEGACY_RE.search(text)
    if match:
        return match.group(1)
    return None


# --- DOM fallback ---


class _PreloadDocumentParser(HTMLParser):
    """Collects the marker element and every script tag of a document."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.marker_attrs: dict[str, str | None] | None = None
        self.marker_text: list[str] = []
        self.scripts: list[tuple[str | None, list[str]]] = []
        self._marker_depth = 0
        self._marker_tag: str | None = None
        self._in_script = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attr_map = dict(attrs)
        if self.marker_attrs is None and attr_map.get("id") == PRELOAD_ELEMENT_ID:
            self.marker_attrs = attr_map
            self._marker_tag = tag
            self._marker_depth = 1
        elif self._marker_depth and tag == self._marker_tag:
            self._marker_depth += 1

        if tag == "script":
            self._in_script = True
            self.scripts.append((attr_map.get("id"), []))

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attr_map = dict(attrs)
        if self.marker_attrs is None and attr_map.get("id") == PRELOAD_ELEMENT_ID:
            self.marker_attrs = attr_map

    def handle_endtag(self, tag: str) -> None:
        if self._marker_depth and tag == self._marker_tag:
            self._marker_depth -= 1
        if tag == "script":
            self._in_script = False

    def handle_data(self, data: str) -> None:
        if self._marker_depth:
            self.marker_text.append(data)
        if self._in_script and self.scripts:
            self.scripts[-1][1].append(data)

    @property
    def script_ids(self) -> list[str]:
        return [script_id or "no-id" for script_id, _ in self.scripts]

    def script_texts(self) -> list[str]:
        return ["".join(chunks) for _, chunks in self.scripts]


def parse_document(document: str) -> _PreloadDocumentParser:
    parser = _PreloadDocumentParser()
    parser.feed(document)
    parser.close()
    return parser


def extract_marker_payload_dom(parser: _PreloadDocumentParser) -> PayloadCandidate | None:
    """Same extraction as :func:`extract_marker_payload_fast` on a parsed tree."""
    if parser.marker_attrs is None:
        return None

    text = _clean_candidate("".join(parser.marker_text))
    if text:
        return PayloadCandidate(text, "script")

    return _data_json_candidate(parser.marker_attrs.get(PRELOAD_DATA_ATTR))


def extract_legacy_payload_dom(parser: _PreloadDocumentParser) -> str | None:
    """Scan parsed script tags for the legacy ``window.preloadData`` assignment."""
    for script in parser.script_texts():
        if "window.preloadData" not in script:
            continue
        payload = extract_legacy_payload(script)
        if payload:
            logger.info("Successfully extracted preload data from window.preloadData")
            return payload
        logger.error("Failed to extract preload data with regex. Script content: %s", script[:200])
    return None


# --- API fallback ---


def _ensure_accept_header(headers: dict[str, str]) -> dict[str, str]:
    normalized = dict(headers)
    if not any(key.lower() == "accept" for key in normalized):
        normalized["Accept"] = "application/json"
    return normalized


def fetch_preload_data_from_api(
    base_url: str,
    page_id: str,
    fetch: Fetch = request,
    headers: dict[str, str] | None = None,
) -> tuple[PreloadData, str]:
    """Fetch preload data from ``{base_url}/api/status-page/{page_id}``.

    Returns:
        Tuple of (preload data, requested URL).

    Raises:
        ConfigError: On request failure, non-2xx status, bad JSON or missing fields.
    """
    if not base_url or not page_id:
        raise ConfigError("Base URL and page ID are required to fetch preload data from API")

    url = f"{normalize_base_url(base_url)}/api/status-page/{page_id}"
    request_headers = _ensure_accept_header(headers or {})

    try:
        response = fetch(url, headers=request_headers)
    except KumaError as e:
        raise ConfigError("Failed to request preload data from API", cause=e) from e

    if not response.ok:
        raise ConfigError(f"Failed to fetch preload data from API: {response.status_code} {response.status_text}")

    try:
        parsed = response.json()
    except ValueError as e:
        raise ConfigError("Failed to parse preload data API response as JSON", cause=e) from e

    if not validate_preload_data(parsed):
        raise ConfigError("Preload data API response is missing required fields")

    return extract_preload_data(parsed), url


# --- strategies ---


@dataclass
class ResolveContext:
    """Inputs shared by every strategy of one resolution."""

    html: str
    base_url: str
    page_id: str
    fetch: Fetch
    headers: dict[str, str]
    _parser: _PreloadDocumentParser | None = None

    @property
    def parser(self) -> _PreloadDocumentParser:
        if self._parser is None:
            self._parser = parse_document(self.html)
        return self._parser


class FastRegexStrategy:
    name = "fast-regex"

    def candidates(self, ctx: ResolveContext) -> list[PayloadCandidate]:
        candidate = extract_marker_payload_fast(ctx.html)
        if candidate and candidate.source == "data-json":
            logger.debug("Using preload data from data-json attribute")
        return [candidate] if candidate else []


class LegacyRegexStrategy:
    name = "legacy-regex"

    def candidates(self, ctx: ResolveContext) -> list[PayloadCandidate]:
        payload = extract_legacy_payload(ctx.html)
        return [PayloadCandidate(payload, "legacy-window-preload")] if payload else []


class DomFallbackStrategy:
    name = "dom-fallback"

    def candidates(self, ctx: ResolveContext) -> list[PayloadCandidate]:
        found: list[PayloadCandidate] = []
        marker = extract_marker_payload_dom(ctx.parser)
        if marker:
            found.append(marker)
        legacy = extract_legacy_payload_dom(ctx.parser)
        if legacy:
            found.append(PayloadCandidate(legacy, "legacy-window-preload"))
        return found


class ApiFallbackStrategy:
    name = "api-fallback"

    def resolve(self, ctx: ResolveContext) -> ResolvedPreloadData:
        data, url = fetch_preload_data_from_api(ctx.base_url, ctx.page_id, fetch=ctx.fetch, headers=ctx.headers)
        logger.info("Using status page API fallback for preload data: %s", url)
        return ResolvedPreloadData(data=data, source="api-fallback")


HTML_STRATEGIES = (FastRegexStrategy(), LegacyRegexStrategy(), DomFallbackStrategy())


def resolve_preload_data_from_html(
    html_text: str,
    base_url: str,
    page_id: str,
    fetch: Fetch = request,
    headers: dict[str, str] | None = None,
    include_html_diagnostics: bool = False,
    strategies: tuple = HTML_STRATEGIES,
) -> ResolvedPreloadData:
    """Resolve preload data for a status page.

    Args:
        html_text: Raw HTML of ``/status/{page_id}``.
        base_url: Upstream origin, used by the API fallback.
        page_id: Status page slug.
        fetch: Transport used by the API fallback.
        headers: Extra headers for the API fallback request.
        include_html_diagnostics: Log an HTML preview and script ids on failure.
        strategies: HTML strategies, tried in order before the API fallback.

    Returns:
        ResolvedPreloadData with the strategy that produced it.

    Raises:
        ConfigError: If every strategy, including the API fallback, failed.
    """
    ctx = ResolveContext(html=html_text, base_url=base_url, page_id=page_id, fetch=fetch, headers=headers or {})

    for strategy in strategies:
        for candidate in strategy.candidates(ctx):
            try:
                data = parse_preload_payload(candidate.payload)
            except ConfigError as e:
                logger.debug("Preload payload from %s (%s) rejected: %s", strategy.name, candidate.source, e.message)
                continue
            return ResolvedPreloadData(data=data, source=candidate.source)

    logger.warning("Preload script missing, attempting status page API fallback")

    try:
        return ApiFallbackStrategy().resolve(ctx)
    except ConfigError as api_error:
        logger.error("Status page API fallback failed: %s", error_message(api_error))
        if include_html_diagnostics:
            logger.error("HTML response preview: %s", html_text[:HTML_PREVIEW_CHARS])
            logger.error("Available script tags: %s", ctx.parser.script_ids)
        raise ConfigError("Preload script tag not found or empty", cause=api_error) from api_error
