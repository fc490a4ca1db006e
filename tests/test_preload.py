"""Tests for the preload data resolver."""

import json
import logging

import pytest

from fakes import BASE_URL, FakeFetch, api_url, json_response, preload_payload, raw_response, status_html
from kumadash.errors import ConfigError, TransportError
from kumadash.preload import (
    DomFallbackStrategy,
    FastRegexStrategy,
    extract_legacy_payload,
    extract_marker_payload_fast,
    fetch_preload_data_from_api,
    parse_preload_payload,
    resolve_preload_data_from_html,
    sanitize_json_string,
    validate_preload_data,
)


def _resolve(document: str, fetch: FakeFetch | None = None, **kwargs):
    return resolve_preload_data_from_html(document, BASE_URL, "main", fetch=fetch or FakeFetch(), **kwargs)


class TestSanitizeJsonString:
    """Tests for sanitize_json_string."""

    def test_removes_trailing_commas(self) -> None:
        assert json.loads(sanitize_json_string('{"a": [1, 2,], "b": {"c": 1,},}')) == {"a": [1, 2], "b": {"c": 1}}

    def test_escapes_control_characters_in_strings(self) -> None:
        assert json.loads(sanitize_json_string('{"a": "line1\nline2\ttab"}')) == {"a": "line1\nline2\ttab"}

    def test_drops_control_characters_outside_strings(self) -> None:
        assert json.loads(sanitize_json_string('{"a":\x00 1\x07}')) == {"a": 1}

    def test_strips_bom_and_semicolon(self) -> None:
        assert json.loads(sanitize_json_string('\ufeff  {"a": 1};  ')) == {"a": 1}

    def test_keeps_commas_inside_strings(self) -> None:
        assert json.loads(sanitize_json_string('{"a": "x,}"}')) == {"a": "x,}"}

    def test_keeps_escaped_quotes(self) -> None:
        assert json.loads(sanitize_json_string('{"a": "say \\"hi\\",]"}')) == {"a": 'say "hi",]'}


class TestValidatePreloadData:
    """Tests for validate_preload_data."""

    def test_valid(self) -> None:
        assert validate_preload_data(preload_payload())

    def test_minimal(self) -> None:
        assert validate_preload_data({"config": {}, "publicGroupList": []})

    @pytest.mark.parametrize(
        "data",
        [
            None,
            [],
            {"publicGroupList": []},
            {"config": {}},
            {"config": [], "publicGroupList": []},
            {"config": {}, "publicGroupList": {}},
            {"config": {}, "publicGroupList": [], "maintenanceList": {}},
            {"config": {}, "publicGroupList": [], "incident": "outage"},
        ],
    )
    def test_invalid(self, data: object) -> None:
        assert not validate_preload_data(data)

    def test_parse_payload_rejects_bad_json(self) -> None:
        with pytest.raises(ConfigError, match="JSON parsing failed"):
            parse_preload_payload("{nope")


class TestFastPath:
    """Tests for the regex fast path."""

    def test_script_marker(self) -> None:
        candidate = extract_marker_payload_fast(status_html({"x": 1}))

        assert candidate.source == "script"
        assert json.loads(candidate.payload) == {"x": 1}

    def test_div_marker_is_unescaped(self) -> None:
        candidate = extract_marker_payload_fast('<div id="preload-data">{"a": "b &amp; c"}</div>')

        assert candidate.payload == '{"a": "b & c"}'

    def test_single_quoted_id(self) -> None:
        candidate = extract_marker_payload_fast("<div id='preload-data'>{}</div>")

        assert candidate.payload == "{}"

    def test_data_json_attribute(self) -> None:
        candidate = extract_marker_payload_fast(status_html({"a": "<b>"}, style="data-json"))

        assert candidate.source == "data-json"
        assert json.loads(candidate.payload) == {"a": "<b>"}

    @pytest.mark.parametrize("value", ["{}", "[]", "  "])
    def test_empty_data_json_is_ignored(self, value: str) -> None:
        assert extract_marker_payload_fast(f'<div id="preload-data" data-json="{value}"></div>') is None

    @pytest.mark.parametrize(
        "document",
        [
            '<div data-id="preload-data">{"a": 1}</div>',
            '<div id="preload-data-extra">{"a": 1}</div>',
            "<div>no marker</div>",
        ],
    )
    def test_no_marker(self, document: str) -> None:
        assert extract_marker_payload_fast(document) is None

    def test_legacy_assignment(self) -> None:
        assert extract_legacy_payload('<script>window.preloadData = {"a": 1};</script>') == '{"a": 1}'
        assert extract_legacy_payload("<script>var x = 1;</script>") is None


class TestResolvePreloadData:
    """Tests for resolve_preload_data_from_html."""

    def test_script_marker(self) -> None:
        resolved = _resolve(status_html(preload_payload()))

        assert resolved.source == "script"
        assert resolved.data.config["title"] == "Main Status"
        assert resolved.data.public_group_list[0]["name"] == "Services"

    def test_data_json(self) -> None:
        resolved = _resolve(status_html(preload_payload(), style="data-json"))

        assert resolved.source == "data-json"

    def test_legacy(self) -> None:
        resolved = _resolve(status_html(preload_payload(), style="legacy"))

        assert resolved.source == "legacy-window-preload"
        assert resolved.data.config["slug"] == "main"

    def test_loosely_templated_payload(self) -> None:
        """Trailing commas in inline output are tolerated."""
        payload = '{"config": {"title": "Main",}, "publicGroupList": [],}'

        resolved = _resolve(f'<script id="preload-data">{payload}</script>')

        assert resolved.data.config == {"title": "Main"}

    def test_dom_fallback_after_fast_path_parse_failure(self) -> None:
        """A commented-out closing tag truncates the regex payload."""
        payload = json.dumps(preload_payload())
        document = f'<html><body><div id="preload-data">{payload}<!-- </div> --></div></body></html>'
        fetch = FakeFetch()

        resolved = _resolve(document, fetch)

        assert resolved.source == "script"
        assert resolved.data == parse_preload_payload(payload)
        assert fetch.calls == []

    def test_dom_fallback_when_regex_misses_marker(self) -> None:
        """A '>' inside an attribute hides the marker from the regex but not the parser."""
        payload = json.dumps(preload_payload())
        document = f'<html><body><div title="a>b" id="preload-data">{payload}</div></body></html>'
        fetch = FakeFetch()

        resolved = _resolve(document, fetch)

        assert resolved.source == "script"
        assert resolved.data == parse_preload_payload(payload)
        assert fetch.calls == []

    def test_invalid_marker_falls_through_to_legacy(self) -> None:
        legacy = json.dumps(preload_payload())
        document = f'<div id="preload-data">not json</div><script>window.preloadData = {legacy};</script>'

        resolved = _resolve(document)

        assert resolved.source == "legacy-window-preload"

    def test_api_fallback(self) -> None:
        fetch = FakeFetch({api_url("main"): json_response(preload_payload(title="From API"))})

        resolved = _resolve("<html><body>No data here</body></html>", fetch)

        assert resolved.source == "api-fallback"
        assert resolved.data.config["title"] == "From API"
        url, kwargs = fetch.calls[0]
        assert url == api_url("main")
        assert kwargs["headers"]["Accept"] == "application/json"

    def test_api_fallback_when_payload_lacks_fields(self) -> None:
        """A parseable payload without required fields does not stop the cascade."""
        fetch = FakeFetch({api_url("main"): json_response(preload_payload())})

        resolved = _resolve(status_html({"config": {}}), fetch)

        assert resolved.source == "api-fallback"

    def test_api_fallback_keeps_caller_accept_header(self) -> None:
        fetch = FakeFetch({api_url("main"): json_response(preload_payload())})

        _resolve("<html></html>", fetch, headers={"accept": "application/vnd.kuma+json"})

        headers = fetch.calls[0][1]["headers"]
        assert headers == {"accept": "application/vnd.kuma+json"}

    def test_total_failure_raises_config_error(self) -> None:
        fetch = FakeFetch()

        with pytest.raises(ConfigError, match="Preload script tag not found or empty") as exc_info:
            _resolve("<html></html>", fetch)

        cause = exc_info.value.cause
        assert isinstance(cause, ConfigError)
        assert "404 Not Found" in cause.message

    def test_api_fallback_bad_json(self) -> None:
        fetch = FakeFetch({api_url("main"): raw_response(b"<html>", content_type="text/html")})

        with pytest.raises(ConfigError) as exc_info:
            _resolve("<html></html>", fetch)

        assert "parse" in exc_info.value.cause.message

    def test_api_fallback_missing_fields(self) -> None:
        fetch = FakeFetch({api_url("main"): json_response({"config": {}})})

        with pytest.raises(ConfigError) as exc_info:
            _resolve("<html></html>", fetch)

        assert "missing required fields" in exc_info.value.cause.message

    def test_api_fallback_transport_error(self) -> None:
        error = TransportError("Request timed out", code="ETIMEDOUT")
        fetch = FakeFetch({api_url("main"): error})

        with pytest.raises(ConfigError) as exc_info:
            _resolve("<html></html>", fetch)

        assert exc_info.value.cause.cause is error

    def test_diagnostics_only_when_requested(self, caplog: pytest.LogCaptureFixture) -> None:
        document = '<html><script id="app-config">var a = 1;</script><script>var b;</script></html>'

        with caplog.at_level(logging.ERROR, logger="kumadash.preload"):
            with pytest.raises(ConfigError):
                _resolve(document)
        assert "Available script tags" not in caplog.text

        caplog.clear()
        with caplog.at_level(logging.ERROR, logger="kumadash.preload"):
            with pytest.raises(ConfigError):
                _resolve(document, include_html_diagnostics=True)
        assert "Available script tags: ['app-config', 'no-id']" in caplog.text
        assert "HTML response preview" in caplog.text


class TestFastPathMatchesDom:
    """The regex fast path and the DOM fallback agree on well-formed markup."""

    @pytest.mark.parametrize(
        "document",
        [
            status_html(preload_payload(), style="script"),
            status_html(preload_payload(), style="div"),
            status_html(preload_payload(), style="data-json"),
            status_html(preload_payload(title="Tom & Jerry <status>"), style="div"),
            status_html(preload_payload(title="Tom & Jerry <status>"), style="data-json"),
            status_html(preload_payload(title="a < b"), style="script"),
            "<body><div id='preload-data'>" + json.dumps(preload_payload()) + "</div></body>",
            '<body><div class="x" id=preload-data data-json=\'' + json.dumps(preload_payload()) + "'/></body>",
            '<body><section id="preload-data"><span>' + json.dumps(preload_payload()) + "</span></section></body>",
        ],
    )
    def test_cross_check(self, document: str) -> None:
        fast = _resolve(document, strategies=(FastRegexStrategy(),))
        dom = _resolve(document, strategies=(DomFallbackStrategy(),))

        assert fast.data == dom.data
        assert fast.source == dom.source


class TestFetchPreloadDataFromApi:
    """Tests for fetch_preload_data_from_api."""

    def test_requires_base_and_page(self) -> None:
        with pytest.raises(ConfigError):
            fetch_preload_data_from_api("", "main", fetch=FakeFetch())

    def test_non_2xx(self) -> None:
        fetch = FakeFetch({api_url("main"): raw_response(b"oops", 500, "Internal Server Error")})

        with pytest.raises(ConfigError, match="500 Internal Server Error"):
            fetch_preload_data_from_api(BASE_URL + "/", "main", fetch=fetch)

    def test_returns_url(self) -> None:
        fetch = FakeFetch({api_url("main"): json_response(preload_payload())})

        data, url = fetch_preload_data_from_api(BASE_URL + "/", "main", fetch=fetch)

        assert url == api_url("main")
        assert data.maintenance_list == []
