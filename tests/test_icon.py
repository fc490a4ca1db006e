"""Tests for the icon proxy."""

import pytest

from fakes import (
    BASE_URL,
    PNG_BYTES,
    FakeFetch,
    FakeUptimeKuma,
    html_response,
    html_url,
    make_config,
    preload_payload,
    raw_response,
    status_html,
)
from kumadash.errors import TransportError
from kumadash.icon import ICON_ACCEPT, ICON_TIMEOUT_MS, IconResponse, proxy_icon, resolve_upstream_icon_url
from kumadash.services import DataService

ICON_URL = f"{BASE_URL}/upload/logo.png"
MAX_BYTES = 1000


def _icon_page_html(icon: str) -> str:
    payload = preload_payload()
    payload["config"]["icon"] = icon
    return status_html(payload)


def _page_with_icon(icon: str) -> object:
    return html_response(_icon_page_html(icon))


def _service(routes: dict, base_url: str = BASE_URL) -> tuple[DataService, FakeFetch]:
    fetch = FakeFetch(routes)
    return DataService(make_config(base_url=base_url), fetch=fetch), fetch


class TestResolveUpstreamIconUrl:
    """Tests for resolve_upstream_icon_url."""

    def test_relative_path(self) -> None:
        assert resolve_upstream_icon_url("/upload/logo.png", BASE_URL) == ICON_URL

    def test_same_origin_absolute(self) -> None:
        assert resolve_upstream_icon_url(ICON_URL, BASE_URL) == ICON_URL

    @pytest.mark.parametrize(
        "icon",
        [
            "",
            "   ",
            "/icon.svg",
            "data:image/png;base64,AAAA",
            "//cdn.example.net/logo.png",
            "https://evil.example.net/logo.png",
            "http://status.example.com/upload/logo.png",
            "javascript:alert(1)",
        ],
    )
    def test_not_proxied(self, icon: str) -> None:
        assert resolve_upstream_icon_url(icon, BASE_URL) is None

    def test_base_path_is_kept(self) -> None:
        base_url = "https://example.com/kuma"

        assert resolve_upstream_icon_url("/upload/logo.png", base_url) == "https://example.com/kuma/upload/logo.png"
        assert resolve_upstream_icon_url("upload/logo.png", base_url) == "https://example.com/kuma/upload/logo.png"


class TestProxyIcon:
    """Tests for proxy_icon."""

    def test_png_success(self) -> None:
        service, fetch = _service(
            {
                html_url("main"): _page_with_icon("/upload/logo.png"),
                ICON_URL: raw_response(PNG_BYTES, content_type="image/png"),
            }
        )

        icon = proxy_icon(service, "main", MAX_BYTES)

        assert icon == IconResponse(content_type="image/png", content=PNG_BYTES)
        url, kwargs = fetch.calls[-1]
        assert url == ICON_URL
        assert kwargs == {
            "headers": {"Accept": ICON_ACCEPT},
            "timeout_ms": ICON_TIMEOUT_MS,
            "max_body_bytes": MAX_BYTES,
            "follow_redirects": False,
        }

    def test_cross_origin_is_not_fetched(self) -> None:
        service, fetch = _service({html_url("main"): _page_with_icon("https://evil.example.net/logo.png")})

        assert proxy_icon(service, "main", MAX_BYTES) is None
        assert fetch.urls == [html_url("main")]

    @pytest.mark.parametrize("icon", ["data:image/png;base64,AAAA", "//evil.example.net/logo.png", "/icon.svg", ""])
    def test_unsafe_or_blank_icon(self, icon: str) -> None:
        service, fetch = _service({html_url("main"): _page_with_icon(icon)})

        assert proxy_icon(service, "main", MAX_BYTES) is None
        assert fetch.urls == [html_url("main")]

    def test_base_subpath(self) -> None:
        base_url = "https://example.com/kuma"
        target = "https://example.com/kuma/upload/logo.png"
        service, _ = _service(
            {
                html_url("main", base_url): _page_with_icon("upload/logo.png"),
                target: raw_response(PNG_BYTES, content_type="image/png"),
            },
            base_url=base_url,
        )

        assert proxy_icon(service, "main", MAX_BYTES).content == PNG_BYTES

    def test_non_image_content_type(self) -> None:
        service, _ = _service(
            {
                html_url("main"): _page_with_icon("/upload/logo.png"),
                ICON_URL: raw_response(b"<html></html>", content_type="text/html"),
            }
        )

        assert proxy_icon(service, "main", MAX_BYTES) is None

    def test_upstream_error_status(self) -> None:
        service, _ = _service({html_url("main"): _page_with_icon("/upload/logo.png")})

        assert proxy_icon(service, "main", MAX_BYTES) is None

    def test_body_over_limit(self) -> None:
        service, _ = _service(
            {
                html_url("main"): _page_with_icon("/upload/logo.png"),
                ICON_URL: raw_response(b"x" * (MAX_BYTES + 1), content_type="image/png"),
            }
        )

        assert proxy_icon(service, "main", MAX_BYTES) is None

    def test_transport_rejects_large_body(self) -> None:
        service, _ = _service(
            {
                html_url("main"): _page_with_icon("/upload/logo.png"),
                ICON_URL: TransportError("Response body exceeds 1000 bytes", code="BODY_TOO_LARGE"),
            }
        )

        assert proxy_icon(service, "main", MAX_BYTES) is None

    def test_upstream_page_down(self) -> None:
        service, fetch = _service({})

        assert proxy_icon(service, "main", MAX_BYTES) is None
        assert fetch.urls == [html_url("main")]

    def test_unknown_page_uses_default(self) -> None:
        service, _ = _service(
            {
                html_url("main"): _page_with_icon("/upload/logo.png"),
                ICON_URL: raw_response(PNG_BYTES, content_type="image/png"),
            }
        )

        assert proxy_icon(service, "nope", MAX_BYTES).content == PNG_BYTES
        assert proxy_icon(service, None, MAX_BYTES).content == PNG_BYTES


@pytest.fixture
def other_host() -> FakeUptimeKuma:
    """A second server standing in for a host outside the upstream origin."""
    server = FakeUptimeKuma()
    server.start()
    yield server
    server.stop()


class TestProxyIconRedirects:
    """Tests for icons whose upstream URL redirects."""

    def test_cross_origin_redirect_is_not_followed(self, upstream: FakeUptimeKuma, other_host: FakeUptimeKuma) -> None:
        """A same-origin icon redirecting to another host falls back to the default icon."""
        upstream.add("/status/main", _icon_page_html("/logo.png"))
        upstream.add_redirect("/logo.png", f"{other_host.base_url}/private.png")
        other_host.add("/private.png", PNG_BYTES, content_type="image/png")
        service = DataService(make_config(base_url=upstream.base_url))

        assert proxy_icon(service, "main", MAX_BYTES) is None
        assert other_host.requested == []

    def test_same_origin_redirect_is_not_followed(self, upstream: FakeUptimeKuma) -> None:
        upstream.add("/status/main", _icon_page_html("/logo.png"))
        upstream.add_redirect("/logo.png", "/upload/logo.png")
        upstream.add("/upload/logo.png", PNG_BYTES, content_type="image/png")
        service = DataService(make_config(base_url=upstream.base_url))

        assert proxy_icon(service, "main", MAX_BYTES) is None
        assert "/upload/logo.png" not in upstream.requested

    def test_direct_icon_is_served(self, upstream: FakeUptimeKuma) -> None:
        upstream.add("/status/main", _icon_page_html("/logo.png"))
        upstream.add("/logo.png", PNG_BYTES, content_type="image/png")
        service = DataService(make_config(base_url=upstream.base_url))

        assert proxy_icon(service, "main", MAX_BYTES) == IconResponse(content_type="image/png", content=PNG_BYTES)
