"""Tests for security module."""

import pytest

from kumadash.security import (
    MAX_PAGE_ID_LENGTH,
    IconURLError,
    is_same_origin,
    validate_icon_url,
    validate_page_id,
)

BASE_URL = "https://status.example.com"


class TestValidateIconUrl:
    """Tests for icon URL validation."""

    def test_allows_relative_path(self) -> None:
        """Should resolve relative paths against the base URL."""
        assert validate_icon_url("/upload/logo.png", BASE_URL) == f"{BASE_URL}/upload/logo.png"

    def test_allows_same_origin_url(self) -> None:
        """Should allow absolute URLs on the upstream origin."""
        url = f"{BASE_URL}/upload/logo.png"
        assert validate_icon_url(url, BASE_URL) == url

    def test_keeps_base_path(self) -> None:
        """Should keep a base path such as /kuma."""
        assert validate_icon_url("/logo.png", "https://example.com/kuma/") == "https://example.com/kuma/logo.png"

    def test_strips_whitespace(self) -> None:
        """Should ignore surrounding whitespace."""
        assert validate_icon_url("  /logo.png ", BASE_URL) == f"{BASE_URL}/logo.png"

    def test_blocks_empty(self) -> None:
        """Should block empty values."""
        with pytest.raises(IconURLError, match="Empty icon URL"):
            validate_icon_url("  ", BASE_URL)

    def test_blocks_data_scheme(self) -> None:
        """Should block data: URIs."""
        with pytest.raises(IconURLError, match="Scheme 'data' not allowed"):
            validate_icon_url("data:image/svg+xml;base64,PHN2Zz4=", BASE_URL)

    def test_blocks_javascript_scheme(self) -> None:
        """Should block javascript: URIs."""
        with pytest.raises(IconURLError, match="Scheme 'javascript' not allowed"):
            validate_icon_url("javascript:alert(1)", BASE_URL)

    def test_blocks_file_scheme(self) -> None:
        """Should block file:// URLs."""
        with pytest.raises(IconURLError, match="Scheme 'file' not allowed"):
            validate_icon_url("file:///etc/passwd", BASE_URL)

    def test_blocks_unknown_scheme(self) -> None:
        """Should block schemes other than http and https."""
        with pytest.raises(IconURLError, match="Scheme 'ws' not allowed"):
            validate_icon_url("ws://status.example.com/logo.png", BASE_URL)

    def test_blocks_protocol_relative(self) -> None:
        """Should block protocol-relative URLs."""
        with pytest.raises(IconURLError, match="Protocol-relative"):
            validate_icon_url("//status.example.com/logo.png", BASE_URL)

    def test_blocks_backslash_protocol_relative(self) -> None:
        """Should block backslash protocol-relative URLs."""
        with pytest.raises(IconURLError, match="Protocol-relative"):
            validate_icon_url("\\\\evil.example.net\\logo.png", BASE_URL)

    def test_blocks_other_host(self) -> None:
        """Should block URLs on another host."""
        with pytest.raises(IconURLError, match="origin differs"):
            validate_icon_url("https://evil.example.net/logo.png", BASE_URL)

    def test_blocks_other_scheme(self) -> None:
        """Should block a scheme downgrade."""
        with pytest.raises(IconURLError, match="origin differs"):
            validate_icon_url("http://status.example.com/logo.png", BASE_URL)

    def test_blocks_other_port(self) -> None:
        """Should block another port on the same host."""
        with pytest.raises(IconURLError, match="origin differs"):
            validate_icon_url("https://status.example.com:8443/logo.png", BASE_URL)

    def test_blocks_userinfo_host_confusion(self) -> None:
        """Should compare the real host, not the userinfo."""
        with pytest.raises(IconURLError, match="origin differs"):
            validate_icon_url("https://status.example.com@evil.example.net/logo.png", BASE_URL)


class TestIsSameOrigin:
    """Tests for origin comparison."""

    def test_default_https_port(self) -> None:
        """Should treat :443 as the https default."""
        assert is_same_origin("https://status.example.com:443/a", BASE_URL)

    def test_default_http_port(self) -> None:
        """Should treat :80 as the http default."""
        assert is_same_origin("http://example.com/a", "http://example.com:80")

    def test_host_case(self) -> None:
        """Should compare hosts case-insensitively."""
        assert is_same_origin("https://STATUS.example.com/a", BASE_URL)

    def test_different_port(self) -> None:
        """Should distinguish explicit ports."""
        assert not is_same_origin("http://127.0.0.1:3001/a", "http://127.0.0.1:3002")

    def test_relative_url(self) -> None:
        """Should reject URLs without an origin."""
        assert not is_same_origin("/logo.png", BASE_URL)

    def test_invalid_port(self) -> None:
        """Should reject malformed ports."""
        assert not is_same_origin("https://status.example.com:99999/a", BASE_URL)


class TestValidatePageId:
    """Tests for page id validation."""

    def test_valid_simple_id(self) -> None:
        """Should accept simple slugs."""
        assert validate_page_id("main") == "main"

    def test_valid_id_with_separators(self) -> None:
        """Should accept dashes, underscores and dots."""
        assert validate_page_id("prod-eu_1.v2") == "prod-eu_1.v2"

    def test_rejects_empty(self) -> None:
        """Should reject empty ids."""
        assert validate_page_id("") is None

    def test_rejects_path_traversal(self) -> None:
        """Should reject path traversal attempts."""
        assert validate_page_id("../etc") is None
        assert validate_page_id("a..b") is None

    def test_rejects_slashes(self) -> None:
        """Should reject forward and back slashes."""
        assert validate_page_id("a/b") is None
        assert validate_page_id("a\\b") is None

    def test_rejects_control_characters(self) -> None:
        """Should reject null bytes and control characters."""
        assert validate_page_id("main\x00") is None
        assert validate_page_id("main\n") is None

    def test_rejects_special_characters(self) -> None:
        """Should reject characters outside the slug alphabet."""
        assert validate_page_id("main page") is None
        assert validate_page_id("main?x=1") is None
        assert validate_page_id("<script>") is None

    def test_length_limit(self) -> None:
        """Should reject ids longer than the limit."""
        assert validate_page_id("a" * MAX_PAGE_ID_LENGTH) == "a" * MAX_PAGE_ID_LENGTH
        assert validate_page_id("a" * (MAX_PAGE_ID_LENGTH + 1)) is None
