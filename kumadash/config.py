"""Configuration loader with type-safe dataclasses."""

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

import yaml

from .errors import ConfigError
from .models import PageEndpoint, SiteMeta
from .normalize import normalize_base_url
from .transport import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY_MS, DEFAULT_TIMEOUT_MS, FetchSettings

logger = logging.getLogger(__name__)

DEFAULT_SITE_TITLE = "Kuma Dash"
DEFAULT_SITE_DESCRIPTION = "A status dashboard for Uptime Kuma"
DEFAULT_SITE_ICON = "/icon.svg"

# Upper bound for a proxied icon body (1 MiB).
DEFAULT_ICON_MAX_BYTES = 1024 * 1024

# Primary environment names win over the legacy FEATURE_* aliases.
ENV_ALIAS_MAP = {
    "KUMA_MIERU_TITLE": "FEATURE_TITLE",
    "KUMA_MIERU_DESCRIPTION": "FEATURE_DESCRIPTION",
    "KUMA_MIERU_ICON": "FEATURE_ICON",
    "KUMA_MIERU_EDIT_THIS_PAGE": "FEATURE_EDIT_THIS_PAGE",
    "KUMA_MIERU_SHOW_STAR_BUTTON": "FEATURE_SHOW_STAR_BUTTON",
}

_TRUE_VALUES = ("true", "1", "yes")


def _is_http_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


@dataclass(frozen=True)
class FetchConfig:
    """Transport settings for upstream requests."""

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    allow_insecure_tls: bool = False

    def __post_init__(self) -> None:
        if self.timeout_ms < 1:
            raise ConfigError(f"fetch.timeout_ms must be at least 1 (got {self.timeout_ms})")
        if self.max_retries < 0:
            raise ConfigError(f"fetch.max_retries must be non-negative (got {self.max_retries})")
        if self.retry_delay_ms < 0:
            raise ConfigError(f"fetch.retry_delay_ms must be non-negative (got {self.retry_delay_ms})")

    @property
    def settings(self) -> FetchSettings:
        return FetchSettings(
            timeout_ms=self.timeout_ms,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
        )


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the HTTP server."""

    host: str = ""
    port: int = 8080
    allow_embedding: str = ""  # "", "false", "true" or a comma list of origins
    strict_availability: bool = False  # fail the whole dashboard when every page is down
    max_page_workers: int = 16

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}")
        if self.max_page_workers < 1:
            raise ConfigError(f"server.max_page_workers must be at least 1 (got {self.max_page_workers})")


@dataclass(frozen=True)
class FeaturesConfig:
    """Optional dashboard features."""

    edit_this_page: bool = False
    show_star_button: bool = True


@dataclass(frozen=True)
class IconConfig:
    """Limits for the icon proxy."""

    max_bytes: int = DEFAULT_ICON_MAX_BYTES

    def __post_init__(self) -> None:
        if self.max_bytes < 1:
            raise ConfigError(f"icon.max_bytes must be at least 1 (got {self.max_bytes})")


@dataclass(frozen=True)
class PageConfig:
    """A single Uptime Kuma status page."""

    id: str
    base_url: str
    site_meta: SiteMeta = field(default_factory=SiteMeta)

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ConfigError("Page id cannot be empty")
        if "/" in self.id or "?" in self.id or "#" in self.id:
            raise ConfigError(f"Page id '{self.id}' contains invalid characters")
        if not self.base_url:
            raise ConfigError(f"Base URL cannot be empty for page '{self.id}'")
        if not _is_http_url(self.base_url):
            raise ConfigError(f"Base URL must start with http:// or https:// for page '{self.id}'")

    def endpoint(self) -> PageEndpoint:
        base_url = normalize_base_url(self.base_url)
        return PageEndpoint(
            id=self.id,
            base_url=base_url,
            html_endpoint=f"{base_url}/status/{self.id}",
            api_endpoint=f"{base_url}/api/status-page/heartbeat/{self.id}",
            site_meta=self.site_meta,
        )


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    pages: list[PageConfig]
    default_page_id: str | None = None
    site_meta: SiteMeta = field(
        default_factory=lambda: SiteMeta(DEFAULT_SITE_TITLE, DEFAULT_SITE_DESCRIPTION, DEFAULT_SITE_ICON)
    )
    fetch: FetchConfig = field(default_factory=FetchConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    features: FeaturesConfig = field(default_factory=FeaturesConfig)
    icon: IconConfig = field(default_factory=IconConfig)

    def __post_init__(self) -> None:
        if not self.pages:
            raise ConfigError("At least one status page must be configured")
        if self.default_page_id is not None and self.default_page_id not in self.page_ids:
            raise ConfigError(f"default_page_id '{self.default_page_id}' is not a configured page")

    @property
    def page_ids(self) -> list[str]:
        """Configured page ids, deduplicated in configuration order."""
        return list(dict.fromkeys(page.id for page in self.pages))

    @property
    def default_page(self) -> str:
        return self.default_page_id or self.pages[0].id

    @property
    def base_url(self) -> str:
        """Base URL of the default page."""
        return normalize_base_url(self._page_config(self.default_page).base_url)

    def _page_config(self, page_id: str) -> PageConfig:
        return next(page for page in self.pages if page.id == page_id)

    def get_page(self, page_id: str | None = None) -> PageEndpoint | None:
        """Resolve a page id into its endpoints.

        Args:
            page_id: Page to resolve, or None for the default page.

        Returns:
            PageEndpoint, or None if the id is not configured.
        """
        resolved = self.default_page if page_id is None else page_id
        if resolved not in self.page_ids:
            return None

        page = self._page_config(resolved)
        if not page.site_meta.title and not page.site_meta.description:
            page = PageConfig(id=page.id, base_url=page.base_url, site_meta=self.site_meta)
        return page.endpoint()


def _resolve_aliased_env(key: str, env: dict[str, str]) -> tuple[str | None, str | None]:
    """Return (value, source variable) for a primary name or its legacy alias."""
    if key in env:
        return env[key], key
    legacy = ENV_ALIAS_MAP.get(key)
    if legacy and legacy in env:
        return env[legacy], legacy
    return None, None


def parse_status_page_url(raw_url: str) -> tuple[str, str]:
    """Split ``https://host/base/status/<id>`` into (base URL, page id).

    Raises:
        ConfigError: If the URL is not a status page URL.
    """
    parsed = urlparse(raw_url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"UPTIME_KUMA_URLS must contain absolute http(s) URLs, got: {raw_url}")

    segments = [segment for segment in parsed.path.split("/") if segment]
    if "status" not in segments or segments.index("status") + 1 >= len(segments):
        raise ConfigError(
            f"UPTIME_KUMA_URLS must contain status page URLs like https://example.com/status/default, got: {raw_url}"
        )

    status_index = segments.index("status")
    page_id = unquote(segments[status_index + 1]).strip()
    if not page_id:
        raise ConfigError(f"UPTIME_KUMA_URLS contains an empty page id: {raw_url}")

    base_path = "/".join(segments[:status_index])
    base_url = f"{parsed.scheme}://{parsed.netloc}" + (f"/{base_path}" if base_path else "")
    return normalize_base_url(base_url), page_id


def _env_pages(env: dict[str, str]) -> tuple[str, list[str]] | None:
    """Read (base URL, page ids) from the environment, if configured there."""
    raw_urls = env.get("UPTIME_KUMA_URLS", "").strip()
    if raw_urls:
        items = [parse_status_page_url(item) for item in raw_urls.split("|") if item.strip()]
        if not items:
            raise ConfigError("UPTIME_KUMA_URLS must contain at least one status page URL")
        base_url = items[0][0]
        for item_base, _ in items:
            if item_base != base_url:
                raise ConfigError(
                    f"All URLs in UPTIME_KUMA_URLS must share the same base URL. Expected {base_url}, got {item_base}"
                )
        if env.get("UPTIME_KUMA_BASE_URL") or env.get("PAGE_ID"):
            logger.info("UPTIME_KUMA_URLS is set, UPTIME_KUMA_BASE_URL and PAGE_ID are ignored")
        return base_url, list(dict.fromkeys(page_id for _, page_id in items))

    base_url = env.get("UPTIME_KUMA_BASE_URL", "").strip()
    raw_page_ids = env.get("PAGE_ID", "").strip()
    if not base_url and not raw_page_ids:
        return None
    if not base_url:
        raise ConfigError("UPTIME_KUMA_BASE_URL is required when PAGE_ID is set")
    page_ids = [page_id.strip() for page_id in raw_page_ids.split(",") if page_id.strip()]
    if not page_ids:
        raise ConfigError("PAGE_ID must contain at least one status page identifier")
    return normalize_base_url(base_url), list(dict.fromkeys(page_ids))


def _apply_env_overrides(config_data: dict, env: dict[str, str]) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - UPTIME_KUMA_URLS: Pipe-separated status page URLs (replaces pages)
    - UPTIME_KUMA_BASE_URL + PAGE_ID: Base URL and comma-separated page ids
    - KUMADASH_HOST / KUMADASH_PORT: Override server.host / server.port
    - ALLOW_INSECURE_TLS: Override fetch.allow_insecure_tls (true/false)
    - ALLOW_EMBEDDING: Override server.allow_embedding
    - KUMA_MIERU_TITLE / KUMA_MIERU_DESCRIPTION / KUMA_MIERU_ICON: Override site_meta
    - KUMA_MIERU_EDIT_THIS_PAGE / KUMA_MIERU_SHOW_STAR_BUTTON: Override features
    """
    for section in ("upstream", "fetch", "server", "features", "site_meta"):
        if not isinstance(config_data.get(section), dict):
            config_data[section] = {}

    env_pages = _env_pages(env)
    if env_pages is not None:
        base_url, page_ids = env_pages
        existing = {
            str(page.get("id")): page for page in config_data.get("pages") or [] if isinstance(page, dict)
        }
        config_data["upstream"]["base_url"] = base_url
        config_data["pages"] = [
            {"id": page_id, "base_url": base_url, "site_meta": existing.get(page_id, {}).get("site_meta")}
            for page_id in page_ids
        ]
        if config_data.get("default_page_id") not in page_ids:
            config_data["default_page_id"] = page_ids[0]

    host = env.get("KUMADASH_HOST")
    if host is not None:
        config_data["server"]["host"] = host

    port = env.get("KUMADASH_PORT")
    if port is not None:
        try:
            config_data["server"]["port"] = int(port)
        except ValueError:
            raise ConfigError(f"KUMADASH_PORT must be an integer, got: {port}")

    insecure = env.get("ALLOW_INSECURE_TLS")
    if insecure is not None:
        config_data["fetch"]["allow_insecure_tls"] = insecure.strip().lower() in _TRUE_VALUES

    embedding = env.get("ALLOW_EMBEDDING")
    if embedding is not None:
        config_data["server"]["allow_embedding"] = embedding.strip()

    for key, target in (
        ("KUMA_MIERU_TITLE", "title"),
        ("KUMA_MIERU_DESCRIPTION", "description"),
        ("KUMA_MIERU_ICON", "icon"),
    ):
        value, source = _resolve_aliased_env(key, env)
        if value is not None:
            logger.debug("site_meta.%s overridden by %s", target, source)
            config_data["site_meta"][target] = value

    for key, target in (
        ("KUMA_MIERU_EDIT_THIS_PAGE", "edit_this_page"),
        ("KUMA_MIERU_SHOW_STAR_BUTTON", "show_star_button"),
    ):
        value, source = _resolve_aliased_env(key, env)
        if value is not None:
            logger.debug("features.%s overridden by %s", target, source)
            config_data["features"][target] = value.strip().lower() in _TRUE_VALUES

    return config_data


def _parse_site_meta(data: dict | None, default: SiteMeta | None = None) -> SiteMeta:
    """Parse a site_meta mapping."""
    base = default or SiteMeta()
    if data is None:
        return base
    if not isinstance(data, dict):
        raise ConfigError("'site_meta' must be a dictionary")
    return SiteMeta(
        title=str(data.get("title", base.title) or ""),
        description=str(data.get("description", base.description) or ""),
        icon=str(data.get("icon", base.icon) or DEFAULT_SITE_ICON),
    )


def _parse_page_config(data: dict, index: int, default_base_url: str | None) -> PageConfig:
    """Parse a single page configuration entry."""
    if isinstance(data, str):
        data = {"id": data}
    if not isinstance(data, dict):
        raise ConfigError(f"Page entry {index} must be a dictionary or a page id")

    page_id = data.get("id")
    if page_id is None:
        raise ConfigError(f"Page entry {index} is missing 'id' field")

    base_url = data.get("base_url") or default_base_url
    if base_url is None:
        raise ConfigError(f"Page entry {index} has no 'base_url' and no upstream.base_url is set")

    return PageConfig(
        id=str(page_id),
        base_url=str(base_url),
        site_meta=_parse_site_meta(data.get("site_meta")),
    )


def _parse_bool(value: object, default: bool) -> bool:
    """Read a YAML flag; quoted strings follow the same rules as env values."""
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def _parse_fetch_config(data: dict | None) -> FetchConfig:
    if data is None:
        return FetchConfig()
    if not isinstance(data, dict):
        raise ConfigError("'fetch' section must be a dictionary")

    return FetchConfig(
        timeout_ms=int(data.get("timeout_ms", DEFAULT_TIMEOUT_MS)),
        max_retries=int(data.get("max_retries", DEFAULT_MAX_RETRIES)),
        retry_delay_ms=int(data.get("retry_delay_ms", DEFAULT_RETRY_DELAY_MS)),
        allow_insecure_tls=_parse_bool(data.get("allow_insecure_tls"), False),
    )


def _parse_server_config(data: dict | None) -> ServerConfig:
    if data is None:
        return ServerConfig()
    if not isinstance(data, dict):
        raise ConfigError("'server' section must be a dictionary")

    allow_embedding = data.get("allow_embedding", "")
    if isinstance(allow_embedding, bool):
        allow_embedding = "true" if allow_embedding else "false"

    return ServerConfig(
        host=str(data.get("host", "")),
        port=int(data.get("port", 8080)),
        allow_embedding=str(allow_embedding or ""),
        strict_availability=_parse_bool(data.get("strict_availability"), False),
        max_page_workers=int(data.get("max_page_workers", 16)),
    )


def _parse_features_config(data: dict | None) -> FeaturesConfig:
    if data is None:
        return FeaturesConfig()
    if not isinstance(data, dict):
        raise ConfigError("'features' section must be a dictionary")

    return FeaturesConfig(
        edit_this_page=_parse_bool(data.get("edit_this_page"), False),
        show_star_button=_parse_bool(data.get("show_star_button"), True),
    )


def _parse_icon_config(data: dict | None) -> IconConfig:
    if data is None:
        return IconConfig()
    if not isinstance(data, dict):
        raise ConfigError("'icon' section must be a dictionary")

    return IconConfig(max_bytes=int(data.get("max_bytes", DEFAULT_ICON_MAX_BYTES)))


def build_config(data: dict, env: dict[str, str] | None = None) -> Config:
    """Validate a configuration mapping, applying environment overrides.

    Raises:
        ConfigError: If the configuration is invalid.
    """
    data = _apply_env_overrides(copy.deepcopy(data), dict(os.environ) if env is None else env)

    upstream = data.get("upstream") or {}
    default_base_url = upstream.get("base_url")
    if default_base_url is not None:
        default_base_url = str(default_base_url)

    pages_data = data.get("pages")
    if pages_data is None:
        raise ConfigError("Configuration must contain a 'pages' section or UPTIME_KUMA_URLS")
    if not isinstance(pages_data, list):
        raise ConfigError("'pages' must be a list")

    pages = [_parse_page_config(page_data, i, default_base_url) for i, page_data in enumerate(pages_data)]

    default_page_id = data.get("default_page_id")

    try:
        return Config(
            pages=pages,
            default_page_id=str(default_page_id) if default_page_id is not None else None,
            site_meta=_parse_site_meta(
                data.get("site_meta"),
                SiteMeta(DEFAULT_SITE_TITLE, DEFAULT_SITE_DESCRIPTION, DEFAULT_SITE_ICON),
            ),
            fetch=_parse_fetch_config(data.get("fetch")),
            server=_parse_server_config(data.get("server")),
            features=_parse_features_config(data.get("features")),
            icon=_parse_icon_config(data.get("icon")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")


def load_config(config_path: str | None = None, env: dict[str, str] | None = None) -> Config:
    """Load and validate configuration from a YAML file and the environment.

    Args:
        config_path: Path to the YAML configuration file. When None, the
            configuration comes from the environment alone.
        env: Environment mapping, defaults to ``os.environ``.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    if config_path is None:
        return build_config({}, env)

    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    return build_config(data, env)
