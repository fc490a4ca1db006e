"""Per-page data service built on the preload resolver.

A ``DataService`` lives for one incoming request. Every read goes through its
``RequestMemo`` so that the same operation for the same page hits the
upstream at most once per request, even when called from several threads.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

from .config import Config
from .errors import ApiDataError, ConfigError, KumaError, MonitorDataError, classify_request_error, error_message
from .models import GlobalConfigResult, MaintenanceResult, MonitoringDataResult, PageEndpoint, PreloadData, Theme
from .normalize import build_icon_proxy_url, normalize_incident, process_heartbeat_data, process_maintenance_data
from .preload import resolve_preload_data_from_html
from .transport import Fetch

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUIRED_CONFIG_FIELDS = ("slug", "title", "description", "icon", "theme")


class RequestMemo:
    """Request-scoped memo keyed by ``(operation, page_id)``.

    The first caller for a key computes the value; concurrent callers for the
    same key wait for that result. Raised errors are memoized as well.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._futures: dict[tuple[str, str], Future] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._futures)

    def __contains__(self, key: tuple[str, str]) -> bool:
        with self._lock:
            return key in self._futures

    def get_or_compute(self, operation: str, page_id: str, compute: Callable[[], T]) -> T:
        key = (operation, page_id)
        with self._lock:
            future = self._futures.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._futures[key] = future

        if owner:
            try:
                future.set_result(compute())
            except Exception as e:
                future.set_exception(e)
            except BaseException as e:
                # Waiters must not block on a future that never resolves
                future.set_exception(e)
                raise

        return future.result()


def coerce_theme(theme: str) -> Theme:
    """Map an upstream theme to ``light``, ``dark`` or ``system``."""
    if theme == "dark":
        return "dark"
    if theme == "light":
        return "light"
    return "system"


def build_fallback_config(page_id: str | None) -> dict[str, Any]:
    """Site config served when the upstream cannot be read."""
    return {
        "slug": "",
        "title": "",
        "description": "",
        "icon": build_icon_proxy_url(page_id),
        "theme": "system",
        "published": True,
        "showTags": True,
        "customCSS": "",
        "footerText": "",
        "showPoweredBy": False,
        "googleAnalyticsId": None,
        "showCertificateExpiry": False,
    }


def _invalid_page_message(page_id: str | None) -> str:
    return f"Invalid status page id: {page_id if page_id is not None else 'undefined'}"


class DataService:
    """Reads site config, maintenance and monitoring data for configured pages.

    Args:
        config: Application configuration.
        memo: Memo shared by this request, a fresh one by default.
        fetch: Transport used for upstream requests, defaults to the
            configured retrying client.
    """

    def __init__(self, config: Config, memo: RequestMemo | None = None, fetch: Fetch | None = None) -> None:
        self._config = config
        self._memo = memo if memo is not None else RequestMemo()
        self._fetch = fetch if fetch is not None else config.fetch.settings.fetch

    @property
    def config(self) -> Config:
        return self._config

    @property
    def memo(self) -> RequestMemo:
        return self._memo

    @property
    def fetch(self) -> Fetch:
        return self._fetch

    def get_preload_data(self, page: PageEndpoint) -> PreloadData:
        """Fetch the status page HTML and resolve its preload data.

        Raises:
            ConfigError: If the page cannot be fetched or no strategy succeeded.
        """
        return self._memo.get_or_compute("preload", page.id, lambda: self._load_preload_data(page))

    def _load_preload_data(self, page: PageEndpoint) -> PreloadData:
        try:
            response = self._fetch(page.html_endpoint)
        except KumaError as e:
            logger.error("Failed to get preload data from %s: %s", page.html_endpoint, e.message)
            raise ConfigError("Failed to get preload data from upstream", cause=e) from e

        if not response.ok:
            raise ConfigError(f"Failed to get HTML: {response.status_code} {response.status_text}")

        resolved = resolve_preload_data_from_html(
            response.text(),
            base_url=page.base_url,
            page_id=page.id,
            fetch=self._fetch,
            include_html_diagnostics=True,
        )
        logger.debug("Resolved preload data for page %s from %s", page.id, resolved.source)
        return resolved.data

    def get_global_config(self, page_id: str | None = None) -> GlobalConfigResult:
        """Site configuration for a page. Never raises for upstream failures."""
        page = self._config.get_page(page_id)
        if page is None:
            logger.error("Invalid status page id received for configuration: %s", page_id)
            return GlobalConfigResult(
                success=False,
                status="all_failed",
                config=build_fallback_config(page_id),
                maintenance_list=[],
                failure_type="unknown",
                error=_invalid_page_message(page_id),
            )
        return self._memo.get_or_compute("global_config", page.id, lambda: self._load_global_config(page))

    def _load_global_config(self, page: PageEndpoint) -> GlobalConfigResult:
        try:
            preload = self.get_preload_data(page)
            site_config = preload.config

            for field in REQUIRED_CONFIG_FIELDS:
                if field not in site_config:
                    raise ConfigError(f"Configuration is missing required field: {field}")

            if not isinstance(site_config["theme"], str):
                raise ConfigError("Theme must be a string")

            maintenance = self.get_maintenance_data(page.id)

            return GlobalConfigResult(
                success=True,
                status="ok",
                config={
                    **site_config,
                    "icon": build_icon_proxy_url(page.id),
                    "theme": coerce_theme(site_config["theme"]),
                },
                maintenance_list=maintenance.maintenance_list,
                incident=normalize_incident(preload.incident),
            )
        except Exception as e:
            logger.error("Failed to get configuration data for %s: %s", page.html_endpoint, error_message(e))
            return GlobalConfigResult(
                success=False,
                status="all_failed",
                config=build_fallback_config(page.id),
                maintenance_list=[],
                failure_type=classify_request_error(e),
                error=error_message(e),
            )

    def get_maintenance_data(self, page_id: str | None = None) -> MaintenanceResult:
        """Maintenance windows for a page with freshly derived status."""
        page = self._config.get_page(page_id)
        if page is None:
            return MaintenanceResult(
                success=False,
                maintenance_list=[],
                failure_type="unknown",
                error=_invalid_page_message(page_id),
            )
        return self._memo.get_or_compute("maintenance", page.id, lambda: self._load_maintenance_data(page))

    def _load_maintenance_data(self, page: PageEndpoint) -> MaintenanceResult:
        try:
            preload = self.get_preload_data(page)
            if not isinstance(preload.maintenance_list, list):
                raise ApiDataError("Maintenance list data must be an array")

            return MaintenanceResult(
                success=True,
                maintenance_list=process_maintenance_data(preload.maintenance_list),
            )
        except Exception as e:
            logger.warning("Failed to get maintenance data for page %s: %s", page.id, error_message(e))
            return MaintenanceResult(
                success=False,
                maintenance_list=[],
                failure_type=classify_request_error(e),
                error=error_message(e),
            )

    def get_monitoring_data(self, page_id: str | None = None) -> MonitoringDataResult:
        """Monitor groups from preload data plus live heartbeats from the API."""
        page = self._config.get_page(page_id)
        if page is None:
            logger.error("Invalid status page id received for monitoring data: %s", page_id)
            return MonitoringDataResult(
                success=False,
                status="all_failed",
                monitor_groups=[],
                heartbeat_list={},
                uptime_list={},
                failure_type="unknown",
                error=_invalid_page_message(page_id),
            )
        return self._memo.get_or_compute("monitoring", page.id, lambda: self._load_monitoring_data(page))

    def _load_monitoring_data(self, page: PageEndpoint) -> MonitoringDataResult:
        try:
            preload = self.get_preload_data(page)
            monitor_groups = preload.public_group_list

            response = self._fetch(page.api_endpoint)
            if not response.ok:
                raise MonitorDataError(f"API request failed: {response.status_code} {response.status_text}")

            try:
                raw = response.json()
            except ValueError as e:
                raise MonitorDataError("Monitor data JSON parsing failed", cause=e) from e

            if not isinstance(raw, dict):
                raise MonitorDataError("Monitor data must be an object")
            if "heartbeatList" not in raw or "uptimeList" not in raw:
                raise MonitorDataError("Monitor data is missing required fields")
            if not isinstance(raw["heartbeatList"], dict) or not isinstance(raw["uptimeList"], dict):
                raise MonitorDataError("Heartbeat list and uptime list must be objects")

            return MonitoringDataResult(
                success=True,
                status="ok",
                monitor_groups=monitor_groups,
                heartbeat_list=process_heartbeat_data(raw["heartbeatList"]),
                uptime_list=raw["uptimeList"],
            )
        except Exception as e:
            logger.error("Failed to get monitoring data from %s: %s", page.api_endpoint, error_message(e))
            return MonitoringDataResult(
                success=False,
                status="all_failed",
                monitor_groups=[],
                heartbeat_list={},
                uptime_list={},
                failure_type=classify_request_error(e),
                error=error_message(e),
            )

    def get_upstream_icon_url(self, page_id: str | None = None) -> str | None:
        """The icon configured on the upstream status page, if any."""
        page = self._config.get_page(page_id)
        if page is None:
            return None
        try:
            preload = self.get_preload_data(page)
        except KumaError:
            return None
        icon = preload.config.get("icon")
        if isinstance(icon, str) and icon.strip():
            return icon.strip()
        return None
