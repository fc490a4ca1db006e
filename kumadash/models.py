"""Data models for status pages, preload payloads and aggregation results."""

from dataclasses import dataclass, field
from typing import Any, Literal

from .errors import FailureKind

Theme = Literal["light", "dark", "system"]
PageHealth = Literal["healthy", "unavailable"]
MatrixStatus = Literal["ok", "partial_failed", "all_failed"]
ResultStatus = Literal["ok", "all_failed"]
PreloadSource = Literal["script", "data-json", "legacy-window-preload", "api-fallback"]


@dataclass(frozen=True)
class SiteMeta:
    """Statically configured metadata for a status page.

    Attributes:
        title: Display title, used when upstream metadata is blank.
        description: Display description.
        icon: Icon path or URL shown when no upstream icon is available.
    """

    title: str = ""
    description: str = ""
    icon: str = "/icon.svg"


@dataclass(frozen=True)
class PageEndpoint:
    """One monitored Uptime Kuma status page.

    Attributes:
        id: Status page slug.
        base_url: Upstream origin without a trailing slash.
        html_endpoint: ``{base_url}/status/{id}``.
        api_endpoint: ``{base_url}/api/status-page/heartbeat/{id}``.
        site_meta: Static metadata for this page.
    """

    id: str
    base_url: str
    html_endpoint: str
    api_endpoint: str
    site_meta: SiteMeta = field(default_factory=SiteMeta)


@dataclass(frozen=True)
class PreloadData:
    """Status page payload recovered from upstream HTML or the JSON API."""

    config: dict[str, Any]
    public_group_list: list[Any]
    maintenance_list: list[Any] | None = None
    incident: dict[str, Any] | None = None


@dataclass(frozen=True)
class ResolvedPreloadData:
    """Preload data plus the extraction strategy that produced it."""

    data: PreloadData
    source: PreloadSource


@dataclass(frozen=True)
class GlobalConfigResult:
    """Site configuration for one page, tagged with success information."""

    success: bool
    status: ResultStatus
    config: dict[str, Any]
    maintenance_list: list[dict[str, Any]]
    incident: dict[str, Any] | None = None
    failure_type: FailureKind | None = None
    error: str | None = None


@dataclass(frozen=True)
class MaintenanceResult:
    """Maintenance windows for one page."""

    success: bool
    maintenance_list: list[dict[str, Any]]
    failure_type: FailureKind | None = None
    error: str | None = None


@dataclass(frozen=True)
class MonitoringDataResult:
    """Monitor topology plus live heartbeat and uptime numbers for one page."""

    success: bool
    status: ResultStatus
    monitor_groups: list[dict[str, Any]]
    heartbeat_list: dict[str, list[dict[str, Any]]]
    uptime_list: dict[str, Any]
    failure_type: FailureKind | None = None
    error: str | None = None


@dataclass(frozen=True)
class PageTabMeta:
    """Per-page health snapshot used to drive the tab navigation."""

    id: str
    title: str
    icon: str
    health: PageHealth
    description: str | None = None
    failure_type: FailureKind | None = None
    failure_message: str | None = None
    failure_status_code: int | None = None
    failure_status_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "icon": self.icon,
            "health": self.health,
        }
        if self.health == "unavailable":
            data["failureType"] = self.failure_type
            data["failureMessage"] = self.failure_message
            data["failureStatusCode"] = self.failure_status_code
            data["failureStatusMessage"] = self.failure_status_message
        return data


@dataclass(frozen=True)
class PageTabsStatusMatrix:
    """Cluster-wide availability derived from the page tabs."""

    status: MatrixStatus
    failed_page_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "failedPageIds": list(self.failed_page_ids)}


@dataclass(frozen=True)
class PageTabsResult:
    """Tabs for every configured page and their reduction."""

    tabs: list[PageTabMeta]
    matrix: PageTabsStatusMatrix


@dataclass(frozen=True)
class MonitorStatusCounts:
    """Number of monitors per current status."""

    total: int = 0
    up: int = 0
    down: int = 0
    pending: int = 0
    maintenance: int = 0
    unknown: int = 0
    abnormal: int = 0
