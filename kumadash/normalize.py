"""Normalization of upstream timestamps, maintenance windows and heartbeats."""

import logging
import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

from .models import MonitorStatusCounts

logger = logging.getLogger(__name__)

ICON_PROXY_PATH = "/api/icon"

_OFFSET_SUFFIX_RE = re.compile(r"[+-]\d{2}:?\d{2}$")
_COLON_OFFSET_RE = re.compile(r"([+-]\d{2}):(\d{2})$")
_SPLIT_OFFSET_RE = re.compile(r"^(.*?)\s*([+-])(\d{2})(\d{2})$")

# Heartbeat status codes as sent by Uptime Kuma.
MONITOR_STATUS_KEYS = {0: "down", 1: "up", 2: "pending", 3: "maintenance"}


def normalize_base_url(base_url: str) -> str:
    """Strip trailing slashes from a base URL."""
    return base_url.rstrip("/")


def build_icon_proxy_url(page_id: str | None = None) -> str:
    """Return the local icon proxy URL for a page."""
    if not page_id:
        return ICON_PROXY_PATH
    return f"{ICON_PROXY_PATH}?pageId={quote(page_id, safe='')}"


def ensure_utc_timezone(value: Any) -> Any:
    """Give an upstream timestamp an explicit ``+HHMM`` offset.

    Uptime Kuma sends UTC times without an offset. Strings with no offset get
    `` +0000`` appended, ``Z`` becomes `` +0000`` and ``+HH:MM`` becomes
    ``+HHMM``. Applying the function twice returns the same string.
    Non-string and empty values are returned unchanged.
    """
    if not isinstance(value, str) or not value:
        return value
    if value.endswith("Z") or _OFFSET_SUFFIX_RE.search(value):
        return _COLON_OFFSET_RE.sub(r"\1\2", value.replace("Z", " +0000", 1))
    return f"{value} +0000"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an upstream timestamp into an aware UTC datetime, or None."""
    normalized = ensure_utc_timezone(value)
    if not isinstance(normalized, str) or not normalized:
        return None

    match = _SPLIT_OFFSET_RE.match(normalized)
    if not match:
        return None

    base, sign, hours, minutes = match.groups()
    try:
        parsed = datetime.fromisoformat(f"{base.strip()}{sign}{hours}:{minutes}")
    except ValueError:
        return None
    return parsed.astimezone(UTC)


def maintenance_status(start: datetime, end: datetime, now: datetime) -> str:
    """Derive the status of a maintenance window relative to ``now``."""
    if start <= now < end:
        return "under-maintenance"
    if now < start:
        return "scheduled"
    return "ended"


def process_maintenance_data(maintenance_list: list[dict[str, Any]], now: datetime | None = None) -> list[dict[str, Any]]:
    """Normalize timeslots and recompute each window's status.

    Status is derived from the first timeslot on every call and never cached.
    Entries whose first timeslot cannot be parsed keep their upstream status.
    """
    if now is None:
        now = datetime.now(UTC)

    processed_list: list[dict[str, Any]] = []
    for maintenance in maintenance_list:
        processed = dict(maintenance)
        timeslots = maintenance.get("timeslotList")

        if isinstance(timeslots, list) and timeslots:
            processed["timeslotList"] = [
                {
                    **slot,
                    "startDate": ensure_utc_timezone(slot.get("startDate")),
                    "endDate": ensure_utc_timezone(slot.get("endDate")),
                }
                for slot in timeslots
                if isinstance(slot, dict)
            ]

            if processed["timeslotList"]:
                first = processed["timeslotList"][0]
                start = parse_timestamp(first.get("startDate"))
                end = parse_timestamp(first.get("endDate"))
                if start is not None and end is not None:
                    processed["status"] = maintenance_status(start, end, now)
                else:
                    logger.debug("Unparseable maintenance timeslot: %s", first)

        processed_list.append(processed)

    return processed_list


def process_heartbeat_data(heartbeat_list: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Return a copy of the heartbeat map with every ``time`` normalized."""
    processed: dict[str, list[dict[str, Any]]] = {}
    for monitor_id, heartbeats in heartbeat_list.items():
        if not isinstance(heartbeats, list):
            processed[str(monitor_id)] = []
            continue
        processed[str(monitor_id)] = [
            {**beat, "time": ensure_utc_timezone(beat.get("time"))} if isinstance(beat, dict) else beat
            for beat in heartbeats
        ]
    return processed


def normalize_incident(incident: dict[str, Any] | None) -> dict[str, Any] | None:
    """Normalize the created/updated timestamps of an incident."""
    if not incident:
        return None
    return {
        **incident,
        "createdDate": ensure_utc_timezone(incident.get("createdDate")),
        "lastUpdatedDate": ensure_utc_timezone(incident.get("lastUpdatedDate")),
    }


def monitor_status_key(status: Any) -> str:
    """Map a heartbeat status code to ``up``/``down``/``pending``/``maintenance``/``unknown``."""
    if isinstance(status, bool):
        return "unknown"
    return MONITOR_STATUS_KEYS.get(status, "unknown")


def calculate_monitor_status_counts(
    monitor_groups: list[dict[str, Any]],
    heartbeat_list: dict[str, list[dict[str, Any]]],
) -> MonitorStatusCounts:
    """Count monitors by the status of their latest heartbeat."""
    monitor_ids: list[str] = []
    for group in monitor_groups:
        for monitor in group.get("monitorList") or []:
            monitor_id = str(monitor.get("id"))
            if monitor_id not in monitor_ids:
                monitor_ids.append(monitor_id)

    counts = {"up": 0, "down": 0, "pending": 0, "maintenance": 0, "unknown": 0}
    for monitor_id in monitor_ids:
        heartbeats = heartbeat_list.get(monitor_id) or []
        latest = heartbeats[-1] if heartbeats else None
        key = monitor_status_key(latest.get("status") if isinstance(latest, dict) else None)
        counts[key] += 1

    return MonitorStatusCounts(
        total=len(monitor_ids),
        abnormal=len(monitor_ids) - counts["up"],
        **counts,
    )
