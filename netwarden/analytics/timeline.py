"""Timeline aggregations of change events for reports and exports."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from netwarden.models import ChangeEvent, ChangeType

BUCKETS = {"hour", "day"}


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value or "").strip()
    if not text:
        return None

    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _bucket_start(timestamp: datetime, bucket: str) -> datetime:
    if bucket == "hour":
        return timestamp.replace(minute=0, second=0, microsecond=0)
    return timestamp.replace(hour=0, minute=0, second=0, microsecond=0)


def normalize_timeline_rows(
    events: Iterable[ChangeEvent | dict[str, Any]],
    *,
    schedule_overlays: list[dict[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    """Flatten change events (records or stored dicts) into chronological timeline rows.

    ``schedule_overlays`` are scheduler events keyed by ``cycle_id``; their job
    ids are attached to rows from the same cycle.
    """
    jobs_by_cycle: dict[str, set[str]] = defaultdict(set)
    for overlay in schedule_overlays or []:
        cycle_id = str(overlay.get("cycle_id") or "")
        if cycle_id and overlay.get("job_id"):
            jobs_by_cycle[cycle_id].add(str(overlay["job_id"]))

    rows: list[dict[str, Any]] = []
    for event in events:
        payload = event.to_dict() if isinstance(event, ChangeEvent) else dict(event)
        timestamp = _parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            continue
        cycle_id = str(payload.get("cycle_id") or "")
        rows.append(
            {
                "timestamp": timestamp,
                "timestamp_iso": timestamp.isoformat(),
                "change_type": str(payload.get("change_type") or "unknown"),
                "device_key": str(payload.get("device_key") or ""),
                "port": payload.get("port"),
                "previous": payload.get("previous"),
                "current": payload.get("current"),
                "details": str(payload.get("details") or ""),
                "cycle_id": cycle_id,
                "schedule_job_ids": ",".join(sorted(jobs_by_cycle.get(cycle_id, ()))),
            }
        )
    return sorted(rows, key=lambda row: row["timestamp"])


def filter_timeline_events(
    rows: list[dict[str, Any]],
    *,
    change_types: Iterable[ChangeType | str] | None = None,
    device_key: str = "",
    since: datetime | None = None,
) -> list[dict[str, Any]]:
    """Filter normalized rows by change type, device key substring and start time."""
    wanted = {str(getattr(item, "value", item)) for item in change_types} if change_types else None
    key_filter = device_key.strip().lower()
    filtered: list[dict[str, Any]] = []
    for row in rows:
        if wanted is not None and row.get("change_type") not in wanted:
            continue
        if key_filter and key_filter not in str(row.get("device_key", "")).lower():
            continue
        if since is not None and row["timestamp"] < since:
            continue
        filtered.append(row)
    return filtered


def bucket_events_by_time(rows: list[dict[str, Any]], *, bucket: str = "hour") -> list[dict[str, Any]]:
    """Count rows per hour/day bucket, split by change type."""
    if bucket not in BUCKETS:
        raise ValueError("bucket must be 'hour' or 'day'")

    grouped: dict[datetime, dict[str, int]] = defaultdict(lambda: {change.value: 0 for change in ChangeType} | {"total": 0})
    for row in rows:
        timestamp = _parse_timestamp(row.get("timestamp") or row.get("timestamp_iso"))
        if timestamp is None:
            continue
        counts = grouped[_bucket_start(timestamp, bucket)]
        change_type = str(row.get("change_type") or "")
        if change_type in counts:
            counts[change_type] += 1
        counts["total"] += 1

    return [
        {
            "bucket": key,
            "bucket_label": key.strftime("%Y-%m-%d %H:00") if bucket == "hour" else key.strftime("%Y-%m-%d"),
            **counts,
        }
        for key, counts in sorted(grouped.items(), key=lambda item: item[0])
    ]


def build_heatmap_matrix(rows: list[dict[str, Any]]) -> tuple[list[list[int]], list[str], list[str]]:
    """Build a weekday/hour matrix showing when the network changes."""
    matrix = [[0 for _ in range(24)] for _ in range(7)]
    for row in rows:
        timestamp = _parse_timestamp(row.get("timestamp") or row.get("timestamp_iso"))
        if timestamp is None:
            continue
        matrix[timestamp.weekday()][timestamp.hour] += 1

    weekdays = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
    hours = [f"{hour:02d}" for hour in range(24)]
    return matrix, weekdays, hours
