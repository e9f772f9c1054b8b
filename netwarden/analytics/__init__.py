"""Analytics: baselines and anomalies, device history and change timelines."""

from .baseline import access_points_from_devices, build_baseline, detect_anomalies, rebuild_baseline
from .history import CycleRecord, HistoryTracker
from .timeline import (
    bucket_events_by_time,
    build_heatmap_matrix,
    filter_timeline_events,
    normalize_timeline_rows,
)

__all__ = [
    "CycleRecord",
    "HistoryTracker",
    "access_points_from_devices",
    "build_baseline",
    "detect_anomalies",
    "rebuild_baseline",
    "normalize_timeline_rows",
    "filter_timeline_events",
    "bucket_events_by_time",
    "build_heatmap_matrix",
]
