"""Persistence helpers for preferences, scan history and device history."""

from .history_store import HistoryStore
from .preferences import (
    get_preference,
    list_scan_history,
    list_threat_findings,
    record_scan_history,
    record_threat_findings,
    set_preference,
)

__all__ = [
    "HistoryStore",
    "get_preference",
    "set_preference",
    "record_scan_history",
    "list_scan_history",
    "record_threat_findings",
    "list_threat_findings",
]
