"""JSON document writers for scan, discovery and history exports."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any

from netwarden.intel.rules import RULESET_VERSION
from netwarden.models import AnomalyFinding, ChangeEvent, ScanResult, ThreatFinding


def export_json_document(path: str | Path, payload: dict[str, Any]) -> Path:
    """Write a formatted JSON document and return the destination path."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n", encoding="utf-8")
    return target


def build_scan_document(
    results: Iterable[ScanResult],
    findings: Iterable[ThreatFinding] = (),
    anomalies: Iterable[AnomalyFinding] = (),
    changes: Iterable[ChangeEvent] = (),
) -> dict[str, Any]:
    result_list = list(results)
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "ruleset_version": RULESET_VERSION,
        "cycle_ids": sorted({result.cycle_id for result in result_list}),
        "host_count": len(result_list),
        "results": [result.to_dict() for result in result_list],
        "findings": [finding.to_dict() for finding in findings],
        "anomalies": [anomaly.to_dict() for anomaly in anomalies],
        "changes": [change.to_dict() for change in changes],
    }


def export_scan_document(
    path: str | Path,
    results: Iterable[ScanResult],
    findings: Iterable[ThreatFinding] = (),
    anomalies: Iterable[AnomalyFinding] = (),
    changes: Iterable[ChangeEvent] = (),
) -> Path:
    return export_json_document(path, build_scan_document(results, findings, anomalies, changes))
