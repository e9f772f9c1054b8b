"""Device inventory export with per-device risk and history statistics."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from netwarden.intel.classify import risk_level
from netwarden.models import AnomalyFinding, Device, ThreatFinding

from .writers import export_json_document


def build_inventory(
    devices: Iterable[Device],
    *,
    findings: Iterable[ThreatFinding] = (),
    anomalies: Iterable[AnomalyFinding] = (),
    statistics: Mapping[str, dict[str, Any]] | None = None,
) -> dict[str, Any]:
    worst: dict[str, float] = {}
    finding_counts: dict[str, int] = {}
    for finding in findings:
        worst[finding.device_key] = max(worst.get(finding.device_key, 0.0), finding.severity)
        finding_counts[finding.device_key] = finding_counts.get(finding.device_key, 0) + 1

    anomaly_list = list(anomalies)
    entries: list[dict[str, Any]] = []
    for device in sorted(devices, key=lambda item: (item.ip, item.key)):
        entry = device.to_dict()
        entry["display_name"] = device.display_name
        entry["max_severity"] = worst.get(device.key, 0.0)
        entry["risk_level"] = risk_level(entry["max_severity"])
        entry["finding_count"] = finding_counts.get(device.key, 0)
        if statistics and device.key in statistics:
            entry["history"] = statistics[device.key]
        entries.append(entry)

    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "device_count": len(entries),
        "anomaly_count": len(anomaly_list),
        "devices": entries,
        "anomalies": [anomaly.to_dict() for anomaly in anomaly_list],
    }


def export_inventory(
    devices: Iterable[Device],
    output_path: str | Path,
    *,
    findings: Iterable[ThreatFinding] = (),
    anomalies: Iterable[AnomalyFinding] = (),
    statistics: Mapping[str, dict[str, Any]] | None = None,
) -> Path:
    payload = build_inventory(devices, findings=findings, anomalies=anomalies, statistics=statistics)
    return export_json_document(output_path, payload)
