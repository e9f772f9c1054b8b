"""Tabular exports (CSV/XLSX) of findings, anomalies and change timelines."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import pandas as pd

from netwarden.models import AnomalyFinding, ScanResult, ThreatFinding


def findings_frame(findings: Iterable[ThreatFinding]) -> pd.DataFrame:
    columns = ["host", "device_key", "port", "category", "severity", "rule_id", "title", "description", "remediation"]
    frame = pd.DataFrame([finding.to_dict() for finding in findings], columns=columns)
    return frame.sort_values(["severity", "host"], ascending=[False, True], kind="stable").reset_index(drop=True)


def ports_frame(results: Iterable[ScanResult]) -> pd.DataFrame:
    """One row per host/port pair with its status and banner."""
    rows: list[dict[str, Any]] = []
    for result in results:
        for port, status in sorted(result.statuses.items()):
            rows.append(
                {
                    "cycle_id": result.cycle_id,
                    "host": result.host,
                    "device_key": result.device.key,
                    "name": result.device.display_name,
                    "protocol": result.protocol,
                    "port": port,
                    "status": status.value,
                    "banner": result.banners.get(port, ""),
                    "timestamp": result.timestamp.isoformat(),
                }
            )
    return pd.DataFrame(rows, columns=["cycle_id", "host", "device_key", "name", "protocol", "port", "status", "banner", "timestamp"])


def anomalies_frame(anomalies: Iterable[AnomalyFinding]) -> pd.DataFrame:
    return pd.DataFrame(
        [anomaly.to_dict() for anomaly in anomalies],
        columns=["type", "severity", "device_key", "description", "detected_at"],
    )


def export_timeline_to_csv(rows: Iterable[dict[str, Any]], output_path: str | Path) -> Path:
    """Export normalized timeline rows to CSV."""
    target = Path(output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    dataframe = pd.DataFrame(list(rows))
    dataframe.to_csv(target, index=False)
    return target


def export_findings_to_csv(findings: Iterable[ThreatFinding], output_path: str | Path) -> Path:
    target = Path(output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    findings_frame(findings).to_csv(target, index=False)
    return target


def export_session_to_xlsx(
    output_path: str | Path,
    *,
    results: Iterable[ScanResult] = (),
    findings: Iterable[ThreatFinding] = (),
    anomalies: Iterable[AnomalyFinding] = (),
    timeline_rows: Iterable[dict[str, Any]] = (),
) -> Path:
    """Write one workbook with ports, findings, anomalies and timeline sheets."""
    target = Path(output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    timeline = pd.DataFrame(list(timeline_rows))
    if "timestamp" in timeline.columns:
        # Excel cannot store timezone-aware datetimes.
        timeline["timestamp"] = timeline["timestamp"].astype(str)
    with pd.ExcelWriter(target) as writer:
        ports_frame(results).to_excel(writer, sheet_name="ports", index=False)
        findings_frame(findings).to_excel(writer, sheet_name="findings", index=False)
        anomalies_frame(anomalies).to_excel(writer, sheet_name="anomalies", index=False)
        timeline.to_excel(writer, sheet_name="timeline", index=False)
    return target
