"""Markdown security report for one scan cycle."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from netwarden.intel.classify import network_risk_score, risk_level, summarize
from netwarden.intel.rules import RULESET_VERSION
from netwarden.models import AnomalyFinding, ChangeEvent, ScanResult, ThreatFinding

FINDINGS_HEADER = "| Severity | Level | Host | Port | Category | Finding |"
ANOMALIES_HEADER = "| Severity | Type | Device | Description |"
CHANGES_HEADER = "| Time | Change | Device | Details |"


def _cell(value: object) -> str:
    return str(value if value is not None else "-").replace("|", "\\|").replace("\n", " ")


def render_markdown_report(
    results: Iterable[ScanResult],
    findings: Iterable[ThreatFinding],
    *,
    anomalies: Iterable[AnomalyFinding] = (),
    changes: Iterable[ChangeEvent] = (),
    title: str = "Network security report",
    generated_at: datetime | None = None,
) -> str:
    result_list = list(results)
    finding_list = list(findings)
    anomaly_list = list(anomalies)
    change_list = list(changes)
    stamp = (generated_at or datetime.now(timezone.utc)).isoformat()
    score = network_risk_score(finding_list, len(result_list))

    lines = [
        f"# {title}",
        "",
        f"- Generated: {stamp}",
        f"- Rule set: {RULESET_VERSION}",
        f"- Hosts scanned: {len(result_list)}",
        f"- Open ports: {sum(len(result.open_ports) for result in result_list)}",
        f"- Findings: {len(finding_list)}",
        f"- Network risk score: {score}/100",
    ]
    if any(result.cancelled for result in result_list):
        lines.append("- Note: the scan was cancelled before every port was probed.")

    lines.extend(["", "## Hosts", "", "| Host | Risk | Worst | Findings |", "| --- | --- | --- | --- |"])
    for host, entry in summarize(finding_list).items():
        lines.append(f"| {_cell(host)} | {entry['risk_level']} | {entry['max_severity']:.1f} | {entry['finding_count']} |")

    lines.extend(["", "## Findings", ""])
    if finding_list:
        lines.extend([FINDINGS_HEADER, "| --- | --- | --- | --- | --- | --- |"])
        for finding in finding_list:
            lines.append(
                f"| {finding.severity:.1f} | {risk_level(finding.severity)} | {_cell(finding.host)} | "
                f"{_cell(finding.port)} | {finding.category.value} | {_cell(finding.title)} |"
            )
        lines.extend(["", "### Remediation", ""])
        for finding in finding_list:
            port = f":{finding.port}" if finding.port is not None else ""
            lines.append(f"- **{finding.host}{port}** {finding.title}: {finding.remediation}")
    else:
        lines.append("No findings.")

    if anomaly_list:
        lines.extend(["", "## Anomalies", "", ANOMALIES_HEADER, "| --- | --- | --- | --- |"])
        for anomaly in anomaly_list:
            lines.append(
                f"| {anomaly.severity} | {anomaly.type.value} | {_cell(anomaly.device_key)} | {_cell(anomaly.description)} |"
            )

    if change_list:
        lines.extend(["", "## Changes", "", CHANGES_HEADER, "| --- | --- | --- | --- |"])
        for change in change_list:
            lines.append(
                f"| {change.timestamp.isoformat()} | {change.change_type.value} | "
                f"{_cell(change.device_key)} | {_cell(change.details)} |"
            )

    return "\n".join(lines) + "\n"


def export_markdown_report(
    output_path: str | Path,
    results: Iterable[ScanResult],
    findings: Iterable[ThreatFinding],
    *,
    anomalies: Iterable[AnomalyFinding] = (),
    changes: Iterable[ChangeEvent] = (),
) -> Path:
    """Render and write the Markdown report; returns the destination path."""
    target = Path(output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_markdown_report(results, findings, anomalies=anomalies, changes=changes), encoding="utf-8")
    return target
