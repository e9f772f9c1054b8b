"""Turn scan results into severity-scored threat findings."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from netwarden.models import PortStatus, ScanResult, ThreatFinding
from netwarden.scanner.fingerprinting import ssh_protocol_version
from netwarden.scanner.ip_utils import is_loopback

from .rules import (
    DHCP_SERVER_PORTS,
    HTTP_PORT,
    HTTPS_PORT,
    PLAINTEXT_WEB_RULE,
    REMOTE_ACCESS_PORTS,
    REMOTE_ACCESS_RULE,
    REMOTE_ACCESS_THRESHOLD,
    ROGUE_DHCP_RULE,
    SSH_V1_RULE,
    HostRule,
    PortRule,
    rule_for_port,
)

RISK_LEVELS = ("critical", "high", "medium", "low", "info")


def _sort_key(finding: ThreatFinding) -> tuple[float, str, int]:
    return (-finding.severity, finding.category.value, finding.port if finding.port is not None else -1)


def _finding(rule: PortRule | HostRule, result: ScanResult, port: int | None, **details: Any) -> ThreatFinding:
    return ThreatFinding(
        category=rule.category,
        severity=rule.severity,
        device_key=result.device.key,
        host=result.host,
        port=port,
        title=rule.title,
        description=rule.description.format(port=port, **details),
        remediation=rule.remediation,
        rule_id=rule.rule_id,
    )


def classify(result: ScanResult, *, trusted_hosts: Iterable[str] = frozenset()) -> list[ThreatFinding]:
    """Apply the rule table to one scan result; same input, same ordered output."""
    trusted = frozenset(trusted_hosts)
    open_ports = sorted(result.open_ports)
    loopback = is_loopback(result.host)
    findings: list[ThreatFinding] = []

    for port in open_ports:
        rule = rule_for_port(port)
        if rule is None or (rule.loopback_exempt and loopback):
            continue
        findings.append(_finding(rule, result, port))

    for port in open_ports:
        if ssh_protocol_version(result.banners.get(port)).startswith("1."):
            findings.append(_finding(SSH_V1_RULE, result, port, banner=result.banners[port]))

    if result.host not in trusted and result.device.key not in trusted:
        for port in open_ports:
            if port in DHCP_SERVER_PORTS:
                findings.append(_finding(ROGUE_DHCP_RULE, result, port))

    if result.status_of(HTTP_PORT) is PortStatus.OPEN and result.status_of(HTTPS_PORT) is not PortStatus.OPEN:
        findings.append(_finding(PLAINTEXT_WEB_RULE, result, HTTP_PORT))

    remote = [port for port in open_ports if port in REMOTE_ACCESS_PORTS]
    if len(remote) >= REMOTE_ACCESS_THRESHOLD:
        findings.append(
            _finding(
                REMOTE_ACCESS_RULE,
                result,
                None,
                count=len(remote),
                ports=", ".join(str(port) for port in remote),
            )
        )

    return sorted(findings, key=_sort_key)


def classify_all(results: Iterable[ScanResult], *, trusted_hosts: Iterable[str] = frozenset()) -> list[ThreatFinding]:
    trusted = frozenset(trusted_hosts)
    findings: list[ThreatFinding] = []
    for result in results:
        findings.extend(classify(result, trusted_hosts=trusted))
    return sorted(findings, key=lambda finding: (*_sort_key(finding), finding.host))


def risk_level(severity: float) -> str:
    """CVSS-style bucket for a 0-10 score."""
    if severity >= 9.0:
        return "critical"
    if severity >= 7.0:
        return "high"
    if severity >= 4.0:
        return "medium"
    if severity > 0.0:
        return "low"
    return "info"


def summarize(findings: Iterable[ThreatFinding]) -> dict[str, dict[str, Any]]:
    """Roll findings up per host: worst severity, risk level and counts per category."""
    summary: dict[str, dict[str, Any]] = {}
    for finding in findings:
        entry = summary.setdefault(
            finding.host,
            {"device_key": finding.device_key, "max_severity": 0.0, "finding_count": 0, "categories": {}},
        )
        entry["max_severity"] = max(entry["max_severity"], finding.severity)
        entry["finding_count"] += 1
        categories: dict[str, int] = entry["categories"]
        categories[finding.category.value] = categories.get(finding.category.value, 0) + 1
    for entry in summary.values():
        entry["risk_level"] = risk_level(entry["max_severity"])
    return dict(sorted(summary.items()))


def network_risk_score(findings: Iterable[ThreatFinding], device_count: int) -> float:
    """0-100 network score: worst finding per host, averaged over every scanned device."""
    if device_count <= 0:
        return 0.0
    worst: dict[str, float] = {}
    for finding in findings:
        worst[finding.host] = max(worst.get(finding.host, 0.0), finding.severity)
    total = sum(worst.values())
    return round(min(100.0, total / device_count * 10.0), 1)
