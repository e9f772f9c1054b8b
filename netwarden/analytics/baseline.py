"""Network baselines learned from scan history, and anomaly detection against them."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
import logging

from netwarden.discovery.vendors import normalize_mac
from netwarden.errors import InsufficientData, InvalidConfiguration
from netwarden.models import AccessPoint, AnomalyFinding, AnomalyType, Baseline, Device, ScanResult, utc_now

logger = logging.getLogger(__name__)

BEHAVIOR_CHANGE_FACTOR = 3.0
UNUSUAL_PORT_SEVERITY = 6
NEW_DEVICE_TYPE_SEVERITY = 5
BEHAVIOR_CHANGE_SEVERITY = 7
ROGUE_AP_SEVERITY = 9


def _group_cycles(history: Iterable[ScanResult]) -> dict[str, list[ScanResult]]:
    cycles: dict[str, list[ScanResult]] = defaultdict(list)
    for result in history:
        cycles[result.cycle_id].append(result)
    return cycles


def build_baseline(
    history: Iterable[ScanResult],
    training_window: timedelta,
    *,
    network_id: str = "default",
    min_scans: int = 3,
) -> Baseline:
    """Learn device counts, port frequencies and known device types from past cycles.

    Results are grouped into scan cycles by ``cycle_id``; only cycles within
    ``training_window`` of the newest cycle count. Raises
    :class:`InsufficientData` when fewer than ``min_scans`` cycles remain.
    """
    if training_window <= timedelta(0):
        raise InvalidConfiguration("training_window must be positive")
    if min_scans < 1:
        raise InvalidConfiguration("min_scans must be at least 1")

    cycles = _group_cycles(history)
    if not cycles:
        raise InsufficientData(0, min_scans)

    cycle_times = {cycle_id: max(result.timestamp for result in results) for cycle_id, results in cycles.items()}
    newest = max(cycle_times.values())
    window_start = newest - training_window
    kept = {cycle_id: cycles[cycle_id] for cycle_id, stamp in cycle_times.items() if stamp >= window_start}
    if len(kept) < min_scans:
        raise InsufficientData(len(kept), min_scans)

    device_counts: list[int] = []
    port_cycles: dict[int, int] = defaultdict(int)
    manufacturers: set[str] = set()
    categories: set[str] = set()
    open_port_total = 0
    observations = 0

    for results in kept.values():
        device_counts.append(len({result.device.key for result in results}))
        open_in_cycle: set[int] = set()
        for result in results:
            open_ports = result.open_ports
            open_in_cycle.update(open_ports)
            open_port_total += len(open_ports)
            observations += 1
            if result.device.manufacturer:
                manufacturers.add(result.device.manufacturer)
            if result.device.category:
                categories.add(result.device.category)
        for port in open_in_cycle:
            port_cycles[port] += 1

    scan_count = len(kept)
    baseline = Baseline(
        network_id=network_id,
        training_window=training_window,
        scan_count=scan_count,
        device_count_range=(min(device_counts), max(device_counts)),
        port_frequency={port: count / scan_count for port, count in sorted(port_cycles.items())},
        manufacturers=frozenset(manufacturers),
        categories=frozenset(categories),
        mean_open_ports=open_port_total / observations if observations else 0.0,
    )
    logger.info(
        "Built baseline %s from %d cycle(s): %d-%d devices, %d known port(s)",
        network_id,
        scan_count,
        baseline.device_count_range[0],
        baseline.device_count_range[1],
        len(baseline.port_frequency),
    )
    return baseline


def rebuild_baseline(previous: Baseline, history: Iterable[ScanResult], *, min_scans: int = 3) -> Baseline:
    """Build a fresh baseline with the same network and window as ``previous``."""
    return build_baseline(
        history,
        previous.training_window,
        network_id=previous.network_id,
        min_scans=min_scans,
    )


def access_points_from_devices(devices: Iterable[Device]) -> list[AccessPoint]:
    """Access points advertised by devices through ``ssid``/``essid`` and ``bssid`` records."""
    points: list[AccessPoint] = []
    for device in devices:
        ssid = device.records.text("ssid") or device.records.text("essid")
        if not ssid:
            continue
        bssid = normalize_mac(device.records.text("bssid")) or device.mac
        if not bssid:
            continue
        points.append(AccessPoint(ssid=ssid.strip(), bssid=bssid, device_key=device.key))
    return points


def _count_severity(count: int, low: int, high: int) -> int:
    distance = low - count if count < low else count - high
    return min(8, 4 + distance)


def _finding_order(finding: AnomalyFinding) -> tuple[int, str, str, str]:
    return (-finding.severity, finding.type.value, finding.device_key or "", finding.description)


def detect_anomalies(
    current: Sequence[ScanResult],
    baseline: Baseline,
    *,
    access_points: Iterable[AccessPoint] | None = None,
    low_frequency_threshold: float = 0.1,
    now: datetime | None = None,
) -> list[AnomalyFinding]:
    """Compare one scan cycle against ``baseline``; the baseline is only read.

    Each anomaly is its own finding with its own severity.
    """
    detected_at = now or utc_now()
    findings: list[AnomalyFinding] = []

    devices: dict[str, Device] = {}
    open_by_device: dict[str, set[int]] = defaultdict(set)
    for result in current:
        devices[result.device.key] = result.device
        open_by_device[result.device.key].update(result.open_ports)

    low, high = baseline.device_count_range
    count = len(devices)
    if count < low or count > high:
        findings.append(
            AnomalyFinding(
                type=AnomalyType.DEVICE_COUNT_ANOMALY,
                severity=_count_severity(count, low, high),
                description=f"{count} devices seen; baseline range is {low}-{high}",
                detected_at=detected_at,
            )
        )

    for key, device in sorted(devices.items()):
        open_ports = sorted(open_by_device[key])
        for port in open_ports:
            frequency = baseline.frequency_of(port)
            if frequency < low_frequency_threshold:
                findings.append(
                    AnomalyFinding(
                        type=AnomalyType.UNUSUAL_PORT_ACTIVITY,
                        severity=UNUSUAL_PORT_SEVERITY,
                        description=f"Port {port} open on {device.display_name}; seen in {frequency:.0%} of baseline scans",
                        detected_at=detected_at,
                        device_key=key,
                    )
                )

        novel: list[str] = []
        if device.manufacturer and device.manufacturer not in baseline.manufacturers:
            novel.append(f"manufacturer {device.manufacturer}")
        if device.category and device.category not in baseline.categories:
            novel.append(f"category {device.category}")
        if novel:
            findings.append(
                AnomalyFinding(
                    type=AnomalyType.NEW_DEVICE_TYPE,
                    severity=NEW_DEVICE_TYPE_SEVERITY,
                    description=f"{device.display_name} has never-seen {' and '.join(novel)}",
                    detected_at=detected_at,
                    device_key=key,
                )
            )

        if baseline.mean_open_ports > 0 and len(open_ports) > baseline.mean_open_ports * BEHAVIOR_CHANGE_FACTOR:
            findings.append(
                AnomalyFinding(
                    type=AnomalyType.BEHAVIOR_CHANGE,
                    severity=BEHAVIOR_CHANGE_SEVERITY,
                    description=(
                        f"{device.display_name} has {len(open_ports)} open ports; "
                        f"baseline average is {baseline.mean_open_ports:.1f}"
                    ),
                    detected_at=detected_at,
                    device_key=key,
                )
            )

    points = list(access_points) if access_points is not None else access_points_from_devices(devices.values())
    bssids_by_ssid: dict[str, set[str]] = defaultdict(set)
    for point in points:
        bssid = normalize_mac(point.bssid) or point.bssid.strip().upper()
        if point.ssid and bssid:
            bssids_by_ssid[point.ssid].add(bssid)
    for ssid, bssids in sorted(bssids_by_ssid.items()):
        if len(bssids) < 2:
            continue
        findings.append(
            AnomalyFinding(
                type=AnomalyType.ROGUE_AP,
                severity=ROGUE_AP_SEVERITY,
                description=f"SSID {ssid!r} is broadcast by {len(bssids)} access points: {', '.join(sorted(bssids))}",
                detected_at=detected_at,
            )
        )

    return sorted(findings, key=_finding_order)
