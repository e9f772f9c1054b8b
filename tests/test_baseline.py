from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import at, make_device, make_result
from netwarden.analytics.baseline import access_points_from_devices, build_baseline, detect_anomalies, rebuild_baseline
from netwarden.discovery.records import sanitize_records
from netwarden.errors import InsufficientData
from netwarden.models import AccessPoint, AnomalyType

WEEK = timedelta(days=7)


def _history(cycles: int = 4, *, devices: int = 3, start_minutes: float = 0):
    results = []
    for cycle in range(cycles):
        for index in range(devices):
            device = make_device(f"10.0.0.{index + 1}", manufacturer="Apple", category="Computer")
            results.append(
                make_result(
                    device,
                    open_ports=[22, 443] if index == 0 else [443],
                    timestamp=at(start_minutes + cycle * 60),
                    cycle_id=f"c{cycle}",
                )
            )
    return results


def test_baseline_needs_minimum_scans():
    with pytest.raises(InsufficientData) as excinfo:
        build_baseline(_history(2), WEEK, min_scans=3)
    assert (excinfo.value.available, excinfo.value.required) == (2, 3)


def test_baseline_learns_counts_and_frequencies():
    baseline = build_baseline(_history(4), WEEK, network_id="home")

    assert baseline.network_id == "home"
    assert baseline.scan_count == 4
    assert baseline.device_count_range == (3, 3)
    assert baseline.frequency_of(443) == 1.0
    assert baseline.frequency_of(22) == 1.0
    assert baseline.frequency_of(3389) == 0.0
    assert baseline.manufacturers == frozenset({"Apple"})
    assert baseline.mean_open_ports == pytest.approx(4 / 3)


def test_training_window_drops_old_cycles():
    old = _history(3, start_minutes=-60 * 24 * 30)
    recent = [
        make_result(make_device("10.0.0.1"), open_ports=[80], timestamp=at(0), cycle_id="new-1"),
        make_result(make_device("10.0.0.1"), open_ports=[80], timestamp=at(60), cycle_id="new-2"),
    ]
    with pytest.raises(InsufficientData):
        build_baseline(old + recent, WEEK, min_scans=3)

    baseline = build_baseline(old + recent, timedelta(days=60), min_scans=3)
    assert baseline.scan_count == 5


def test_rebuild_keeps_network_and_window():
    previous = build_baseline(_history(3), WEEK, network_id="lab")
    rebuilt = rebuild_baseline(previous, _history(5))

    assert rebuilt.network_id == "lab"
    assert rebuilt.training_window == WEEK
    assert rebuilt.scan_count == 5
    assert previous.scan_count == 3


def test_matching_cycle_has_no_anomalies():
    baseline = build_baseline(_history(4), WEEK)
    current = [result for result in _history(1) if result.cycle_id == "c0"]

    assert detect_anomalies(current, baseline, now=at(500)) == []


def test_unusual_port_and_behavior_change():
    baseline = build_baseline(_history(4), WEEK)
    noisy = make_device("10.0.0.1", manufacturer="Apple", category="Computer")
    current = [
        make_result(noisy, open_ports=[22, 443, 3389, 5900, 8080], cycle_id="now"),
        make_result(make_device("10.0.0.2", manufacturer="Apple", category="Computer"), open_ports=[443], cycle_id="now"),
        make_result(make_device("10.0.0.3", manufacturer="Apple", category="Computer"), open_ports=[443], cycle_id="now"),
    ]
    before = baseline.to_dict()

    anomalies = detect_anomalies(current, baseline, now=at(500))

    unusual = [a for a in anomalies if a.type is AnomalyType.UNUSUAL_PORT_ACTIVITY]
    assert sorted(a.description.split()[1] for a in unusual) == ["3389", "5900", "8080"]
    assert all(a.severity == 6 for a in unusual)
    (behavior,) = [a for a in anomalies if a.type is AnomalyType.BEHAVIOR_CHANGE]
    assert behavior.severity == 7
    assert behavior.device_key == noisy.key
    assert anomalies[0].type is AnomalyType.BEHAVIOR_CHANGE
    assert baseline.to_dict() == before


def test_device_count_and_new_type():
    baseline = build_baseline(_history(4), WEEK)
    current = [
        make_result(make_device(f"10.0.0.{index}", manufacturer="Apple", category="Computer"), open_ports=[443], cycle_id="n")
        for index in range(1, 8)
    ]
    current.append(make_result(make_device("10.0.0.99", manufacturer="Hikvision", category="IP Camera"), open_ports=[443], cycle_id="n"))

    anomalies = detect_anomalies(current, baseline, now=at(500))

    (count,) = [a for a in anomalies if a.type is AnomalyType.DEVICE_COUNT_ANOMALY]
    assert count.severity == 8
    (new_type,) = [a for a in anomalies if a.type is AnomalyType.NEW_DEVICE_TYPE]
    assert new_type.severity == 5
    assert "Hikvision" in new_type.description


def test_rogue_access_point_when_ssid_has_two_bssids():
    baseline = build_baseline(_history(4), WEEK)
    points = [
        AccessPoint(ssid="HomeNet", bssid="aa:bb:cc:00:00:01"),
        AccessPoint(ssid="HomeNet", bssid="AA-BB-CC-00-00-01"),
        AccessPoint(ssid="HomeNet", bssid="de:ad:be:ef:00:01"),
        AccessPoint(ssid="Guest", bssid="aa:bb:cc:00:00:02"),
    ]

    anomalies = detect_anomalies(_history(1), baseline, access_points=points, now=at(500))

    (rogue,) = [a for a in anomalies if a.type is AnomalyType.ROGUE_AP]
    assert rogue.severity == 9
    assert "HomeNet" in rogue.description


def test_access_points_are_read_from_device_records():
    device = make_device(
        "10.0.0.30",
        mac="FC:EC:DA:01:02:03",
        records=sanitize_records({"ssid": "HomeNet", "bssid": "fc:ec:da:01:02:04"}),
    )

    assert access_points_from_devices([device, make_device("10.0.0.31")]) == [
        AccessPoint(ssid="HomeNet", bssid="FC:EC:DA:01:02:04", device_key=device.key)
    ]
