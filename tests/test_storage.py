from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import at, make_device, make_result
from netwarden.analytics.baseline import build_baseline
from netwarden.config import (
    BaselineConfig,
    HistoryConfig,
    ScanConfig,
    apply_overrides,
    load_history_config,
    load_scan_config,
    validate_subnet,
)
from netwarden.errors import InvalidConfiguration
from netwarden.models import ChangeEvent, ChangeType, Snapshot
from netwarden.storage import (
    HistoryStore,
    get_preference,
    list_scan_history,
    list_threat_findings,
    record_scan_history,
    record_threat_findings,
    set_preference,
)


def test_preferences_round_trip_json_values():
    assert get_preference("scan.ports", "standard") == "standard"
    set_preference("scan.ports", [22, 80])
    set_preference("scan.ports", [22, 443])

    assert get_preference("scan.ports") == [22, 443]


def test_scan_history_and_findings_are_listed_newest_first():
    record_scan_history("c1", "tcp", {"hosts": 1})
    record_scan_history("c2", "tcp", {"hosts": 2})
    record_threat_findings("c2", [{"rule_id": "NW-RDP-001", "severity": 8.0}])
    record_threat_findings("c3", [])

    history = list_scan_history()
    assert [entry["cycle_id"] for entry in history] == ["c2", "c1"]
    assert history[0]["summary"] == {"hosts": 2}

    findings = list_threat_findings(cycle_id="c2")
    assert findings == [
        {"rule_id": "NW-RDP-001", "severity": 8.0, "cycle_id": "c2", "recorded_at": findings[0]["recorded_at"]}
    ]
    assert list_threat_findings(cycle_id="c3") == []


def test_history_store_prunes_snapshots_and_events(tmp_path):
    store = HistoryStore(tmp_path / "h.db")
    device = make_device("10.0.0.1", mac="02:00:00:00:00:01")
    for minute in range(5):
        store.save_snapshot(Snapshot.from_result(device, make_result(device, open_ports=[22], timestamp=at(minute))), keep=2)
    events = [
        ChangeEvent(change_type=ChangeType.PORT_OPENED, device_key=device.key, timestamp=at(minute), details="x", port=minute + 1)
        for minute in range(6)
    ]
    store.save_events(events, keep=4)

    snapshots = store.load_snapshots()[device.key]
    assert [snapshot.timestamp for snapshot in snapshots] == [at(3), at(4)]
    assert [event.port for event in store.load_events()] == [3, 4, 5, 6]


def test_history_store_keeps_one_baseline_per_network(tmp_path):
    store = HistoryStore(tmp_path / "h.db")
    history = [make_result(make_device("10.0.0.1"), open_ports=[22], timestamp=at(i), cycle_id=f"c{i}") for i in range(3)]
    first = build_baseline(history, timedelta(days=1), network_id="home")
    second = build_baseline(history, timedelta(days=2), network_id="home")

    store.save_baseline(first)
    store.save_baseline(second)

    loaded = store.load_baseline("home")
    assert loaded is not None
    assert loaded.training_window == timedelta(days=2)
    assert loaded.frequency_of(22) == 1.0
    assert store.load_baseline("office") is None


def test_config_loads_preference_overrides():
    set_preference("scan.max_hosts", 4)
    set_preference("scan.trusted_hosts", ["192.168.1.1"])
    set_preference("history.grace_period", 120)

    scan = load_scan_config()
    assert scan.max_hosts == 4
    assert scan.trusted_hosts == ("192.168.1.1",)
    assert load_history_config().grace_period == timedelta(minutes=2)


def test_config_validation():
    with pytest.raises(InvalidConfiguration):
        ScanConfig(protocol="icmp").validate()
    with pytest.raises(InvalidConfiguration):
        HistoryConfig(max_change_events=0).validate()
    with pytest.raises(InvalidConfiguration):
        BaselineConfig(low_frequency_threshold=2).validate()
    with pytest.raises(InvalidConfiguration):
        validate_subnet("192.168.0.0/16")
    with pytest.raises(InvalidConfiguration):
        apply_overrides(ScanConfig(), {"max_hosts": "many"})
    assert apply_overrides(ScanConfig(), {"timeout": "1.5", "unknown": 1}).timeout == 1.5
