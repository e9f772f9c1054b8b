from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import at
from netwarden.discovery.identity import identity_key, outranks, split_instance_name
from netwarden.discovery.records import sanitize_records
from netwarden.discovery.registry import DeviceRegistry
from netwarden.errors import InvalidConfiguration


def test_identity_key_prefers_mac():
    assert identity_key(mac="aa-bb-cc-dd-ee-ff", ip="10.0.0.2") == "mac:AA:BB:CC:DD:EE:FF"
    assert identity_key(mac=None, ip="10.0.0.2", name="Living Room.local.") == "host:10.0.0.2/living room"
    assert identity_key(mac="nonsense", ip="10.0.0.2") == "host:10.0.0.2"


def test_split_instance_name_extracts_airplay_mac():
    assert split_instance_name("A1B2C3D4E5F6@Kitchen") == ("Kitchen", "A1:B2:C3:D4:E5:F6")
    assert split_instance_name("Printer") == ("Printer", None)


def test_pairing_protocol_outranks_streaming_and_sweep():
    assert outranks("_hap._tcp", "_airplay._tcp")
    assert outranks("_airplay._tcp", "subnet-sweep")
    assert not outranks("subnet-sweep", "_raop._tcp")


def test_merge_by_mac_across_sources():
    registry = DeviceRegistry()
    registry.upsert(ip="192.168.1.20", source="_airplay._tcp", mac="AA:BB:CC:00:11:22", name="Speaker", seen_at=at(0))
    device = registry.upsert(
        ip="192.168.1.20",
        source="_hap._tcp",
        mac="aa:bb:cc:00:11:22",
        name="Eve Speaker",
        records=sanitize_records({"ci": "32"}),
        seen_at=at(1),
    )

    assert len(registry) == 1
    assert device.key == "mac:AA:BB:CC:00:11:22"
    assert device.primary_source == "_hap._tcp"
    assert device.discovery_sources == frozenset({"_airplay._tcp", "_hap._tcp"})
    assert device.name == "Eve Speaker"
    assert device.category == "Speaker"
    assert device.first_seen == at(0)
    assert device.last_seen == at(1)


def test_lower_ranked_source_does_not_downgrade_primary():
    registry = DeviceRegistry()
    registry.upsert(ip="10.0.0.5", source="_hap._tcp", mac="02:00:00:00:00:01", name="Lock", seen_at=at(0))
    device = registry.upsert(ip="10.0.0.5", source="subnet-sweep", mac="02:00:00:00:00:01", seen_at=at(1))

    assert device.primary_source == "_hap._tcp"
    assert device.name == "Lock"
    assert "subnet-sweep" in device.discovery_sources


def test_macless_record_is_promoted_when_mac_arrives():
    registry = DeviceRegistry()
    first = registry.upsert(ip="10.0.0.7", source="_http._tcp", name="nas", seen_at=at(0))
    assert first.key == "host:10.0.0.7/nas"

    promoted = registry.upsert(ip="10.0.0.7", source="subnet-sweep", mac="B8:27:EB:01:02:03", seen_at=at(1))

    assert len(registry) == 1
    assert promoted.key == "mac:B8:27:EB:01:02:03"
    assert promoted.name == "nas"
    assert registry.get("host:10.0.0.7/nas") is None


def test_macless_advertisement_resolves_to_known_host_by_ip():
    registry = DeviceRegistry()
    registry.upsert(ip="10.0.0.8", source="subnet-sweep", mac="00:17:88:AA:BB:CC", seen_at=at(0))
    device = registry.upsert(ip="10.0.0.8", source="_hap._tcp", name="Hue Bridge", seen_at=at(1))

    assert len(registry) == 1
    assert device.key == "mac:00:17:88:AA:BB:CC"
    assert device.primary_source == "_hap._tcp"


def test_registry_evicts_least_recently_seen():
    registry = DeviceRegistry(max_devices=2)
    registry.upsert(ip="10.0.0.1", source="subnet-sweep", mac="02:00:00:00:00:01", seen_at=at(0))
    registry.upsert(ip="10.0.0.2", source="subnet-sweep", mac="02:00:00:00:00:02", seen_at=at(1))
    registry.upsert(ip="10.0.0.1", source="subnet-sweep", mac="02:00:00:00:00:01", seen_at=at(2))
    registry.upsert(ip="10.0.0.3", source="subnet-sweep", mac="02:00:00:00:00:03", seen_at=at(3))

    keys = {device.key for device in registry.devices}
    assert keys == {"mac:02:00:00:00:00:01", "mac:02:00:00:00:00:03"}
    assert registry.evictions == 1


def test_registry_never_exceeds_cap_under_concurrency():
    registry = DeviceRegistry(max_devices=50)

    def _add(index: int) -> None:
        registry.upsert(ip=f"10.1.{index // 250}.{index % 250}", source="subnet-sweep", mac=f"02:00:00:00:{index // 256:02X}:{index % 256:02X}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_add, range(300)))

    assert len(registry) == 50


def test_registry_rejects_zero_capacity():
    with pytest.raises(InvalidConfiguration):
        DeviceRegistry(max_devices=0)
