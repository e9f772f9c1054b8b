from __future__ import annotations

import threading

import pytest

from netwarden.config import DiscoveryConfig
from netwarden.discovery.coordinator import DiscoveryCoordinator, DiscoveryRateLimiter, DiscoveryStats
from netwarden.discovery.sources import RawAdvertisement, StaticSource, SubnetSweepSource, parse_arp_lines
from netwarden.errors import CooldownActive, InvalidConfiguration, RateLimitExceeded
from netwarden.models import MAX_LABEL_BYTES


def _coordinator(clock, advertisements):
    return DiscoveryCoordinator(clock=clock, source_factory=lambda config: [StaticSource(advertisements)])


ADS = [
    RawAdvertisement(ip="192.168.1.20", source="_hap._tcp", name="Eve Door", mac="02:11:22:33:44:55", records={"ci": "12"}),
    RawAdvertisement(ip="192.168.1.21", source="_googlecast._tcp", name="Living Room TV"),
    RawAdvertisement(ip="192.168.1.22", source="subnet-sweep", mac="B8:27:EB:00:00:01"),
]


def test_session_yields_devices_and_fills_registry(clock):
    coordinator = _coordinator(clock, ADS)

    with coordinator.start_discovery(DiscoveryConfig()) as session:
        devices = session.collect()

    assert [device.ip for device in devices] == ["192.168.1.20", "192.168.1.21", "192.168.1.22"]
    assert devices[0].category == "Door"
    assert devices[1].category == "Media Player"
    assert devices[2].manufacturer == "Raspberry Pi Foundation"
    assert session.stats.accepted == 3


def test_restart_inside_cooldown_raises_and_leaves_registry_untouched(clock):
    coordinator = _coordinator(clock, ADS)
    config = DiscoveryConfig(cooldown_seconds=30)
    with coordinator.start_discovery(config) as session:
        session.collect()
    before = coordinator.registry.snapshot()

    clock.advance(10)
    with pytest.raises(CooldownActive) as excinfo:
        coordinator.start_discovery(config)

    assert excinfo.value.remaining_seconds == pytest.approx(20)
    assert coordinator.registry.snapshot() == before

    clock.advance(21)
    with coordinator.start_discovery(config) as session:
        session.collect()


def test_rate_limit_drops_excess_advertisements(clock):
    flood = [RawAdvertisement(ip=f"10.0.0.{index}", source="_http._tcp") for index in range(1, 6)]
    coordinator = _coordinator(clock, flood)

    with coordinator.start_discovery(DiscoveryConfig(rate_limit_per_minute=3)) as session:
        session.collect()

    assert len(coordinator.registry) == 3
    assert session.stats.rate_limited == 2


def test_malformed_advertisements_are_counted_not_raised(clock):
    bad = [
        RawAdvertisement(ip="not-an-address", source="_http._tcp"),
        RawAdvertisement(ip="10.0.0.9", source="_http._tcp", records={"bad key!": "x", "md": "Plug"}),
    ]
    coordinator = _coordinator(clock, bad)

    with coordinator.start_discovery(DiscoveryConfig()) as session:
        devices = session.collect()

    assert [device.ip for device in devices] == ["10.0.0.9"]
    assert dict(devices[0].records) == {"md": "Plug"}
    assert session.stats.malformed == 1
    assert session.stats.dropped_records == 1


def test_unicode_digit_category_falls_back_without_killing_the_source(clock):
    odd = [
        RawAdvertisement(ip="192.168.1.9", source="_hap._tcp", name="Lamp", records={"ci": "\N{SUPERSCRIPT TWO}"}),
        RawAdvertisement(ip="192.168.1.10", source="_hap._tcp", name="Fan", records={"ci": "5"}),
    ]
    coordinator = _coordinator(clock, odd)

    with coordinator.start_discovery(DiscoveryConfig()) as session:
        devices = session.collect()

    assert [device.category for device in devices] == ["Accessory", "Lightbulb"]
    assert session.stats.source_failures == 0


def test_ingest_drops_advertisement_that_fails_normalization(clock, monkeypatch):
    def explode(name):
        raise ValueError("unparseable instance name")

    monkeypatch.setattr("netwarden.discovery.coordinator.split_instance_name", explode)
    coordinator = DiscoveryCoordinator(clock=clock)
    stats = DiscoveryStats()

    assert coordinator.ingest(RawAdvertisement(ip="192.168.1.9", source="_http._tcp", name="x"), stats=stats) is None
    assert stats.malformed == 1
    assert len(coordinator.registry) == 0


def test_advertised_names_are_bounded(clock):
    coordinator = DiscoveryCoordinator(clock=clock)

    device = coordinator.ingest(
        RawAdvertisement(ip="192.168.1.9", source="_http._tcp", name="N" * 5000, hostname="h\x00" * 3000 + ".local")
    )

    assert device is not None
    assert len(device.name.encode("utf-8")) == MAX_LABEL_BYTES
    assert len(device.hostname) == MAX_LABEL_BYTES
    assert "\x00" not in device.hostname


def test_slow_vendor_lookup_does_not_block_other_sources(clock, monkeypatch):
    other_done = threading.Event()
    waited: list[bool] = []

    def lookup(mac, online=False):
        if mac.endswith("01"):
            waited.append(other_done.wait(timeout=5))
        else:
            other_done.set()
        return None

    class TwoThreads:
        name = "two-threads"

        def run(self, emit, stop_event):
            workers = [
                threading.Thread(target=emit, args=(RawAdvertisement(ip=f"10.0.0.{i}", source="_http._tcp", mac=f"02:00:00:00:00:0{i}"),))
                for i in (1, 2)
            ]
            workers[0].start()
            workers[0].join(timeout=0.2)
            workers[1].start()
            for worker in workers:
                worker.join()

    monkeypatch.setattr("netwarden.discovery.coordinator.lookup_manufacturer", lookup)
    coordinator = DiscoveryCoordinator(clock=clock, source_factory=lambda config: [TwoThreads()])

    with coordinator.start_discovery(DiscoveryConfig()) as session:
        devices = session.collect()

    assert waited == [True]
    assert len(devices) == 2
    assert session.stats.accepted == 2


def test_failing_source_does_not_stop_the_session(clock):
    class Broken:
        name = "broken"

        def run(self, emit, stop_event):
            raise RuntimeError("boom")

    coordinator = DiscoveryCoordinator(
        clock=clock,
        source_factory=lambda config: [Broken(), StaticSource(ADS[:1])],
    )
    with coordinator.start_discovery(DiscoveryConfig()) as session:
        devices = session.collect()

    assert len(devices) == 1
    assert session.stats.source_failures == 1


def test_invalid_config_is_rejected_before_starting(clock):
    coordinator = _coordinator(clock, ADS)
    with pytest.raises(InvalidConfiguration):
        coordinator.start_discovery(DiscoveryConfig(mdns=False, sweep=False))
    with pytest.raises(InvalidConfiguration):
        coordinator.start_discovery(DiscoveryConfig(subnets=("10.0.0.0/8",)))
    assert coordinator.registry is None


def test_rate_limiter_window_resets(clock):
    limiter = DiscoveryRateLimiter(2, clock=clock)
    limiter.acquire()
    limiter.acquire()
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.acquire()
    assert excinfo.value.limit == 2

    clock.advance(60)
    assert limiter.try_acquire()
    assert limiter.current == 1


def test_parse_arp_lines_handles_linux_and_windows_formats():
    lines = [
        "192.168.1.1 dev eth0 lladdr aa:bb:cc:dd:ee:ff REACHABLE",
        "  192.168.1.7          00-17-88-0a-0b-0c     dynamic",
        "? (192.168.1.9) at 0:1a:11:2:3:4 on en0 ifscope [ethernet]",
        "192.168.1.255 ff-ff-ff-ff-ff-ff static",
    ]

    assert parse_arp_lines(lines) == {
        "192.168.1.1": "AA:BB:CC:DD:EE:FF",
        "192.168.1.7": "00:17:88:0A:0B:0C",
        "192.168.1.9": "00:1A:11:02:03:04",
    }


def test_subnet_sweep_emits_arp_hits_then_ping_only_hosts():
    source = SubnetSweepSource(
        ["192.168.5.0/29"],
        workers=4,
        resolve_names=False,
        ping=lambda ip, timeout: ip in {"192.168.5.1", "192.168.5.3"},
        arp_reader=lambda: {"192.168.5.1": "02:00:00:00:00:01", "10.9.9.9": "02:00:00:00:00:09"},
    )
    emitted = []

    source.run(emitted.append, threading.Event())

    assert [(ad.ip, ad.mac) for ad in emitted] == [
        ("192.168.5.1", "02:00:00:00:00:01"),
        ("192.168.5.3", None),
    ]
