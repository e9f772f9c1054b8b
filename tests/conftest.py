from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

import pytest

from netwarden.models import Device, PortStatus, ScanResult
from netwarden.storage import preferences

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    """Keep every test away from ~/.netwarden."""
    monkeypatch.setattr(preferences, "DB_PATH", tmp_path / "netwarden.db")
    monkeypatch.setattr("netwarden.export.logging.AUDIT_LOG_PATH", tmp_path / "scan_audit.jsonl")
    return tmp_path


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_device(ip: str = "192.168.1.10", *, mac: str | None = None, **fields) -> Device:
    key = f"mac:{mac}" if mac else f"host:{ip}"
    return Device(key=key, ip=ip, mac=mac, **fields)


def make_result(
    device: Device | str = "192.168.1.10",
    open_ports: Iterable[int] = (),
    *,
    closed_ports: Iterable[int] = (),
    timestamp: datetime = T0,
    cycle_id: str = "cycle-1",
    banners: dict[int, str] | None = None,
    cancelled: bool = False,
) -> ScanResult:
    host = device if isinstance(device, Device) else make_device(device)
    statuses = {port: PortStatus.CLOSED for port in closed_ports}
    statuses.update({port: PortStatus.OPEN for port in open_ports})
    return ScanResult(
        device=host,
        timestamp=timestamp,
        ports=tuple(sorted(statuses)),
        statuses=statuses,
        duration=0.01,
        cycle_id=cycle_id,
        banners=banners or {},
        cancelled=cancelled,
    )


def fake_probe(open_ports: Iterable[int]) -> Callable[[str, int, float], PortStatus]:
    wanted = frozenset(open_ports)

    def _probe(host: str, port: int, timeout: float) -> PortStatus:
        return PortStatus.OPEN if port in wanted else PortStatus.CLOSED

    return _probe


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)
