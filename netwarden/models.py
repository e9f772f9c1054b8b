"""Plain data records shared between discovery, scanning, classification and history.

Every record is a frozen dataclass: once built it can be handed to any thread
without copying. ``to_dict`` renders a JSON-friendly view for exports.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

MAX_RECORD_KEY_BYTES = 255
MAX_TEXT_VALUE_BYTES = 1024
MAX_BINARY_VALUE_BYTES = 2048
MAX_RECORDS_PER_DEVICE = 50
MAX_LABEL_BYTES = 255


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _frozen_mapping(values: Mapping[Any, Any] | None) -> Mapping[Any, Any]:
    return MappingProxyType(dict(values or {}))


class SanitizedRecords(Mapping[str, "str | bytes"]):
    """Immutable advertisement records whose size invariants were checked at the boundary.

    Instances are produced by :func:`netwarden.discovery.records.sanitize_records`;
    the constructor re-checks the invariants so an unchecked mapping can never
    travel deeper into the system.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, str | bytes] | None = None) -> None:
        checked: dict[str, str | bytes] = {}
        for key, value in (items or {}).items():
            if not isinstance(key, str) or not key or len(key.encode("utf-8")) > MAX_RECORD_KEY_BYTES:
                raise ValueError(f"record key out of bounds: {key!r}")
            if isinstance(value, str):
                if len(value.encode("utf-8")) > MAX_TEXT_VALUE_BYTES:
                    raise ValueError(f"text value for {key!r} exceeds {MAX_TEXT_VALUE_BYTES} bytes")
            elif isinstance(value, bytes):
                if len(value) > MAX_BINARY_VALUE_BYTES:
                    raise ValueError(f"binary value for {key!r} exceeds {MAX_BINARY_VALUE_BYTES} bytes")
            else:
                raise ValueError(f"unsupported value type for {key!r}: {type(value).__name__}")
            checked[key] = value
        if len(checked) > MAX_RECORDS_PER_DEVICE:
            raise ValueError(f"too many records: {len(checked)} > {MAX_RECORDS_PER_DEVICE}")
        self._items = checked

    def __getitem__(self, key: str) -> str | bytes:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"SanitizedRecords({dict(sorted(self._items.items()))!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SanitizedRecords):
            return self._items == other._items
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._items.items())))

    def text(self, key: str) -> str | None:
        """Return a record as text, decoding binary values leniently."""
        value = self._items.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="ignore")
        return value

    def merged(self, newer: "SanitizedRecords") -> "SanitizedRecords":
        """Combine two record sets; newer values win and the record cap still holds."""
        combined = dict(self._items)
        combined.update(newer._items)
        if len(combined) > MAX_RECORDS_PER_DEVICE:
            keep = sorted(newer._items) + sorted(set(self._items) - set(newer._items))
            combined = {key: combined[key] for key in keep[:MAX_RECORDS_PER_DEVICE]}
        return SanitizedRecords(combined)

    def to_dict(self) -> dict[str, str]:
        return {key: (value.hex() if isinstance(value, bytes) else value) for key, value in sorted(self._items.items())}


EMPTY_RECORDS = SanitizedRecords()


@dataclass(frozen=True, slots=True)
class Device:
    """A physical host on the network, merged across every advertisement it made."""

    key: str
    ip: str
    mac: str | None = None
    hostname: str | None = None
    manufacturer: str | None = None
    name: str | None = None
    category: str | None = None
    discovery_sources: frozenset[str] = frozenset()
    primary_source: str | None = None
    records: SanitizedRecords = EMPTY_RECORDS
    first_seen: datetime = field(default_factory=utc_now)
    last_seen: datetime = field(default_factory=utc_now)
    confidence: int = 0

    @property
    def display_name(self) -> str:
        return self.name or self.hostname or self.ip

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "ip": self.ip,
            "mac": self.mac,
            "hostname": self.hostname,
            "manufacturer": self.manufacturer,
            "name": self.name,
            "category": self.category,
            "discovery_sources": sorted(self.discovery_sources),
            "primary_source": self.primary_source,
            "records": self.records.to_dict(),
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "confidence": self.confidence,
        }


class PortStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    FILTERED = "filtered"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Outcome of scanning one host; created once per scan invocation."""

    device: Device
    timestamp: datetime
    ports: tuple[int, ...]
    statuses: Mapping[int, PortStatus]
    duration: float
    cycle_id: str
    protocol: str = "tcp"
    banners: Mapping[int, str] = field(default_factory=dict)
    cancelled: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "ports", tuple(self.ports))
        object.__setattr__(self, "statuses", _frozen_mapping(self.statuses))
        object.__setattr__(self, "banners", _frozen_mapping(self.banners))

    @property
    def host(self) -> str:
        return self.device.ip

    @property
    def open_ports(self) -> frozenset[int]:
        return frozenset(port for port, status in self.statuses.items() if status is PortStatus.OPEN)

    def status_of(self, port: int) -> PortStatus | None:
        return self.statuses.get(port)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device": self.device.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "ports": list(self.ports),
            "statuses": {str(port): status.value for port, status in sorted(self.statuses.items())},
            "duration": round(self.duration, 4),
            "cycle_id": self.cycle_id,
            "protocol": self.protocol,
            "banners": {str(port): banner for port, banner in sorted(self.banners.items())},
            "cancelled": self.cancelled,
        }


class ThreatCategory(str, Enum):
    BACKDOOR_PORT = "backdoor-port"
    WEAK_AUTH_PROTOCOL = "weak-auth-protocol"
    EXPOSED_DATASTORE = "exposed-datastore"
    EXPOSED_REMOTE_ACCESS = "exposed-remote-access"
    ROGUE_DEVICE = "rogue-device"
    UNENCRYPTED_TRANSPORT = "unencrypted-transport"


@dataclass(frozen=True, slots=True)
class ThreatFinding:
    category: ThreatCategory
    severity: float
    device_key: str
    host: str
    port: int | None
    title: str
    description: str
    remediation: str
    rule_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity,
            "device_key": self.device_key,
            "host": self.host,
            "port": self.port,
            "title": self.title,
            "description": self.description,
            "remediation": self.remediation,
            "rule_id": self.rule_id,
        }


@dataclass(frozen=True, slots=True)
class Baseline:
    """Learned picture of a network's normal composition; rebuilt, never mutated."""

    network_id: str
    training_window: timedelta
    scan_count: int
    device_count_range: tuple[int, int]
    port_frequency: Mapping[int, float]
    manufacturers: frozenset[str]
    categories: frozenset[str]
    mean_open_ports: float
    built_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "port_frequency", _frozen_mapping(self.port_frequency))

    def frequency_of(self, port: int) -> float:
        return float(self.port_frequency.get(port, 0.0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_id": self.network_id,
            "training_window_seconds": self.training_window.total_seconds(),
            "scan_count": self.scan_count,
            "device_count_range": list(self.device_count_range),
            "port_frequency": {str(port): freq for port, freq in sorted(self.port_frequency.items())},
            "manufacturers": sorted(self.manufacturers),
            "categories": sorted(self.categories),
            "mean_open_ports": self.mean_open_ports,
            "built_at": self.built_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Baseline":
        low, high = payload.get("device_count_range") or (0, 0)
        return cls(
            network_id=str(payload.get("network_id") or "default"),
            training_window=timedelta(seconds=float(payload.get("training_window_seconds") or 0)),
            scan_count=int(payload.get("scan_count") or 0),
            device_count_range=(int(low), int(high)),
            port_frequency={int(port): float(freq) for port, freq in (payload.get("port_frequency") or {}).items()},
            manufacturers=frozenset(payload.get("manufacturers") or ()),
            categories=frozenset(payload.get("categories") or ()),
            mean_open_ports=float(payload.get("mean_open_ports") or 0.0),
            built_at=datetime.fromisoformat(str(payload["built_at"])) if payload.get("built_at") else utc_now(),
        )


class AnomalyType(str, Enum):
    NEW_DEVICE_TYPE = "new-device-type"
    UNUSUAL_PORT_ACTIVITY = "unusual-port-activity"
    DEVICE_COUNT_ANOMALY = "device-count-anomaly"
    BEHAVIOR_CHANGE = "behavior-change"
    ROGUE_AP = "rogue-ap"


@dataclass(frozen=True, slots=True)
class AnomalyFinding:
    type: AnomalyType
    severity: int
    description: str
    detected_at: datetime
    device_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity,
            "description": self.description,
            "detected_at": self.detected_at.isoformat(),
            "device_key": self.device_key,
        }


@dataclass(frozen=True, slots=True)
class AccessPoint:
    """A wireless access point observation: network identifier plus hardware identifier."""

    ssid: str
    bssid: str
    device_key: str | None = None


@dataclass(frozen=True, slots=True)
class Snapshot:
    device_key: str
    timestamp: datetime
    ip: str
    hostname: str | None
    statuses: Mapping[int, PortStatus]
    cycle_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "statuses", _frozen_mapping(self.statuses))

    @property
    def open_ports(self) -> frozenset[int]:
        return frozenset(port for port, status in self.statuses.items() if status is PortStatus.OPEN)

    def same_state(self, other: "Snapshot") -> bool:
        return (
            self.ip == other.ip
            and self.hostname == other.hostname
            and dict(self.statuses) == dict(other.statuses)
        )

    @classmethod
    def from_result(cls, device: Device, result: ScanResult) -> "Snapshot":
        return cls(
            device_key=device.key,
            timestamp=result.timestamp,
            ip=device.ip,
            hostname=device.hostname,
            statuses=result.statuses,
            cycle_id=result.cycle_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_key": self.device_key,
            "timestamp": self.timestamp.isoformat(),
            "ip": self.ip,
            "hostname": self.hostname,
            "statuses": {str(port): status.value for port, status in sorted(self.statuses.items())},
            "cycle_id": self.cycle_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Snapshot":
        return cls(
            device_key=str(payload["device_key"]),
            timestamp=datetime.fromisoformat(str(payload["timestamp"])),
            ip=str(payload.get("ip") or ""),
            hostname=payload.get("hostname"),
            statuses={int(port): PortStatus(value) for port, value in (payload.get("statuses") or {}).items()},
            cycle_id=str(payload.get("cycle_id") or ""),
        )


class ChangeType(str, Enum):
    DEVICE_JOINED = "device-joined"
    DEVICE_LEFT = "device-left"
    DEVICE_RETURNED = "device-returned"
    PORT_OPENED = "port-opened"
    PORT_CLOSED = "port-closed"
    HOSTNAME_CHANGED = "hostname-changed"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    change_type: ChangeType
    device_key: str
    timestamp: datetime
    details: str
    port: int | None = None
    previous: str | None = None
    current: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "device_key": self.device_key,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
            "port": self.port,
            "previous": self.previous,
            "current": self.current,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        port = payload.get("port")
        return cls(
            change_type=ChangeType(payload["change_type"]),
            device_key=str(payload["device_key"]),
            timestamp=datetime.fromisoformat(str(payload["timestamp"])),
            details=str(payload.get("details") or ""),
            port=int(port) if port is not None else None,
            previous=payload.get("previous"),
            current=payload.get("current"),
        )
