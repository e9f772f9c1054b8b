"""Run configuration for discovery, scanning, history and baselines.

Defaults live on the dataclasses; persisted overrides come from the
preferences table (``netwarden.storage``) under ``<section>.<field>`` keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
import ipaddress
from typing import Any, TypeVar

from netwarden.errors import InvalidConfiguration
from netwarden.storage import get_preference

DEFAULT_SERVICE_TYPES = (
    "_hap._tcp.local.",
    "_homekit._tcp.local.",
    "_companion-link._tcp.local.",
    "_device-info._tcp.local.",
    "_googlecast._tcp.local.",
    "_airplay._tcp.local.",
    "_raop._tcp.local.",
    "_printer._tcp.local.",
    "_ipp._tcp.local.",
    "_workstation._tcp.local.",
    "_ssh._tcp.local.",
    "_smb._tcp.local.",
    "_http._tcp.local.",
)

# A /22 is the largest subnet a sweep will walk.
MAX_SWEEP_HOSTS = 1024

ConfigT = TypeVar("ConfigT")


@dataclass(slots=True)
class DiscoveryConfig:
    service_types: tuple[str, ...] = DEFAULT_SERVICE_TYPES
    subnets: tuple[str, ...] = ()
    sweep: bool = True
    mdns: bool = True
    listen_seconds: float = 5.0
    max_devices: int = 512
    rate_limit_per_minute: int = 600
    cooldown_seconds: float = 30.0
    max_workers: int = 4
    sweep_workers: int = 64
    ping_timeout: float = 0.5
    online_vendor_lookup: bool = False

    def validate(self) -> "DiscoveryConfig":
        if not self.mdns and not self.sweep:
            raise InvalidConfiguration("discovery needs at least one of mdns or sweep enabled")
        if self.mdns and not self.service_types:
            raise InvalidConfiguration("mdns discovery needs at least one service type")
        _require_positive("max_devices", self.max_devices)
        _require_positive("rate_limit_per_minute", self.rate_limit_per_minute)
        _require_positive("max_workers", self.max_workers)
        _require_positive("sweep_workers", self.sweep_workers)
        _require_positive("listen_seconds", self.listen_seconds)
        _require_positive("ping_timeout", self.ping_timeout)
        if self.cooldown_seconds < 0:
            raise InvalidConfiguration("cooldown_seconds must not be negative")
        for subnet in self.subnets:
            validate_subnet(subnet)
        return self


@dataclass(slots=True)
class ScanConfig:
    targets: tuple[str, ...] = ()
    ports: tuple[int, ...] | str = "standard"
    protocol: str = "tcp"
    timeout: float = 0.6
    max_hosts: int = 16
    max_ports_per_host: int = 64
    max_probes_per_minute: int | None = None
    grab_banners: bool = False
    trusted_hosts: tuple[str, ...] = ()

    def validate(self) -> "ScanConfig":
        if self.protocol not in {"tcp", "udp"}:
            raise InvalidConfiguration(f"unsupported protocol {self.protocol!r}")
        _require_positive("timeout", self.timeout)
        _require_positive("max_hosts", self.max_hosts)
        _require_positive("max_ports_per_host", self.max_ports_per_host)
        if self.max_probes_per_minute is not None:
            _require_positive("max_probes_per_minute", self.max_probes_per_minute)
        return self


@dataclass(slots=True)
class HistoryConfig:
    max_snapshots_per_device: int = 100
    max_change_events: int = 500
    max_cycles: int = 1000
    grace_period: timedelta = field(default_factory=lambda: timedelta(minutes=10))
    persist: bool = True

    def validate(self) -> "HistoryConfig":
        _require_positive("max_snapshots_per_device", self.max_snapshots_per_device)
        _require_positive("max_change_events", self.max_change_events)
        _require_positive("max_cycles", self.max_cycles)
        if self.grace_period < timedelta(0):
            raise InvalidConfiguration("grace_period must not be negative")
        return self


@dataclass(slots=True)
class BaselineConfig:
    network_id: str = "default"
    training_window: timedelta = field(default_factory=lambda: timedelta(days=7))
    min_scans: int = 3
    low_frequency_threshold: float = 0.1

    def validate(self) -> "BaselineConfig":
        _require_positive("min_scans", self.min_scans)
        if self.training_window <= timedelta(0):
            raise InvalidConfiguration("training_window must be positive")
        if not 0.0 <= self.low_frequency_threshold <= 1.0:
            raise InvalidConfiguration("low_frequency_threshold must be within 0.0-1.0")
        return self


def _require_positive(name: str, value: float) -> None:
    if value is None or value <= 0:
        raise InvalidConfiguration(f"{name} must be positive, got {value!r}")


def validate_subnet(subnet: str, *, max_hosts: int = MAX_SWEEP_HOSTS) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    """Parse a CIDR string and reject networks too large to sweep."""
    try:
        network = ipaddress.ip_network(str(subnet).strip(), strict=False)
    except ValueError as exc:
        raise InvalidConfiguration(f"invalid subnet {subnet!r}: {exc}") from exc
    if network.num_addresses > max_hosts + 2:
        raise InvalidConfiguration(f"subnet {network} has {network.num_addresses} addresses; limit is {max_hosts}")
    return network


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(current, timedelta):
        return timedelta(seconds=float(value))
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, tuple) and isinstance(value, list):
        return tuple(value)
    if isinstance(current, int) and not isinstance(value, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def apply_overrides(config: ConfigT, overrides: dict[str, Any]) -> ConfigT:
    """Return a copy of ``config`` with known fields replaced; unknown keys are ignored."""
    known = {item.name for item in fields(config)}  # type: ignore[arg-type]
    changes: dict[str, Any] = {}
    for name, value in overrides.items():
        if name not in known or value is None:
            continue
        try:
            changes[name] = _coerce(getattr(config, name), value)
        except (TypeError, ValueError) as exc:
            raise InvalidConfiguration(f"invalid value for {name}: {value!r}") from exc
    return replace(config, **changes)  # type: ignore[type-var]


def _load(section: str, config: ConfigT) -> ConfigT:
    overrides = {item.name: get_preference(f"{section}.{item.name}") for item in fields(config)}  # type: ignore[arg-type]
    return apply_overrides(config, overrides)


def load_discovery_config() -> DiscoveryConfig:
    return _load("discovery", DiscoveryConfig()).validate()


def load_scan_config() -> ScanConfig:
    return _load("scan", ScanConfig()).validate()


def load_history_config() -> HistoryConfig:
    return _load("history", HistoryConfig()).validate()


def load_baseline_config() -> BaselineConfig:
    return _load("baseline", BaselineConfig()).validate()
