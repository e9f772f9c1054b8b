"""Bounded, deduplicating device registry shared by concurrent discovery callbacks."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging
import threading

from netwarden.errors import InvalidConfiguration
from netwarden.models import Device, SanitizedRecords, utc_now

from .identity import confidence_score, identity_key, infer_category, normalize_name, outranks
from .vendors import normalize_mac

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEVICES = 512


class DeviceRegistry:
    """In-memory registry keyed by device identity, capped at ``max_devices`` (LRU).

    Every mutation runs under one lock, so discovery sources may call
    :meth:`upsert` from any thread. Stored devices are immutable; an update
    replaces the record.
    """

    def __init__(self, max_devices: int = DEFAULT_MAX_DEVICES) -> None:
        if int(max_devices) < 1:
            raise InvalidConfiguration("max_devices must be at least 1")
        self.max_devices = int(max_devices)
        self._devices: dict[str, Device] = {}
        self._aliases: dict[str, str] = {}
        self._lock = threading.Lock()
        self.evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._devices or key in self._aliases

    @property
    def devices(self) -> list[Device]:
        with self._lock:
            items = list(self._devices.values())
        return sorted(items, key=lambda device: (device.ip, device.key))

    def get(self, key: str) -> Device | None:
        with self._lock:
            primary = self._aliases.get(key, key)
            return self._devices.get(primary)

    def snapshot(self) -> dict[str, Device]:
        with self._lock:
            return dict(self._devices)

    def upsert(
        self,
        *,
        ip: str,
        source: str,
        mac: str | None = None,
        name: str | None = None,
        hostname: str | None = None,
        manufacturer: str | None = None,
        records: SanitizedRecords | None = None,
        seen_at: datetime | None = None,
    ) -> Device:
        """Insert or merge one observation and return the stored device."""
        timestamp = seen_at or utc_now()
        normalized_ip = str(ip).strip()
        normalized_mac = normalize_mac(mac) or None
        incoming_records = records or SanitizedRecords()

        with self._lock:
            key = self._resolve_key(normalized_ip, normalized_mac, name)
            existing = self._devices.get(key)

            if existing is None and normalized_mac:
                # A MAC-less record for the same host may already exist; promote it.
                stale_key = self._aliases.get(self._name_alias(normalized_ip, name)) or self._aliases.get(
                    self._ip_alias(normalized_ip)
                )
                stale = self._devices.get(stale_key) if stale_key else None
                if stale is not None and stale.mac is None:
                    existing = replace(stale, key=key)
                    self._forget(stale.key)
                    logger.debug("Promoted %s to %s", stale.key, key)

            if existing is None:
                device = self._build(
                    key=key,
                    ip=normalized_ip,
                    mac=normalized_mac,
                    name=name,
                    hostname=hostname,
                    manufacturer=manufacturer,
                    source=source,
                    records=incoming_records,
                    seen_at=timestamp,
                )
                if len(self._devices) >= self.max_devices:
                    self._evict_one()
            else:
                device = self._merge(
                    existing,
                    ip=normalized_ip,
                    mac=normalized_mac,
                    name=name,
                    hostname=hostname,
                    manufacturer=manufacturer,
                    source=source,
                    records=incoming_records,
                    seen_at=timestamp,
                )

            self._devices[key] = device
            self._aliases[self._ip_alias(normalized_ip)] = key
            if name:
                self._aliases[self._name_alias(normalized_ip, name)] = key
            return device

    def remove(self, key: str) -> Device | None:
        with self._lock:
            primary = self._aliases.get(key, key)
            device = self._devices.get(primary)
            if device is not None:
                self._forget(primary)
            return device

    def clear(self) -> None:
        with self._lock:
            self._devices.clear()
            self._aliases.clear()

    @staticmethod
    def _ip_alias(ip: str) -> str:
        return f"ip:{ip}"

    @staticmethod
    def _name_alias(ip: str, name: str | None) -> str:
        return identity_key(mac=None, ip=ip, name=name)

    def _resolve_key(self, ip: str, mac: str | None, name: str | None) -> str:
        if mac:
            return identity_key(mac=mac, ip=ip, name=name)

        name_key = self._name_alias(ip, name)
        if name_key in self._devices:
            return name_key
        aliased = self._aliases.get(name_key)
        if aliased in self._devices:
            return aliased

        # Same IP already tied to a MAC: the physical host is known.
        by_ip = self._aliases.get(self._ip_alias(ip))
        if by_ip and by_ip.startswith("mac:") and by_ip in self._devices:
            return by_ip
        return name_key

    def _forget(self, key: str) -> None:
        self._devices.pop(key, None)
        for alias in [alias for alias, target in self._aliases.items() if target == key]:
            del self._aliases[alias]

    def _evict_one(self) -> None:
        if not self._devices:
            return
        newest = max(device.last_seen for device in self._devices.values())
        # Dict order is insertion/refresh order, so ties go to the older entry.
        candidates = [device for device in self._devices.values() if device.last_seen < newest]
        if not candidates:
            candidates = list(self._devices.values())[:-1] or list(self._devices.values())
        victim = min(candidates, key=lambda device: device.last_seen)
        self._forget(victim.key)
        self.evictions += 1
        logger.info("Registry full (%d); evicted least recently seen device %s", self.max_devices, victim.key)

    def _build(
        self,
        *,
        key: str,
        ip: str,
        mac: str | None,
        name: str | None,
        hostname: str | None,
        manufacturer: str | None,
        source: str,
        records: SanitizedRecords,
        seen_at: datetime,
    ) -> Device:
        sources = frozenset({source}) if source else frozenset()
        return Device(
            key=key,
            ip=ip,
            mac=mac,
            hostname=hostname or None,
            manufacturer=manufacturer or None,
            name=name or None,
            category=infer_category(records=records, sources=sources, hostname=hostname, manufacturer=manufacturer),
            discovery_sources=sources,
            primary_source=source or None,
            records=records,
            first_seen=seen_at,
            last_seen=seen_at,
            confidence=confidence_score(mac=mac, hostname=hostname, sources=sources),
        )

    def _merge(
        self,
        existing: Device,
        *,
        ip: str,
        mac: str | None,
        name: str | None,
        hostname: str | None,
        manufacturer: str | None,
        source: str,
        records: SanitizedRecords,
        seen_at: datetime,
    ) -> Device:
        sources = existing.discovery_sources | ({source} if source else set())
        upgrade = bool(source) and (existing.primary_source is None or outranks(source, existing.primary_source))
        primary_source = source if upgrade else existing.primary_source
        # The more authoritative advertisement names the device.
        merged_name = (name if upgrade and name else None) or existing.name or name
        merged_mac = existing.mac or mac
        merged_hostname = hostname or existing.hostname
        merged_manufacturer = existing.manufacturer or manufacturer
        merged_records = existing.records.merged(records) if upgrade else records.merged(existing.records)

        if upgrade and existing.primary_source:
            logger.debug("Upgraded %s discovery source %s -> %s", existing.key, existing.primary_source, source)
        if name and existing.name and normalize_name(name) != normalize_name(existing.name) and not upgrade:
            logger.debug("Keeping name %r for %s over %r", existing.name, existing.key, name)

        return replace(
            existing,
            ip=ip or existing.ip,
            mac=merged_mac,
            name=merged_name,
            hostname=merged_hostname,
            manufacturer=merged_manufacturer,
            category=infer_category(
                records=merged_records,
                sources=sources,
                hostname=merged_hostname,
                manufacturer=merged_manufacturer,
            ),
            discovery_sources=frozenset(sources),
            primary_source=primary_source,
            records=merged_records,
            first_seen=min(existing.first_seen, seen_at),
            last_seen=max(existing.last_seen, seen_at),
            confidence=confidence_score(mac=merged_mac, hostname=merged_hostname, sources=sources),
        )
