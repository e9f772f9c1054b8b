"""Advertisement sources: mDNS service browsing and ping/ARP subnet sweeps."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import ipaddress
import logging
import platform
import re
import socket
import subprocess
import threading
from typing import Any, Protocol

import psutil
from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

from netwarden.config import validate_subnet

from .identity import SUBNET_SWEEP_SOURCE
from .records import sanitize_label
from .vendors import normalize_mac

logger = logging.getLogger(__name__)

ZEROCONF_INFO_TIMEOUT_MS = 2000


@dataclass(frozen=True, slots=True)
class RawAdvertisement:
    """One unsanitized observation of a host, as a source saw it on the wire."""

    ip: str
    source: str
    name: str | None = None
    hostname: str | None = None
    mac: str | None = None
    port: int | None = None
    records: Mapping[Any, Any] = field(default_factory=dict)


Emit = Callable[[RawAdvertisement], None]


class AdvertisementSource(Protocol):
    name: str

    def run(self, emit: Emit, stop_event: threading.Event) -> None:
        """Emit advertisements until done or until ``stop_event`` is set."""


def _instance_label(service_name: str, service_type: str) -> str:
    label = service_name
    if service_name.endswith(service_type):
        label = service_name[: -len(service_type)]
    return label.rstrip(".").strip()


def _service_type_label(service_type: str) -> str:
    return service_type.rstrip(".").removesuffix(".local")


class _MdnsListener(ServiceListener):
    def __init__(self, emit: Emit) -> None:
        self._emit = emit

    def _process(self, zc: Zeroconf, service_type: str, service_name: str) -> None:
        info = zc.get_service_info(service_type, service_name, timeout=ZEROCONF_INFO_TIMEOUT_MS)
        if not info:
            return
        hostname = sanitize_label(str(info.server).rstrip(".")) if info.server else None
        name = sanitize_label(_instance_label(service_name, service_type))
        for address in info.parsed_addresses():
            if not address:
                continue
            self._emit(
                RawAdvertisement(
                    ip=address,
                    source=_service_type_label(service_type),
                    name=name,
                    hostname=hostname,
                    port=info.port,
                    records=dict(info.properties or {}),
                )
            )

    def _safe_process(self, zc: Zeroconf, service_type: str, service_name: str) -> None:
        # Runs on zeroconf's thread; a hostile responder must not kill the browser.
        try:
            self._process(zc, service_type, service_name)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring mDNS answer for %s: %s", service_name, exc, exc_info=True)

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self._safe_process(zc, type_, name)

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self._safe_process(zc, type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        logger.debug("mDNS service removed: %s", name)


class MdnsSource:
    """Browse multicast DNS service types for ``listen_seconds``."""

    name = "mdns"

    def __init__(self, service_types: Iterable[str], *, listen_seconds: float = 5.0) -> None:
        self.service_types = tuple(service_types)
        self.listen_seconds = float(listen_seconds)

    def run(self, emit: Emit, stop_event: threading.Event) -> None:
        zc = Zeroconf()
        try:
            listener = _MdnsListener(emit)
            browsers = []
            for service_type in self.service_types:
                try:
                    browsers.append(ServiceBrowser(zc, service_type, listener))
                except (ValueError, OSError) as exc:
                    logger.warning("mDNS browse failed for %s: %s", service_type, exc)
            if browsers:
                stop_event.wait(self.listen_seconds)
            for browser in browsers:
                browser.cancel()
        finally:
            zc.close()


def _default_subnet() -> ipaddress.IPv4Network | None:
    for interface_addrs in psutil.net_if_addrs().values():
        for addr in interface_addrs:
            if getattr(addr, "family", None) != socket.AF_INET:
                continue
            if not addr.address or not addr.netmask:
                continue
            ip = ipaddress.ip_address(addr.address)
            if ip.is_loopback or ip.is_link_local:
                continue
            try:
                return ipaddress.ip_network(f"{addr.address}/{addr.netmask}", strict=False)
            except ValueError:
                continue
    return None


def ping_host(ip: str, timeout_seconds: float = 0.5) -> bool:
    system = platform.system().lower()
    if "windows" in system:
        cmd = ["ping", "-n", "1", "-w", str(int(timeout_seconds * 1000)), ip]
    else:
        cmd = ["ping", "-c", "1", "-W", str(max(1, int(timeout_seconds))), ip]
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except OSError as exc:
        logger.debug("ping %s failed: %s", ip, exc)
        return False
    return proc.returncode == 0


def parse_arp_lines(lines: Iterable[str]) -> dict[str, str]:
    discovered: dict[str, str] = {}
    for line in lines:
        match = re.search(r"(\d+\.\d+\.\d+\.\d+).*?(([0-9a-fA-F]{1,2}[:-]){5}[0-9a-fA-F]{1,2})", line)
        if not match:
            continue
        parts = re.split(r"[:-]", match.group(2))
        mac = normalize_mac("".join(part.zfill(2) for part in parts))
        if mac and mac not in {"FF:FF:FF:FF:FF:FF", "00:00:00:00:00:00"}:
            discovered[match.group(1)] = mac
    return discovered


def read_arp_table() -> dict[str, str]:
    commands: list[list[str]] = [["ip", "neigh", "show"], ["arp", "-an"], ["arp", "-a"]]
    for cmd in commands:
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError:
            continue
        if proc.returncode != 0 and not proc.stdout:
            continue
        parsed = parse_arp_lines((proc.stdout or "").splitlines())
        if parsed:
            return parsed
    return {}


def resolve_hostname(ip: str) -> str | None:
    try:
        return socket.gethostbyaddr(ip)[0]
    except (socket.herror, socket.gaierror, OSError):
        return None


class SubnetSweepSource:
    """Ping every host of the given subnets, then report what the ARP table learned."""

    name = SUBNET_SWEEP_SOURCE

    def __init__(
        self,
        subnets: Iterable[str] = (),
        *,
        workers: int = 64,
        ping_timeout: float = 0.5,
        resolve_names: bool = True,
        ping: Callable[[str, float], bool] = ping_host,
        arp_reader: Callable[[], dict[str, str]] = read_arp_table,
    ) -> None:
        self.networks = [validate_subnet(subnet) for subnet in subnets]
        self.workers = int(workers)
        self.ping_timeout = float(ping_timeout)
        self.resolve_names = resolve_names
        self._ping = ping
        self._arp_reader = arp_reader

    def _targets(self) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        if self.networks:
            return list(self.networks)
        detected = _default_subnet()
        if detected is None:
            logger.warning("No IPv4 interface found for a subnet sweep")
            return []
        return [validate_subnet(str(detected))]

    def run(self, emit: Emit, stop_event: threading.Event) -> None:
        networks = self._targets()
        hosts = [str(host) for network in networks for host in network.hosts()]
        if not hosts:
            return

        alive: set[str] = set()
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="lan-ping") as pool:
            futures = {}
            for host in hosts:
                if stop_event.is_set():
                    break
                futures[pool.submit(self._ping, host, self.ping_timeout)] = host
            for future in as_completed(futures):
                if stop_event.is_set():
                    for pending in futures:
                        pending.cancel()
                    break
                if future.result():
                    alive.add(futures[future])

        if stop_event.is_set():
            return

        arp_table = self._arp_reader()
        seen: set[str] = set()
        for ip, mac in sorted(arp_table.items()):
            if stop_event.is_set():
                return
            try:
                address = ipaddress.ip_address(ip)
            except ValueError:
                continue
            if not any(address in network for network in networks):
                continue
            seen.add(ip)
            hostname = resolve_hostname(ip) if self.resolve_names else None
            emit(RawAdvertisement(ip=ip, source=SUBNET_SWEEP_SOURCE, mac=mac, hostname=hostname))

        # Hosts that answered ping but never reached the ARP cache.
        for ip in sorted(alive - seen):
            if stop_event.is_set():
                return
            hostname = resolve_hostname(ip) if self.resolve_names else None
            emit(RawAdvertisement(ip=ip, source=SUBNET_SWEEP_SOURCE, hostname=hostname))


class StaticSource:
    """Replay a fixed list of advertisements; used for imports and tests."""

    name = "static"

    def __init__(self, advertisements: Iterable[RawAdvertisement]) -> None:
        self.advertisements = list(advertisements)

    def run(self, emit: Emit, stop_event: threading.Event) -> None:
        for advertisement in self.advertisements:
            if stop_event.is_set():
                return
            emit(advertisement)
