"""IP helpers for target expansion and scan safety."""

from __future__ import annotations

from collections.abc import Iterable
import ipaddress
import re
import socket

from netwarden.config import MAX_SWEEP_HOSTS
from netwarden.errors import InvalidConfiguration

_LAST_OCTET = re.compile(r"[0-9]{1,3}")


def to_ip_address(value: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Convert a host value to an ``ipaddress`` object when possible."""
    if not value:
        return None

    host = value.strip().lower()
    if host == "localhost":
        return ipaddress.ip_address("127.0.0.1")

    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def is_loopback(value: str) -> bool:
    ip_obj = to_ip_address(value)
    return bool(ip_obj and ip_obj.is_loopback)


def is_local_or_private(value: str) -> bool:
    """Return ``True`` for loopback and private LAN addresses."""
    ip_obj = to_ip_address(value)
    return bool(ip_obj and (ip_obj.is_loopback or ip_obj.is_private))


def address_family(host: str) -> socket.AddressFamily:
    ip_obj = to_ip_address(host)
    if ip_obj is not None and ip_obj.version == 6:
        return socket.AF_INET6
    return socket.AF_INET


def expand_targets(targets: Iterable[str], *, max_hosts: int = MAX_SWEEP_HOSTS) -> list[str]:
    """Expand hosts, CIDR blocks and ``a.b.c.d-e`` ranges into a de-duplicated host list."""
    expanded: list[str] = []
    seen: set[str] = set()

    def _add(host: str) -> None:
        if host not in seen:
            seen.add(host)
            expanded.append(host)

    for raw in targets:
        target = str(raw).strip()
        if not target:
            continue
        if "/" in target:
            try:
                network = ipaddress.ip_network(target, strict=False)
            except ValueError as exc:
                raise InvalidConfiguration(f"invalid network {target!r}") from exc
            if network.num_addresses > max_hosts + 2:
                raise InvalidConfiguration(f"network {network} is larger than {max_hosts} hosts")
            hosts = list(network.hosts()) or [network.network_address]
            for host in hosts:
                _add(str(host))
        elif "-" in target and to_ip_address(target) is None:
            start_text, end_text = target.rsplit("-", 1)
            start = to_ip_address(start_text)
            if start is None or start.version != 4 or not _LAST_OCTET.fullmatch(end_text):
                raise InvalidConfiguration(f"invalid address range {target!r}")
            prefix = str(start).rsplit(".", 1)[0]
            low, high = int(str(start).rsplit(".", 1)[1]), int(end_text)
            if not low <= high <= 255:
                raise InvalidConfiguration(f"invalid address range {target!r}")
            for last in range(low, high + 1):
                _add(f"{prefix}.{last}")
        else:
            _add(target)

    if len(expanded) > max_hosts:
        raise InvalidConfiguration(f"{len(expanded)} targets exceed the limit of {max_hosts}")
    return expanded
