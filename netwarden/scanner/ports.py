"""Named port presets and port-list parsing."""

from __future__ import annotations

from collections.abc import Iterable

from netwarden.errors import InvalidConfiguration

BACKDOOR_PORTS = (1243, 4444, 6666, 6667, 6668, 6669, 12345, 12346, 20034, 27374, 30100, 30101, 30102, 31337, 54321)

QUICK_PORTS = (21, 22, 23, 25, 80, 110, 143, 443, 3306, 3389, 5432, 5900, 8080, 8443, 31337, 12345, 6667)

STANDARD_PORTS = tuple(
    sorted(
        {
            21, 22, 23, 25, 53, 67, 80, 110, 139, 143, 161, 443, 445,
            1433, 1434, 3306, 3389, 5432, 5900, 6379, 8080, 8086, 8443,
            9042, 27017, 27018, 27019,
            *BACKDOOR_PORTS,
        }
    )
)

FULL_PORTS = tuple(
    sorted(
        {
            *STANDARD_PORTS,
            20, 69, 119, 123, 135, 137, 138, 162, 389, 512, 513, 514, 548, 631, 636,
            1521, 1883, 2049, 2323, 3690, 5222, 5353, 5901, 5902, 5903, 5938, 5984,
            6000, 6001, 7000, 7001, 8000, 8008, 8081, 8883, 8888, 9000, 9090, 9100,
            9200, 9300, 11211, 32400, 50000,
        }
    )
)

PORT_PRESETS: dict[str, tuple[int, ...]] = {
    "quick": QUICK_PORTS,
    "standard": STANDARD_PORTS,
    "full": FULL_PORTS,
    "well-known": tuple(range(1, 1025)),
    "backdoors": BACKDOOR_PORTS,
    "web": (80, 443, 8000, 8008, 8080, 8081, 8443, 8888, 9000),
    "iot": (80, 443, 554, 1883, 5353, 8080, 8883, 8123, 49152, 62078),
    "databases": (1433, 1434, 1521, 3306, 5432, 5984, 6379, 8086, 9042, 9200, 11211, 27017, 27018, 27019),
    "file-servers": (20, 21, 69, 139, 445, 548, 2049),
    "remote-access": (22, 23, 512, 513, 514, 3389, 5800, 5900, 5901, 5902, 5903, 5938, 6000),
    "mail": (25, 110, 143, 465, 587, 993, 995),
    "printers": (515, 631, 9100),
}


def parse_port_spec(spec: str) -> list[int]:
    """Parse ``"22,80,8000-8010"`` into a sorted, de-duplicated port list."""
    ports: set[int] = set()
    for chunk in spec.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            if "-" in chunk:
                low_text, high_text = chunk.split("-", 1)
                low, high = int(low_text), int(high_text)
                if low > high:
                    raise InvalidConfiguration(f"port range {chunk!r} is reversed")
                ports.update(range(low, high + 1))
            else:
                ports.add(int(chunk))
        except ValueError as exc:
            raise InvalidConfiguration(f"invalid port specification {chunk!r}") from exc
    return validate_ports(ports)


def validate_ports(ports: Iterable[int]) -> list[int]:
    cleaned = sorted({int(port) for port in ports})
    if not cleaned:
        raise InvalidConfiguration("port list is empty")
    bad = [port for port in cleaned if port < 1 or port > 65535]
    if bad:
        raise InvalidConfiguration(f"ports out of range 1-65535: {bad[:5]}")
    return cleaned


def resolve_ports(selection: str | Iterable[int]) -> list[int]:
    """Accept a preset name, a ``"22,80-90"`` string or an iterable of ports."""
    if isinstance(selection, str):
        preset = PORT_PRESETS.get(selection.strip().lower())
        if preset is not None:
            return list(preset)
        return parse_port_spec(selection)
    return validate_ports(selection)
