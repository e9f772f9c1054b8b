"""Device identity keys, discovery-source ranking, category inference and confidence."""

from __future__ import annotations

from collections.abc import Iterable
import re

from netwarden.models import SanitizedRecords

from .vendors import normalize_mac

SUBNET_SWEEP_SOURCE = "subnet-sweep"

# Most authoritative first. Device-specific pairing protocols outrank generic
# streaming/announcement protocols; a bare sweep hit ranks last.
SOURCE_PRIORITY = (
    "_hap._tcp",
    "_hap._udp",
    "_homekit._tcp",
    "_matter._tcp",
    "_companion-link._tcp",
    "_device-info._tcp",
    "_ubnt-discover._udp",
    "_ubnt-ap._tcp",
    "_ubnt-camera._tcp",
    "_ubnt-protect._tcp",
    "_googlecast._tcp",
    "_googlezone._tcp",
    "_amzn-wplay._tcp",
    "_sonos._tcp",
    "_printer._tcp",
    "_ipp._tcp",
    "_workstation._tcp",
    "_ssh._tcp",
    "_smb._tcp",
    "_afpovertcp._tcp",
    "_airplay._tcp",
    "_raop._tcp",
    "_spotify-connect._tcp",
    "_rtsp._tcp",
    "_mqtt._tcp",
    "_http._tcp",
    "_sleep-proxy._udp",
)

HOMEKIT_CATEGORIES = {
    1: "Other",
    2: "Bridge",
    3: "Fan",
    4: "Garage Door Opener",
    5: "Lightbulb",
    6: "Door Lock",
    7: "Outlet",
    8: "Switch",
    9: "Thermostat",
    10: "Sensor",
    11: "Security System",
    12: "Door",
    13: "Window",
    14: "Window Covering",
    15: "Programmable Switch",
    16: "Range Extender",
    17: "IP Camera",
    18: "Video Doorbell",
    19: "Air Purifier",
    20: "Heater",
    21: "Air Conditioner",
    22: "Humidifier",
    23: "Dehumidifier",
    28: "Sprinkler",
    29: "Faucet",
    30: "Shower System",
    31: "Television",
    32: "Speaker",
}

CATEGORY_BY_SERVICE = (
    (("_ubnt-ap._tcp",), "Access Point"),
    (("_ubnt-camera._tcp", "_ubnt-protect._tcp", "_rtsp._tcp"), "IP Camera"),
    (("_printer._tcp", "_ipp._tcp"), "Printer"),
    (("_googlecast._tcp", "_googlezone._tcp", "_airplay._tcp", "_raop._tcp", "_sonos._tcp", "_spotify-connect._tcp"), "Media Player"),
    (("_amzn-wplay._tcp",), "Speaker"),
    (("_smb._tcp", "_afpovertcp._tcp"), "File Server"),
    (("_companion-link._tcp", "_workstation._tcp", "_ssh._tcp"), "Computer"),
    (("_hap._tcp", "_hap._udp", "_homekit._tcp", "_matter._tcp", "_mqtt._tcp"), "Accessory"),
)

IOT_KEYWORDS = (
    "camera",
    "thermostat",
    "speaker",
    "roku",
    "chromecast",
    "ring",
    "alexa",
    "sensor",
    "plug",
    "bulb",
)

# AirPlay audio instances are published as "<device-id>@<friendly name>".
_RAOP_NAME = re.compile(r"^(?P<id>[0-9A-Fa-f]{12})@(?P<name>.+)$")
_CATEGORY_ID = re.compile(r"[0-9]{1,3}")


def source_rank(source: str | None) -> int:
    """Lower is more authoritative; unknown service types rank after known ones."""
    if not source:
        return len(SOURCE_PRIORITY) + 2
    if source == SUBNET_SWEEP_SOURCE:
        return len(SOURCE_PRIORITY) + 1
    normalized = source.rstrip(".").lower().removesuffix(".local")
    try:
        return SOURCE_PRIORITY.index(normalized)
    except ValueError:
        return len(SOURCE_PRIORITY)


def outranks(candidate: str | None, current: str | None) -> bool:
    return source_rank(candidate) < source_rank(current)


def split_instance_name(name: str | None) -> tuple[str | None, str | None]:
    """Return ``(friendly_name, embedded_mac)`` for an advertised instance name."""
    if not name:
        return None, None
    text = name.strip()
    match = _RAOP_NAME.match(text)
    if match:
        return match.group("name").strip() or None, normalize_mac(match.group("id")) or None
    return text or None, None


def normalize_name(name: str | None) -> str:
    if not name:
        return ""
    cleaned = name.strip().rstrip(".").lower()
    cleaned = cleaned.removesuffix(".local")
    return re.sub(r"\s+", " ", cleaned)


def identity_key(*, mac: str | None, ip: str, name: str | None = None) -> str:
    """Stable identity: the MAC when known, otherwise IP plus advertised name."""
    normalized = normalize_mac(mac)
    if normalized:
        return f"mac:{normalized}"
    label = normalize_name(name)
    return f"host:{ip}/{label}" if label else f"host:{ip}"


def mac_from_records(records: SanitizedRecords) -> str:
    for key in ("mac", "deviceid"):
        candidate = normalize_mac(records.text(key))
        if candidate:
            return candidate
    return ""


def infer_category(
    *,
    records: SanitizedRecords,
    sources: Iterable[str],
    hostname: str | None = None,
    manufacturer: str | None = None,
) -> str | None:
    category_id = (records.text("ci") or "").strip()
    if _CATEGORY_ID.fullmatch(category_id):
        return HOMEKIT_CATEGORIES.get(int(category_id), "Accessory")

    source_set = {source.lower() for source in sources}
    for services, category in CATEGORY_BY_SERVICE:
        if source_set.intersection(services):
            return category

    blob = f"{hostname or ''} {manufacturer or ''}".lower()
    if any(keyword in blob for keyword in IOT_KEYWORDS):
        return "IoT"
    if "apple" in blob or "windows" in blob or "linux" in blob:
        return "Computer"
    return None


def confidence_score(
    *,
    mac: str | None,
    hostname: str | None,
    sources: Iterable[str],
) -> int:
    """Score 0-100 for how likely a record is a genuine, distinct physical device."""
    score = 30
    if mac:
        score += 30
    if hostname:
        score += 10
    score += min(30, 10 * len(set(sources)))
    return max(0, min(100, score))
