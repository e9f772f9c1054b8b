"""MAC normalization and manufacturer lookup by OUI prefix."""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)

MAC_VENDORS_ENDPOINT = "https://api.macvendors.com/{oui}"
DEFAULT_TIMEOUT_SECONDS = 3
DEFAULT_CACHE_TTL_SECONDS = 86400

VENDOR_BY_OUI = {
    "00:03:93": "Apple",
    "00:17:F2": "Apple",
    "28:CF:E9": "Apple",
    "3C:07:54": "Apple",
    "A4:83:E7": "Apple",
    "F0:18:98": "Apple",
    "B8:27:EB": "Raspberry Pi Foundation",
    "DC:A6:32": "Raspberry Pi Trading",
    "E4:5F:01": "Raspberry Pi Trading",
    "44:65:0D": "Amazon Technologies",
    "FC:A1:83": "Amazon Technologies",
    "00:1A:11": "Google",
    "3C:5A:B4": "Google",
    "F4:F5:D8": "Google",
    "18:B4:30": "Google Nest",
    "00:17:88": "Philips Lighting",
    "A4:77:33": "LG Electronics",
    "00:1D:A5": "Samsung Electronics",
    "00:16:6C": "Samsung Electronics",
    "24:6F:28": "Espressif",
    "30:AE:A4": "Espressif",
    "A4:CF:12": "Espressif",
    "FC:EC:DA": "Ubiquiti",
    "04:18:D6": "Ubiquiti",
    "24:5A:4C": "Ubiquiti",
    "74:83:C2": "Ubiquiti",
    "50:C7:BF": "TP-Link",
    "C0:25:E9": "TP-Link",
    "28:10:7B": "D-Link",
    "00:0E:58": "Sonos",
    "5C:AA:FD": "Sonos",
    "C0:56:E3": "Hikvision",
    "3C:EF:8C": "Dahua",
    "00:40:8C": "Axis Communications",
}

_CACHE: dict[str, dict[str, Any]] = {}
_CACHE_LOCK = threading.Lock()


def normalize_mac(value: str | None) -> str:
    """Return ``AA:BB:CC:DD:EE:FF`` for any common MAC spelling, else ``""``."""
    if not value:
        return ""
    compact = re.sub(r"[^0-9A-Fa-f]", "", str(value))
    if len(compact) != 12:
        return ""
    return ":".join(compact[index : index + 2] for index in range(0, 12, 2)).upper()


def oui_prefix(mac: str | None) -> str:
    normalized = normalize_mac(mac)
    return normalized[:8] if normalized else ""


def is_locally_administered(mac: str | None) -> bool:
    """Randomized/private MACs set the locally-administered bit; their OUI means nothing."""
    normalized = normalize_mac(mac)
    if not normalized:
        return False
    return bool(int(normalized[:2], 16) & 0x02)


def _get_cached(oui: str) -> str | None:
    with _CACHE_LOCK:
        entry = _CACHE.get(oui)
        if not entry:
            return None
        if entry["expires_at"] <= time.time():
            _CACHE.pop(oui, None)
            return None
        return entry["value"]


def _set_cache(oui: str, value: str, ttl_seconds: int) -> None:
    with _CACHE_LOCK:
        _CACHE[oui] = {"value": value, "expires_at": time.time() + ttl_seconds}


def _fetch_vendor(oui: str, timeout_seconds: int) -> str:
    response = requests.get(MAC_VENDORS_ENDPOINT.format(oui=oui), timeout=timeout_seconds)
    if response.status_code == 404:
        return ""
    response.raise_for_status()
    return response.text.strip()


def lookup_manufacturer(
    mac: str | None,
    *,
    online: bool = False,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
) -> str | None:
    """Resolve the manufacturer for a MAC address from its OUI prefix."""
    oui = oui_prefix(mac)
    if not oui or is_locally_administered(mac):
        return None

    vendor = VENDOR_BY_OUI.get(oui)
    if vendor or not online:
        return vendor

    cached = _get_cached(oui)
    if cached is not None:
        return cached or None

    try:
        vendor = _fetch_vendor(oui, timeout_seconds)
    except requests.RequestException as exc:
        logger.debug("Vendor lookup for %s failed: %s", oui, exc)
        return None
    _set_cache(oui, vendor, cache_ttl_seconds)
    return vendor or None


def clear_vendor_cache() -> None:
    """Clear the in-memory online vendor cache."""
    with _CACHE_LOCK:
        _CACHE.clear()
