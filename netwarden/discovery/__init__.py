"""Device discovery: advertisement sources, sanitization and the bounded registry."""

from .coordinator import DiscoveryCoordinator, DiscoveryRateLimiter, DiscoverySession, DiscoveryStats, build_sources
from .records import sanitize_label, sanitize_records
from .registry import DeviceRegistry
from .sources import AdvertisementSource, MdnsSource, RawAdvertisement, StaticSource, SubnetSweepSource
from .vendors import lookup_manufacturer, normalize_mac

__all__ = [
    "AdvertisementSource",
    "DeviceRegistry",
    "DiscoveryCoordinator",
    "DiscoveryRateLimiter",
    "DiscoverySession",
    "DiscoveryStats",
    "MdnsSource",
    "RawAdvertisement",
    "StaticSource",
    "SubnetSweepSource",
    "build_sources",
    "lookup_manufacturer",
    "normalize_mac",
    "sanitize_label",
    "sanitize_records",
]
