"""Discovery sessions: concurrent sources feeding a rate-limited, bounded registry."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import ipaddress
import logging
import queue
import threading
import time

from netwarden.config import DiscoveryConfig
from netwarden.errors import CooldownActive, MalformedAdvertisement, RateLimitExceeded
from netwarden.models import Device

from .identity import mac_from_records, split_instance_name
from .records import sanitize_label, sanitize_records
from .registry import DeviceRegistry
from .sources import AdvertisementSource, MdnsSource, RawAdvertisement, SubnetSweepSource
from .vendors import lookup_manufacturer, normalize_mac

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0


class DiscoveryRateLimiter:
    """Fixed one-minute window counter shared by every source of a coordinator."""

    def __init__(
        self,
        limit_per_minute: int,
        *,
        window_seconds: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = int(limit_per_minute)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._window_start: float | None = None
        self._count = 0
        self._lock = threading.Lock()

    def _roll(self, now: float) -> None:
        if self._window_start is None or now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._count = 0

    def acquire(self) -> None:
        """Count one advertisement or raise :class:`RateLimitExceeded`."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count >= self.limit:
                retry_after = self.window_seconds - (now - (self._window_start or now))
                raise RateLimitExceeded(self._count, self.limit, retry_after)
            self._count += 1

    def try_acquire(self) -> bool:
        try:
            self.acquire()
        except RateLimitExceeded:
            return False
        return True

    @property
    def current(self) -> int:
        with self._lock:
            return self._count


@dataclass(slots=True)
class DiscoveryStats:
    received: int = 0
    accepted: int = 0
    rate_limited: int = 0
    malformed: int = 0
    dropped_records: int = 0
    source_failures: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "received": self.received,
            "accepted": self.accepted,
            "rate_limited": self.rate_limited,
            "malformed": self.malformed,
            "dropped_records": self.dropped_records,
            "source_failures": self.source_failures,
        }

    def merge(self, other: DiscoveryStats) -> None:
        self.received += other.received
        self.accepted += other.accepted
        self.rate_limited += other.rate_limited
        self.malformed += other.malformed
        self.dropped_records += other.dropped_records
        self.source_failures += other.source_failures


class DiscoverySession(Iterator[Device]):
    """Iterator over devices accepted during one discovery run.

    Sources start when the session is created and write straight into the
    registry; iteration only observes. Closing the session stops the sources.
    """

    def __init__(
        self,
        coordinator: "DiscoveryCoordinator",
        sources: Sequence[AdvertisementSource],
        *,
        max_workers: int,
    ) -> None:
        self._coordinator = coordinator
        self.sources = list(sources)
        self.stats = DiscoveryStats()
        self.stop_event = threading.Event()
        self._queue: queue.Queue[Device | None] = queue.Queue()
        self._finished = threading.Event()
        self._stats_lock = threading.Lock()
        self._closed = False
        self._supervisor = threading.Thread(
            target=self._supervise,
            args=(max(1, min(int(max_workers), len(self.sources) or 1)),),
            daemon=True,
            name="discovery-supervisor",
        )
        self._supervisor.start()

    def _emit(self, advertisement: RawAdvertisement) -> None:
        if self.stop_event.is_set():
            return
        observed = DiscoveryStats()
        device = self._coordinator.ingest(advertisement, stats=observed)
        with self._stats_lock:
            self.stats.merge(observed)
        if device is not None:
            self._queue.put(device)

    def _run_source(self, source: AdvertisementSource) -> None:
        try:
            source.run(self._emit, self.stop_event)
        except Exception:  # noqa: BLE001
            with self._stats_lock:
                self.stats.source_failures += 1
            logger.exception("Discovery source %s failed", getattr(source, "name", source))

    def _supervise(self, workers: int) -> None:
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="discovery-source") as pool:
                for source in self.sources:
                    pool.submit(self._run_source, source)
        finally:
            self._finished.set()
            self._queue.put(None)

    def __next__(self) -> Device:
        if self._closed:
            raise StopIteration
        item = self._queue.get()
        if item is None:
            self._finish()
            raise StopIteration
        return item

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._coordinator._session_ended(self)
        logger.info("Discovery finished: %s", self.stats.to_dict())

    def close(self, timeout: float | None = 10.0) -> None:
        """Stop the sources, wait for them to drain and end the session."""
        self.stop_event.set()
        self._supervisor.join(timeout)
        self._finish()

    @property
    def running(self) -> bool:
        return not self._finished.is_set()

    def collect(self) -> list[Device]:
        """Consume the whole session and return the registry's devices."""
        for _ in self:
            pass
        return self._coordinator.registry.devices

    def __enter__(self) -> "DiscoverySession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DiscoveryCoordinator:
    """Owns the registry, the rate limiter and the cooldown between discovery runs."""

    def __init__(
        self,
        registry: DeviceRegistry | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        source_factory: Callable[[DiscoveryConfig], list[AdvertisementSource]] | None = None,
    ) -> None:
        self.registry = registry
        self._clock = clock
        self._source_factory = source_factory or build_sources
        self._limiter: DiscoveryRateLimiter | None = None
        self._online_vendor_lookup = False
        self._last_finished: float | None = None
        self._active: DiscoverySession | None = None
        self._cooldown_seconds = 0.0
        self._lock = threading.Lock()

    def cooldown_remaining(self, cooldown_seconds: float | None = None) -> float:
        cooldown = self._cooldown_seconds if cooldown_seconds is None else float(cooldown_seconds)
        with self._lock:
            if self._active is not None:
                return cooldown
            if self._last_finished is None:
                return 0.0
            return max(0.0, cooldown - (self._clock() - self._last_finished))

    def start_discovery(self, config: DiscoveryConfig | None = None) -> DiscoverySession:
        """Validate, enforce the cooldown, then start sources and return a device iterator."""
        config = (config or DiscoveryConfig()).validate()
        remaining = self.cooldown_remaining(config.cooldown_seconds)
        if remaining > 0:
            raise CooldownActive(remaining)

        sources = self._source_factory(config)
        with self._lock:
            if self._active is not None:
                raise CooldownActive(config.cooldown_seconds)
            if self.registry is None:
                self.registry = DeviceRegistry(config.max_devices)
            if self._limiter is None or self._limiter.limit != config.rate_limit_per_minute:
                self._limiter = DiscoveryRateLimiter(config.rate_limit_per_minute, clock=self._clock)
            self._online_vendor_lookup = config.online_vendor_lookup
            self._cooldown_seconds = config.cooldown_seconds
            session = DiscoverySession(self, sources, max_workers=config.max_workers)
            self._active = session
        logger.info("Discovery started with %d source(s)", len(sources))
        return session

    def _session_ended(self, session: DiscoverySession) -> None:
        with self._lock:
            if self._active is session:
                self._active = None
            self._last_finished = self._clock()

    def ingest(self, advertisement: RawAdvertisement, *, stats: DiscoveryStats | None = None) -> Device | None:
        """Sanitize one advertisement and merge it into the registry.

        Returns ``None`` when the advertisement is rate limited or unusable;
        never raises for malformed network input.
        """
        stats = stats if stats is not None else DiscoveryStats()
        stats.received += 1
        if self._limiter is not None and not self._limiter.try_acquire():
            stats.rate_limited += 1
            return None

        try:
            ip = str(ipaddress.ip_address(str(advertisement.ip).strip()))
        except ValueError:
            stats.malformed += 1
            logger.warning("Dropping advertisement from %s: invalid address %r", advertisement.source, advertisement.ip)
            return None

        with self._lock:
            if self.registry is None:
                self.registry = DeviceRegistry()
            registry = self.registry

        rejected: list[MalformedAdvertisement] = []
        try:
            records = sanitize_records(advertisement.records, source=advertisement.source, rejected=rejected)
            friendly_name, embedded_mac = split_instance_name(sanitize_label(advertisement.name))
            mac = normalize_mac(advertisement.mac) or mac_from_records(records) or embedded_mac or None
            manufacturer = lookup_manufacturer(mac, online=self._online_vendor_lookup) if mac else None
            device = registry.upsert(
                ip=ip,
                source=advertisement.source,
                mac=mac,
                name=friendly_name,
                hostname=sanitize_label(advertisement.hostname),
                manufacturer=manufacturer,
                records=records,
            )
        except (TypeError, ValueError) as exc:
            stats.malformed += 1
            logger.warning(
                "Dropping advertisement from %s at %s: %s",
                advertisement.source,
                ip,
                MalformedAdvertisement(str(exc)),
            )
            return None
        finally:
            stats.dropped_records += len(rejected)
        stats.accepted += 1
        return device


def build_sources(config: DiscoveryConfig) -> list[AdvertisementSource]:
    sources: list[AdvertisementSource] = []
    if config.mdns:
        sources.append(MdnsSource(config.service_types, listen_seconds=config.listen_seconds))
    if config.sweep:
        sources.append(
            SubnetSweepSource(config.subnets, workers=config.sweep_workers, ping_timeout=config.ping_timeout)
        )
    return sources
