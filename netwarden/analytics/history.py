"""Bounded per-device snapshot history and the change events derived from it."""

from __future__ import annotations

from collections import Counter, OrderedDict, deque
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
from typing import Any

from netwarden.errors import InvalidConfiguration, OutOfOrderSnapshot
from netwarden.models import ChangeEvent, ChangeType, Device, PortStatus, ScanResult, Snapshot, utc_now
from netwarden.storage.history_store import HistoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CycleRecord:
    cycle_id: str
    closed_at: datetime
    device_keys: frozenset[str]


class HistoryTracker:
    """Records snapshots in timestamp order per device and emits change events.

    Retention is bounded everywhere: per-device snapshots, the process-wide
    event log and the list of closed cycles all drop their oldest entries.
    """

    def __init__(
        self,
        max_snapshots_per_device: int = 100,
        max_change_events: int = 500,
        grace_period: timedelta = timedelta(minutes=10),
        max_cycles: int = 1000,
        store: HistoryStore | None = None,
    ) -> None:
        if max_snapshots_per_device < 1 or max_change_events < 1 or max_cycles < 1:
            raise InvalidConfiguration("history retention limits must be at least 1")
        if grace_period < timedelta(0):
            raise InvalidConfiguration("grace_period must not be negative")
        self.max_snapshots_per_device = int(max_snapshots_per_device)
        self.max_change_events = int(max_change_events)
        self.max_cycles = int(max_cycles)
        self.grace_period = grace_period
        self.store = store

        self._snapshots: dict[str, deque[Snapshot]] = {}
        self._events: deque[ChangeEvent] = deque(maxlen=self.max_change_events)
        self._cycles: deque[CycleRecord] = deque(maxlen=self.max_cycles)
        self._open_cycles: OrderedDict[str, set[str]] = OrderedDict()
        self._left: set[str] = set()
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock = threading.RLock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def load(self) -> int:
        """Restore snapshots, events, closed cycles and departed devices from the store.

        Returns the number of snapshots restored.
        """
        if self.store is None:
            return 0
        restored = 0
        with self._lock:
            for key, snapshots in self.store.load_snapshots(per_device=self.max_snapshots_per_device).items():
                self._snapshots[key] = deque(snapshots, maxlen=self.max_snapshots_per_device)
                restored += len(snapshots)
            self._events.extend(self.store.load_events(self.max_change_events))
            self._cycles.extend(
                CycleRecord(cycle_id=cycle_id, closed_at=closed_at, device_keys=keys)
                for cycle_id, closed_at, keys in self.store.load_cycles(self.max_cycles)
            )
            self._left.update(self.store.load_departed() & self._snapshots.keys())
            device_count = len(self._snapshots)
            cycle_count = len(self._cycles)
        logger.info("Restored %d snapshot(s) for %d device(s) over %d cycle(s)", restored, device_count, cycle_count)
        return restored

    def record_snapshot(self, device: Device, result: ScanResult) -> list[ChangeEvent]:
        """Store one observation of ``device`` and return the changes it reveals.

        Raises :class:`OutOfOrderSnapshot` when ``result`` is older than the
        device's latest snapshot. Re-submitting an identical snapshot with the
        same timestamp does nothing.
        """
        snapshot = Snapshot.from_result(device, result)
        key = snapshot.device_key

        with self._key_lock(key):
            history = self._snapshots.get(key)
            latest = history[-1] if history else None

            if latest is not None:
                if snapshot.timestamp < latest.timestamp:
                    raise OutOfOrderSnapshot(key, snapshot.timestamp, latest.timestamp)
                if result.cancelled:
                    # Ports the interrupted scan never reached keep their last known state.
                    carried = dict(latest.statuses)
                    carried.update(snapshot.statuses)
                    snapshot = Snapshot(
                        device_key=key,
                        timestamp=snapshot.timestamp,
                        ip=snapshot.ip,
                        hostname=snapshot.hostname,
                        statuses=carried,
                        cycle_id=snapshot.cycle_id,
                    )
                if snapshot.timestamp == latest.timestamp and snapshot.same_state(latest):
                    return []

            events = self._diff(latest, snapshot)

            with self._lock:
                if history is None:
                    history = self._snapshots.setdefault(key, deque(maxlen=self.max_snapshots_per_device))
                history.append(snapshot)
                rejoined = key in self._left
                self._left.discard(key)
                self._track_open_cycle(snapshot.cycle_id, key)
                self._events.extend(events)

            if self.store is not None:
                self.store.save_snapshot(snapshot, keep=self.max_snapshots_per_device)
                self.store.save_events(events, keep=self.max_change_events)
                if rejoined:
                    self.store.clear_departed(key)

        for event in events:
            logger.debug("%s %s: %s", event.change_type.value, key, event.details)
        return events

    def _track_open_cycle(self, cycle_id: str, key: str) -> None:
        # Caller holds self._lock.
        members = self._open_cycles.get(cycle_id)
        if members is None:
            members = self._open_cycles[cycle_id] = set()
            while len(self._open_cycles) > self.max_cycles:
                dropped, _ = self._open_cycles.popitem(last=False)
                logger.debug("Dropping unclosed cycle %s", dropped)
        members.add(key)

    def _diff(self, latest: Snapshot | None, snapshot: Snapshot) -> list[ChangeEvent]:
        key = snapshot.device_key
        stamp = snapshot.timestamp
        if latest is None:
            return [
                ChangeEvent(
                    change_type=ChangeType.DEVICE_JOINED,
                    device_key=key,
                    timestamp=stamp,
                    details=f"New device at {snapshot.ip}",
                    current=snapshot.ip,
                )
            ]

        events: list[ChangeEvent] = []
        absent_for = stamp - latest.timestamp
        with self._lock:
            was_left = key in self._left
            missed_cycle = any(
                cycle.closed_at > latest.timestamp and key not in cycle.device_keys for cycle in self._cycles
            )
        if was_left or (absent_for > self.grace_period and missed_cycle):
            events.append(
                ChangeEvent(
                    change_type=ChangeType.DEVICE_RETURNED,
                    device_key=key,
                    timestamp=stamp,
                    details=f"Device back at {snapshot.ip} after {absent_for}",
                    previous=latest.timestamp.isoformat(),
                    current=stamp.isoformat(),
                )
            )

        opened = sorted(snapshot.open_ports - latest.open_ports)
        closed = sorted(
            port
            for port in latest.open_ports - snapshot.open_ports
            if port in snapshot.statuses
        )
        for port in opened:
            events.append(
                ChangeEvent(
                    change_type=ChangeType.PORT_OPENED,
                    device_key=key,
                    timestamp=stamp,
                    details=f"Port {port} opened",
                    port=port,
                    previous=(latest.statuses.get(port) or PortStatus.CLOSED).value,
                    current=PortStatus.OPEN.value,
                )
            )
        for port in closed:
            events.append(
                ChangeEvent(
                    change_type=ChangeType.PORT_CLOSED,
                    device_key=key,
                    timestamp=stamp,
                    details=f"Port {port} closed",
                    port=port,
                    previous=PortStatus.OPEN.value,
                    current=snapshot.statuses[port].value,
                )
            )

        if latest.hostname and snapshot.hostname and latest.hostname != snapshot.hostname:
            events.append(
                ChangeEvent(
                    change_type=ChangeType.HOSTNAME_CHANGED,
                    device_key=key,
                    timestamp=stamp,
                    details=f"Hostname changed from {latest.hostname} to {snapshot.hostname}",
                    previous=latest.hostname,
                    current=snapshot.hostname,
                )
            )
        return events

    def close_cycle(self, cycle_id: str, *, now: datetime | None = None) -> list[ChangeEvent]:
        """Finish a scan cycle and emit ``device-left`` for devices missing past the grace period."""
        with self._lock:
            members = self._open_cycles.pop(cycle_id, set())
            stamps = [
                self._snapshots[key][-1].timestamp
                for key in members
                if self._snapshots.get(key) and self._snapshots[key][-1].cycle_id == cycle_id
            ]
            closed_at = now or (max(stamps) if stamps else utc_now())
            record = CycleRecord(cycle_id=cycle_id, closed_at=closed_at, device_keys=frozenset(members))
            self._cycles.append(record)

            events: list[ChangeEvent] = []
            for key, history in sorted(self._snapshots.items()):
                if key in members or key in self._left or not history:
                    continue
                latest = history[-1]
                if closed_at - latest.timestamp <= self.grace_period:
                    continue
                self._left.add(key)
                events.append(
                    ChangeEvent(
                        change_type=ChangeType.DEVICE_LEFT,
                        device_key=key,
                        timestamp=closed_at,
                        details=f"Device at {latest.ip} not seen since {latest.timestamp.isoformat()}",
                        previous=latest.timestamp.isoformat(),
                    )
                )
            self._events.extend(events)

        if self.store is not None:
            self.store.save_cycle(record.cycle_id, record.closed_at, record.device_keys, keep=self.max_cycles)
            self.store.mark_departed((event.device_key for event in events), closed_at)
            self.store.save_events(events, keep=self.max_change_events)
        logger.info("Closed cycle %s: %d device(s) present, %d left", cycle_id, len(members), len(events))
        return events

    def record_cycle(self, results: Iterable[ScanResult], *, cycle_id: str | None = None, now: datetime | None = None) -> list[ChangeEvent]:
        """Record every result of one cycle, then close it."""
        ordered = sorted(results, key=lambda result: result.timestamp)
        cycle = cycle_id or (ordered[0].cycle_id if ordered else None)
        if cycle is None:
            return []
        events: list[ChangeEvent] = []
        for result in ordered:
            events.extend(self.record_snapshot(result.device, result))
        events.extend(self.close_cycle(cycle, now=now))
        return events

    def snapshots(self, device_key: str) -> list[Snapshot]:
        with self._key_lock(device_key):
            return list(self._snapshots.get(device_key, ()))

    def events(
        self,
        *,
        device_key: str | None = None,
        since: datetime | None = None,
        change_types: Iterable[ChangeType | str] | None = None,
    ) -> list[ChangeEvent]:
        wanted = frozenset(ChangeType(item) for item in change_types) if change_types is not None else None
        with self._lock:
            items = list(self._events)
        return [
            event
            for event in items
            if (device_key is None or event.device_key == device_key)
            and (since is None or event.timestamp >= since)
            and (wanted is None or event.change_type in wanted)
        ]

    @property
    def device_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._snapshots)

    @property
    def cycles(self) -> list[CycleRecord]:
        with self._lock:
            return list(self._cycles)

    def uptime(self, device_key: str) -> float | None:
        """Fraction of cycles, since the device was first seen, in which it was present.

        Closed cycles come first, in closing order. Cycles that were only fed
        through :meth:`record_snapshot` and never closed follow in the order
        they were first seen, so callers that never close cycles still get a
        figure.
        """
        with self._lock:
            memberships = [cycle.device_keys for cycle in self._cycles]
            memberships.extend(frozenset(keys) for keys in self._open_cycles.values())
        first_index = next((index for index, keys in enumerate(memberships) if device_key in keys), None)
        if first_index is None:
            return None
        window = memberships[first_index:]
        present = sum(1 for keys in window if device_key in keys)
        return present / len(window)

    def device_statistics(self, device_key: str) -> dict[str, Any]:
        history = self.snapshots(device_key)
        if not history:
            return {}
        change_counts = Counter(event.change_type.value for event in self.events(device_key=device_key))
        ever_open: set[int] = set()
        for snapshot in history:
            ever_open.update(snapshot.open_ports)
        with self._lock:
            online = device_key not in self._left
        return {
            "device_key": device_key,
            "first_seen": history[0].timestamp.isoformat(),
            "last_seen": history[-1].timestamp.isoformat(),
            "snapshot_count": len(history),
            "uptime": self.uptime(device_key),
            "online": online,
            "current_open_ports": sorted(history[-1].open_ports),
            "ever_open_ports": sorted(ever_open),
            "changes": dict(sorted(change_counts.items())),
            "hostnames": sorted({snapshot.hostname for snapshot in history if snapshot.hostname}),
        }
