"""SQLite persistence for device snapshots, change events, closed cycles and baselines."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sqlite3
import threading
from typing import Any

from netwarden.models import Baseline, ChangeEvent, Snapshot

from . import preferences

logger = logging.getLogger(__name__)


class HistoryStore:
    """Single-writer store; every write runs under one lock and one short transaction."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = Path(db_path) if db_path else preferences.DB_PATH
        self._lock = threading.Lock()
        with self._connect():
            pass

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_key TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                cycle_id TEXT NOT NULL,
                snapshot_json TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_device ON snapshots(device_key, timestamp)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS change_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_key TEXT NOT NULL,
                change_type TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                event_json TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cycles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cycle_id TEXT NOT NULL,
                closed_at TEXT NOT NULL,
                device_keys_json TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE TABLE IF NOT EXISTS departed (device_key TEXT PRIMARY KEY, since TEXT NOT NULL)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS baselines (
                network_id TEXT PRIMARY KEY,
                baseline_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        return conn

    def save_snapshot(self, snapshot: Snapshot, *, keep: int | None = None) -> None:
        """Persist a snapshot, pruning the device's history to the newest ``keep`` rows."""
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT INTO snapshots(device_key, timestamp, cycle_id, snapshot_json) VALUES (?, ?, ?, ?)",
                (
                    snapshot.device_key,
                    snapshot.timestamp.isoformat(),
                    snapshot.cycle_id,
                    json.dumps(snapshot.to_dict(), ensure_ascii=False),
                ),
            )
            if keep:
                conn.execute(
                    """
                    DELETE FROM snapshots WHERE device_key = ? AND id NOT IN (
                        SELECT id FROM snapshots WHERE device_key = ? ORDER BY id DESC LIMIT ?
                    )
                    """,
                    (snapshot.device_key, snapshot.device_key, int(keep)),
                )

    def save_events(self, events: list[ChangeEvent], *, keep: int | None = None) -> None:
        if not events:
            return
        with self._lock, self._connect() as conn:
            conn.executemany(
                "INSERT INTO change_events(device_key, change_type, timestamp, event_json) VALUES (?, ?, ?, ?)",
                [
                    (
                        event.device_key,
                        event.change_type.value,
                        event.timestamp.isoformat(),
                        json.dumps(event.to_dict(), ensure_ascii=False),
                    )
                    for event in events
                ],
            )
            if keep:
                conn.execute(
                    "DELETE FROM change_events WHERE id NOT IN (SELECT id FROM change_events ORDER BY id DESC LIMIT ?)",
                    (int(keep),),
                )

    def load_snapshots(self, *, per_device: int = 100) -> dict[str, list[Snapshot]]:
        """Return each device's newest ``per_device`` snapshots, oldest first."""
        with self._connect() as conn:
            rows = conn.execute("SELECT device_key, snapshot_json FROM snapshots ORDER BY id ASC").fetchall()
        loaded: dict[str, list[Snapshot]] = {}
        for device_key, payload in rows:
            try:
                snapshot = Snapshot.from_dict(json.loads(str(payload)))
            except (json.JSONDecodeError, KeyError, ValueError) as exc:
                logger.warning("Skipping unreadable snapshot for %s: %s", device_key, exc)
                continue
            loaded.setdefault(str(device_key), []).append(snapshot)
        return {key: items[-per_device:] for key, items in loaded.items()}

    def load_events(self, limit: int = 500) -> list[ChangeEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT event_json FROM change_events ORDER BY id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        events: list[ChangeEvent] = []
        for (payload,) in reversed(rows):
            try:
                events.append(ChangeEvent.from_dict(json.loads(str(payload))))
            except (json.JSONDecodeError, KeyError, ValueError) as exc:
                logger.warning("Skipping unreadable change event: %s", exc)
        return events

    def save_baseline(self, baseline: Baseline) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO baselines(network_id, baseline_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(network_id) DO UPDATE SET baseline_json=excluded.baseline_json, updated_at=excluded.updated_at
                """,
                (baseline.network_id, json.dumps(baseline.to_dict(), ensure_ascii=False), stamp),
            )

    def load_baseline(self, network_id: str = "default") -> Baseline | None:
        with self._connect() as conn:
            row = conn.execute("SELECT baseline_json FROM baselines WHERE network_id = ?", (network_id,)).fetchone()
        if not row:
            return None
        try:
            payload: dict[str, Any] = json.loads(str(row[0]))
        except json.JSONDecodeError:
            logger.warning("Stored baseline for %s is not valid JSON", network_id)
            return None
        return Baseline.from_dict(payload)

    def save_cycle(
        self,
        cycle_id: str,
        closed_at: datetime,
        device_keys: Iterable[str],
        *,
        keep: int | None = None,
    ) -> None:
        """Persist a closed cycle, keeping only the newest ``keep`` cycles."""
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT INTO cycles(cycle_id, closed_at, device_keys_json) VALUES (?, ?, ?)",
                (cycle_id, closed_at.isoformat(), json.dumps(sorted(device_keys), ensure_ascii=False)),
            )
            if keep:
                conn.execute(
                    "DELETE FROM cycles WHERE id NOT IN (SELECT id FROM cycles ORDER BY id DESC LIMIT ?)",
                    (int(keep),),
                )

    def load_cycles(self, limit: int = 1000) -> list[tuple[str, datetime, frozenset[str]]]:
        """Return the newest ``limit`` closed cycles, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT cycle_id, closed_at, device_keys_json FROM cycles ORDER BY id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        cycles: list[tuple[str, datetime, frozenset[str]]] = []
        for cycle_id, closed_at, payload in reversed(rows):
            try:
                keys = frozenset(str(key) for key in json.loads(str(payload)))
                cycles.append((str(cycle_id), datetime.fromisoformat(str(closed_at)), keys))
            except (json.JSONDecodeError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable cycle %s: %s", cycle_id, exc)
        return cycles

    def mark_departed(self, device_keys: Iterable[str], since: datetime) -> None:
        rows = [(key, since.isoformat()) for key in device_keys]
        if not rows:
            return
        with self._lock, self._connect() as conn:
            conn.executemany("INSERT OR REPLACE INTO departed(device_key, since) VALUES (?, ?)", rows)

    def clear_departed(self, device_key: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM departed WHERE device_key = ?", (device_key,))

    def load_departed(self) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT device_key FROM departed").fetchall()
        return {str(key) for (key,) in rows}
