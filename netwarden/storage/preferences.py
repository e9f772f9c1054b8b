"""SQLite-backed preference and scan-history storage for netwarden."""

from __future__ import annotations

from datetime import datetime, timezone
import json
from pathlib import Path
import sqlite3
from typing import Any

DB_PATH = Path.home() / ".netwarden" / "netwarden.db"


def _connect(db_path: Path | None = None) -> sqlite3.Connection:
    path = Path(db_path or DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS preferences (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scan_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cycle_id TEXT NOT NULL,
            scan_type TEXT NOT NULL,
            summary TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS threat_findings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cycle_id TEXT NOT NULL,
            finding_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    return conn


def set_preference(key: str, value: Any) -> None:
    payload = json.dumps(value, ensure_ascii=False)
    stamp = datetime.now(timezone.utc).isoformat()
    with _connect() as conn:
        conn.execute(
            """
            INSERT INTO preferences(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """,
            (key, payload, stamp),
        )


def get_preference(key: str, default: Any = None) -> Any:
    with _connect() as conn:
        row = conn.execute("SELECT value FROM preferences WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(str(row[0]))
    except json.JSONDecodeError:
        return default


def record_scan_history(cycle_id: str, scan_type: str, summary: dict[str, Any]) -> None:
    stamp = datetime.now(timezone.utc).isoformat()
    with _connect() as conn:
        conn.execute(
            "INSERT INTO scan_history(cycle_id, scan_type, summary, created_at) VALUES (?, ?, ?, ?)",
            (cycle_id, scan_type, json.dumps(summary, ensure_ascii=False), stamp),
        )


def list_scan_history(limit: int = 25) -> list[dict[str, Any]]:
    with _connect() as conn:
        rows = conn.execute(
            "SELECT cycle_id, scan_type, summary, created_at FROM scan_history ORDER BY id DESC LIMIT ?",
            (max(1, int(limit)),),
        ).fetchall()
    history: list[dict[str, Any]] = []
    for cycle_id, scan_type, summary, created_at in rows:
        try:
            decoded = json.loads(str(summary))
        except json.JSONDecodeError:
            decoded = {"raw": str(summary)}
        history.append({"cycle_id": cycle_id, "scan_type": scan_type, "summary": decoded, "created_at": created_at})
    return history


def record_threat_findings(cycle_id: str, findings: list[dict[str, Any]]) -> None:
    if not findings:
        return
    stamp = datetime.now(timezone.utc).isoformat()
    with _connect() as conn:
        conn.executemany(
            "INSERT INTO threat_findings(cycle_id, finding_json, created_at) VALUES (?, ?, ?)",
            [(cycle_id, json.dumps(finding, ensure_ascii=False), stamp) for finding in findings],
        )


def list_threat_findings(limit: int = 500, *, cycle_id: str | None = None) -> list[dict[str, Any]]:
    query = "SELECT cycle_id, finding_json, created_at FROM threat_findings"
    params: tuple[Any, ...] = ()
    if cycle_id:
        query += " WHERE cycle_id = ?"
        params = (cycle_id,)
    query += " ORDER BY id DESC LIMIT ?"
    with _connect() as conn:
        rows = conn.execute(query, (*params, max(1, int(limit)))).fetchall()
    findings: list[dict[str, Any]] = []
    for stored_cycle, payload, created_at in reversed(rows):
        try:
            decoded = json.loads(str(payload))
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            decoded.setdefault("cycle_id", stored_cycle)
            decoded.setdefault("recorded_at", created_at)
            findings.append(decoded)
    return findings
