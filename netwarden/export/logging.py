"""Append-only JSON-lines audit log of scan cycles."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import Any, Iterator

logger = logging.getLogger(__name__)

AUDIT_LOG_PATH = Path.home() / ".netwarden" / "scan_audit.jsonl"

_APPEND_LOCK = threading.Lock()


@contextmanager
def _advisory_file_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``<path>.lock`` where the platform offers one."""
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with lock_path.open("a+", encoding="utf-8") as lock_file:
        try:
            import fcntl  # type: ignore
        except ModuleNotFoundError:
            fcntl = None  # type: ignore[assignment]

        if fcntl is not None:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            return

        try:
            import msvcrt  # type: ignore
        except ModuleNotFoundError:
            # Process-level lock only.
            yield
            return

        msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
        try:
            yield
        finally:
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)


def append_audit_record(record: dict[str, Any], path: str | Path | None = None) -> Path:
    """Append one record as a JSON line, stamping ``timestamp`` when missing."""
    target = Path(path or AUDIT_LOG_PATH)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(record)
    payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    with _APPEND_LOCK, _advisory_file_lock(target):
        with target.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    return target


def append_cycle_summary(
    *,
    cycle_id: str,
    host_count: int,
    port_count: int,
    open_port_count: int,
    finding_count: int,
    anomaly_count: int,
    change_count: int,
    duration_seconds: float,
    cancelled: bool = False,
    path: str | Path | None = None,
) -> Path:
    return append_audit_record(
        {
            "kind": "scan_cycle",
            "cycle_id": cycle_id,
            "host_count": host_count,
            "port_count": port_count,
            "open_port_count": open_port_count,
            "finding_count": finding_count,
            "anomaly_count": anomaly_count,
            "change_count": change_count,
            "duration_seconds": round(duration_seconds, 3),
            "cancelled": cancelled,
        },
        path,
    )


def read_audit_log(path: str | Path | None = None, *, limit: int | None = None) -> list[dict[str, Any]]:
    """Read audit records oldest first; unreadable lines are skipped with a warning."""
    target = Path(path or AUDIT_LOG_PATH)
    if not target.exists():
        return []
    records: list[dict[str, Any]] = []
    with target.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                decoded = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed audit line %d in %s", line_number, target)
                continue
            if isinstance(decoded, dict):
                records.append(decoded)
    return records[-limit:] if limit else records
