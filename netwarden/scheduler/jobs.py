"""Recurring scan cycles on an APScheduler background scheduler, with event logging."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from threading import Lock
from typing import TYPE_CHECKING, Any

from apscheduler.job import Job
from apscheduler.schedulers.background import BackgroundScheduler

from netwarden.errors import InvalidConfiguration, NetwardenError

if TYPE_CHECKING:
    from netwarden.cycle import ScanCycleRunner

logger = logging.getLogger(__name__)

MAX_SCHEDULE_EVENTS = 1000

_JOB_EVENTS: list[dict[str, Any]] = []
_JOB_EVENTS_LOCK = Lock()


def build_scheduler() -> BackgroundScheduler:
    """Create and return a background scheduler instance."""
    return BackgroundScheduler(timezone=timezone.utc)


def log_schedule_event(
    *,
    action: str,
    job_id: str,
    scheduled_for: str | None = None,
    source: str = "scheduler",
    cycle_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Record a scheduler event; timeline rows join on ``cycle_id``."""
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "job_id": job_id,
        "scheduled_for": scheduled_for or "",
        "source": source,
        "cycle_id": cycle_id or "",
        "metadata": dict(metadata or {}),
    }
    with _JOB_EVENTS_LOCK:
        _JOB_EVENTS.append(event)
        del _JOB_EVENTS[:-MAX_SCHEDULE_EVENTS]
    return event


def get_schedule_events(*, job_id: str | None = None) -> list[dict[str, Any]]:
    """Return a snapshot of recorded scheduler events."""
    with _JOB_EVENTS_LOCK:
        items = list(_JOB_EVENTS)
    if job_id:
        return [event for event in items if str(event.get("job_id")) == job_id]
    return items


def clear_schedule_events() -> None:
    with _JOB_EVENTS_LOCK:
        _JOB_EVENTS.clear()


def run_scheduled_cycle(runner: "ScanCycleRunner", job_id: str) -> dict[str, Any] | None:
    """Job body: run one cycle and log its outcome; errors are logged, never raised into the scheduler."""
    log_schedule_event(action="started", job_id=job_id)
    try:
        report = runner.run()
    except NetwardenError as exc:
        logger.warning("Scheduled cycle %s failed: %s", job_id, exc)
        log_schedule_event(action="failed", job_id=job_id, metadata={"error": str(exc)})
        return None
    summary = report.summary()
    log_schedule_event(action="completed", job_id=job_id, cycle_id=report.cycle_id, metadata=summary)
    return summary


def schedule_scan_cycle(
    scheduler: BackgroundScheduler,
    runner: "ScanCycleRunner",
    *,
    interval_minutes: float,
    job_id: str = "netwarden-scan-cycle",
    run_immediately: bool = False,
) -> Job:
    """Register a recurring scan cycle; at most one instance of the job runs at a time."""
    if interval_minutes <= 0:
        raise InvalidConfiguration("interval_minutes must be positive")
    next_run = datetime.now(timezone.utc) if run_immediately else None
    job = scheduler.add_job(
        run_scheduled_cycle,
        "interval",
        minutes=interval_minutes,
        args=(runner, job_id),
        id=job_id,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        **({"next_run_time": next_run} if next_run else {}),
    )
    log_schedule_event(
        action="scheduled",
        job_id=job_id,
        scheduled_for=job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
        metadata={"interval_minutes": interval_minutes},
    )
    return job
