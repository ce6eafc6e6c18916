"""
Embedded Lead Scheduler — BackgroundScheduler inside the FastAPI process.

dashboard.py starts it on startup and stops it on shutdown. The lead job
is single-flight (max_instances=1, coalesce) so ticks never overlap.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("sentinel.embedded_scheduler")

LEAD_JOB_ID = "lead_poll"

_scheduler: Optional[BackgroundScheduler] = None
# job id → outcome of its most recent run
_last_runs: Dict[str, dict] = {}


def _on_job_event(event):
    now = datetime.now(timezone.utc).isoformat()
    if event.code == EVENT_JOB_MAX_INSTANCES:
        logger.warning(f"Job {event.job_id} skipped: previous run still active")
        _last_runs[event.job_id] = {"at": now, "outcome": "skipped_overlap"}
    elif event.exception:
        logger.error(f"Job {event.job_id} failed: {event.exception}", exc_info=event.traceback)
        _last_runs[event.job_id] = {"at": now, "outcome": "error", "error": str(event.exception)}
    else:
        outcome = "ok"
        if isinstance(event.retval, dict) and not event.retval.get("success", True):
            outcome = event.retval.get("errorType", "failed")
        _last_runs[event.job_id] = {"at": now, "outcome": outcome}


def start_scheduler(interval_seconds: Optional[int] = None):
    """Create and start the BackgroundScheduler. Idempotent."""
    global _scheduler
    from config.settings import config
    from triggers.lead_email_trigger import run_lead_poll

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running — skipping start")
        return

    interval = interval_seconds or config.triggers.lead_check_interval
    _scheduler = BackgroundScheduler(job_defaults={"misfire_grace_time": 300})
    _scheduler.add_listener(
        _on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES,
    )
    _scheduler.add_job(
        run_lead_poll,
        IntervalTrigger(seconds=interval),
        id=LEAD_JOB_ID, name="Lead mailbox polling",
        coalesce=True, max_instances=1, replace_existing=True,
    )
    _scheduler.start()
    logger.info(f"Lead scheduler started: {LEAD_JOB_ID} every {interval}s")


def stop_scheduler():
    """Graceful shutdown. Idempotent."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=True)
        logger.info("BackgroundScheduler stopped")
    _scheduler = None


def get_scheduler_status() -> dict:
    """Scheduler state for /api/scheduler-status."""
    if _scheduler is None or not _scheduler.running:
        return {"running": False, "jobs": [], "job_count": 0}

    jobs = [
        {
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "last_run": _last_runs.get(job.id),
        }
        for job in _scheduler.get_jobs()
    ]
    return {
        "running": True,
        "job_count": len(jobs),
        "jobs": jobs,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
