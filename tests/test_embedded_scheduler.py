"""
Tests for the embedded lead scheduler: job registration and last-run
bookkeeping from APScheduler events.
"""
from types import SimpleNamespace

from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES

from triggers import embedded_scheduler
from triggers.embedded_scheduler import LEAD_JOB_ID, get_scheduler_status, start_scheduler, stop_scheduler


def test_start_registers_single_flight_lead_job():
    start_scheduler(interval_seconds=3600)
    try:
        job = embedded_scheduler._scheduler.get_job(LEAD_JOB_ID)
        assert job.max_instances == 1
        assert job.coalesce is True
        status = get_scheduler_status()
        assert status["running"] is True
        assert [j["id"] for j in status["jobs"]] == [LEAD_JOB_ID]
        # second start is a no-op
        start_scheduler(interval_seconds=3600)
        assert get_scheduler_status()["job_count"] == 1
    finally:
        stop_scheduler()
    assert get_scheduler_status()["running"] is False


def _event(code, retval=None, exception=None):
    return SimpleNamespace(code=code, job_id="job-x", retval=retval, exception=exception, traceback=None)


def test_last_run_records_batch_failure_type():
    embedded_scheduler._on_job_event(_event(
        EVENT_JOB_EXECUTED, retval={"success": False, "errorType": "gmail_api_timeout"},
    ))
    assert embedded_scheduler._last_runs["job-x"]["outcome"] == "gmail_api_timeout"

    embedded_scheduler._on_job_event(_event(EVENT_JOB_EXECUTED, retval={"success": True}))
    assert embedded_scheduler._last_runs["job-x"]["outcome"] == "ok"


def test_overlapping_tick_is_recorded_as_skipped():
    embedded_scheduler._on_job_event(_event(EVENT_JOB_MAX_INSTANCES))
    assert embedded_scheduler._last_runs["job-x"]["outcome"] == "skipped_overlap"
