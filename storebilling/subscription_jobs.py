"""Scheduler integration for the daily subscription reconciliation job."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from storebilling.app.billing import (
    DailyJobResult,
    JobInProgressError,
    JobLock,
    SubscriptionBillingService,
    run_daily_subscription_job,
)
from storebilling.app.services.billing import get_billing_config, get_billing_service, get_job_lock

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_SubscriptionJobWorker"] = None

_JOB_METRICS: Dict[str, object] = {
    "runs": 0,
    "skipped_runs": 0,
    "failures": 0,
    "processed": 0,
    "warned": 0,
    "frozen": 0,
    "moved_to_grace": 0,
    "redelivered": 0,
    "vendor_errors": 0,
    "last_trigger": None,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(trigger: str, started_at: datetime) -> None:
    with _metrics_lock:
        _JOB_METRICS["last_run_at"] = started_at
        _JOB_METRICS["last_trigger"] = trigger


def _record_run_success(completed_at: datetime, result: DailyJobResult) -> None:
    with _metrics_lock:
        _JOB_METRICS["runs"] = int(_JOB_METRICS.get("runs", 0)) + 1
        for key in ("processed", "warned", "frozen", "moved_to_grace", "redelivered"):
            _JOB_METRICS[key] = int(_JOB_METRICS.get(key, 0)) + int(getattr(result, key))
        _JOB_METRICS["vendor_errors"] = int(_JOB_METRICS.get("vendor_errors", 0)) + len(result.errors)
        _JOB_METRICS["last_success_at"] = completed_at
        _JOB_METRICS["last_error"] = None


def _record_run_skipped() -> None:
    with _metrics_lock:
        _JOB_METRICS["skipped_runs"] = int(_JOB_METRICS.get("skipped_runs", 0)) + 1


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _JOB_METRICS["failures"] = int(_JOB_METRICS.get("failures", 0)) + 1
        _JOB_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_subscription_job(
    *,
    trigger: str = "scheduler",
    now: Optional[datetime] = None,
    service: Optional[SubscriptionBillingService] = None,
    lock: Optional[JobLock] = None,
) -> DailyJobResult:
    """Run the daily reconciliation and record run metrics."""

    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    billing_service = service or get_billing_service()
    job_lock = lock or get_job_lock()

    _record_run_start(trigger, current_time)
    try:
        result = run_daily_subscription_job(billing_service, job_lock, now=current_time)
    except JobInProgressError:
        _record_run_skipped()
        logger.warning("Subscription job already running", extra={"trigger": trigger})
        raise
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Subscription job failed", extra={"trigger": trigger})
        raise
    else:
        _record_run_success(result.finished_at or datetime.now(timezone.utc), result)
        logger.info(
            "Subscription job completed",
            extra={
                "trigger": trigger,
                "processed": result.processed,
                "warned": result.warned,
                "frozen": result.frozen,
                "errors": len(result.errors),
            },
        )
        return result


class _SubscriptionJobWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="subscription-job-scheduler")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_subscription_job(trigger="scheduler")
            except Exception:
                # Already logged and counted by run_subscription_job; keep the schedule.
                logger.debug("Scheduled subscription run ended with an error")
            if self._stop_event.wait(self._interval):
                break


def _seconds_until(hour: int, minute: int = 0, *, now: Optional[datetime] = None) -> float:
    current = now or datetime.now(timezone.utc)
    target = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return max((target - current).total_seconds(), 0.0)


def start_subscription_scheduler(*, hour_utc: Optional[int] = None) -> None:
    global _worker

    with _scheduler_lock:
        if _worker is not None:
            return
        hour = get_billing_config().job_hour_utc if hour_utc is None else hour_utc
        delay = _seconds_until(hour)
        _worker = _SubscriptionJobWorker(initial_delay=delay, interval=24 * 60 * 60)
        _worker.start()
        logger.info(
            "Subscription job scheduler started",
            extra={"job_hour_utc": hour, "initial_delay_seconds": round(delay, 2)},
        )


def shutdown_subscription_scheduler() -> None:
    global _worker

    with _scheduler_lock:
        worker = _worker
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        _worker = None
        logger.info("Subscription job scheduler stopped")


def get_subscription_job_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_JOB_METRICS,
            "last_run_at": _JOB_METRICS["last_run_at"].isoformat() if _JOB_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _JOB_METRICS["last_success_at"].isoformat() if _JOB_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _JOB_METRICS.update(
            {
                "runs": 0,
                "skipped_runs": 0,
                "failures": 0,
                "processed": 0,
                "warned": 0,
                "frozen": 0,
                "moved_to_grace": 0,
                "redelivered": 0,
                "vendor_errors": 0,
                "last_trigger": None,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_subscription_job_metrics",
    "run_subscription_job",
    "shutdown_subscription_scheduler",
    "start_subscription_scheduler",
]
