"""Daily reconciliation of vendor subscriptions.

Every non-cancelled record receives a ``Tick`` once per calendar day. Records
are independent, so ticks fan out over a bounded thread pool; the only shared
state is the store, the notification ledger and the single-flight job lock.
A failure for one vendor is captured in the result and never stops the batch.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence
from uuid import uuid4

from .errors import JobInProgressError
from .models import (
    DailyJobResult,
    JobError,
    NotificationKind,
    SubscriptionRecord,
    SubscriptionStatus,
)
from .service import JobLock, SubscriptionBillingService
from .state_machine import BillingEvent, GraceExpired, Tick

logger = logging.getLogger("billing.reconciliation")

DAILY_JOB_LOCK = "daily_subscription_job"

_NON_TERMINAL = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE_PERIOD,
    SubscriptionStatus.FROZEN,
)
_WARNING_KINDS = {NotificationKind.EXPIRY_WARNING, NotificationKind.GRACE_WARNING}

RecordFilter = Callable[[SubscriptionRecord, datetime], bool]


@dataclass
class _VendorOutcome:
    vendor_id: str
    warned: int = 0
    frozen: bool = False
    moved_to_grace: bool = False
    errors: List[JobError] = field(default_factory=list)


@dataclass
class DailySubscriptionJob:
    """Batch driver feeding ticks to subscription records."""

    service: SubscriptionBillingService
    lock: JobLock
    workers: int = 4
    lock_ttl_seconds: int = 900

    def run(self, *, now: Optional[datetime] = None) -> DailyJobResult:
        """Tick every non-terminal record and redeliver emails still queued in the ledger."""

        return self._locked_batch("daily", _every_record, now=now, redeliver=True)

    def send_expiry_warnings(self, *, now: Optional[datetime] = None) -> DailyJobResult:
        return self._locked_batch("expiry_warnings", self._expiring_soon, now=now)

    def send_grace_period_warnings(self, *, now: Optional[datetime] = None) -> DailyJobResult:
        return self._locked_batch("grace_period_warnings", _lapsed_or_in_grace, now=now)

    def process_expired_grace_periods(self, *, now: Optional[datetime] = None) -> DailyJobResult:
        return self._locked_batch("expired_grace_periods", _grace_expired, now=now, event=GraceExpired())

    def _locked_batch(
        self,
        label: str,
        include: RecordFilter,
        *,
        now: Optional[datetime] = None,
        redeliver: bool = False,
        event: BillingEvent = Tick(),
    ) -> DailyJobResult:
        current_time = now or datetime.now(timezone.utc)
        if current_time.tzinfo is None:
            current_time = current_time.replace(tzinfo=timezone.utc)

        owner = uuid4().hex
        if not self.lock.acquire_job_lock(DAILY_JOB_LOCK, owner, ttl_seconds=self.lock_ttl_seconds):
            logger.warning("Subscription batch skipped, another run holds the lock", extra={"batch": label})
            raise JobInProgressError()

        try:
            result = DailyJobResult(started_at=current_time)
            if redeliver:
                self._redeliver(result)
            records = [
                record
                for record in self.service.stores.list_records(statuses=_NON_TERMINAL)
                if include(record, current_time)
            ]
            self._tick_all(records, event, current_time, result)
            result.finished_at = datetime.now(timezone.utc)
        finally:
            self.lock.release_job_lock(DAILY_JOB_LOCK, owner)

        logger.info(
            "Subscription batch completed",
            extra={
                "batch": label,
                "processed": result.processed,
                "warned": result.warned,
                "frozen": result.frozen,
                "moved_to_grace": result.moved_to_grace,
                "redelivered": result.redelivered,
                "errors": len(result.errors),
            },
        )
        return result

    def _redeliver(self, result: DailyJobResult) -> None:
        report = self.service.redeliver_pending_notifications()
        result.redelivered = len(report.sent)
        for notification, error in report.failed:
            result.errors.append(JobError(vendor_id=notification.vendor_id, stage="redeliver", message=error))

    def _tick_all(
        self,
        records: Sequence[SubscriptionRecord],
        event: BillingEvent,
        now: datetime,
        result: DailyJobResult,
    ) -> None:
        if not records:
            return
        with ThreadPoolExecutor(max_workers=max(1, self.workers), thread_name_prefix="subscription-tick") as pool:
            outcomes = list(pool.map(lambda record: self._tick_vendor(record, event, now), records))

        for outcome in outcomes:
            result.processed += 1
            result.warned += outcome.warned
            result.frozen += int(outcome.frozen)
            result.moved_to_grace += int(outcome.moved_to_grace)
            result.errors.extend(outcome.errors)

    def _tick_vendor(self, record: SubscriptionRecord, event: BillingEvent, now: datetime) -> _VendorOutcome:
        outcome = _VendorOutcome(vendor_id=record.vendor_id)
        try:
            transition = self.service.apply_event(record.vendor_id, event, now=now, record=record)
        except Exception as exc:
            logger.exception("Subscription tick failed", extra={"vendor_id": record.vendor_id})
            outcome.errors.append(
                JobError(vendor_id=record.vendor_id, stage="transition", message=f"{type(exc).__name__}: {exc}")
            )
            return outcome

        new_status = transition.record.status
        if new_status != record.status:
            outcome.frozen = new_status == SubscriptionStatus.FROZEN
            outcome.moved_to_grace = new_status == SubscriptionStatus.GRACE_PERIOD

        try:
            report = self.service.deliver(transition.notifications)
        except Exception as exc:
            logger.exception("Subscription notification delivery failed", extra={"vendor_id": record.vendor_id})
            outcome.errors.append(
                JobError(vendor_id=record.vendor_id, stage="notify", message=f"{type(exc).__name__}: {exc}")
            )
            return outcome

        outcome.warned = sum(1 for sent in report.sent if sent.kind in _WARNING_KINDS)
        for notification, error in report.failed:
            outcome.errors.append(JobError(vendor_id=notification.vendor_id, stage="notify", message=error))
        return outcome

    def _expiring_soon(self, record: SubscriptionRecord, now: datetime) -> bool:
        if record.status != SubscriptionStatus.ACTIVE or record.current_period_end is None:
            return False
        if now > record.current_period_end:
            return False
        days_left = (record.current_period_end.date() - now.date()).days
        return days_left <= self.service.config.expiry_warning_days


def _every_record(record: SubscriptionRecord, now: datetime) -> bool:
    return True


def _lapsed_or_in_grace(record: SubscriptionRecord, now: datetime) -> bool:
    if record.status == SubscriptionStatus.ACTIVE:
        return record.current_period_end is not None and now > record.current_period_end
    return record.status == SubscriptionStatus.GRACE_PERIOD and record.grace_end is not None and now <= record.grace_end


def _grace_expired(record: SubscriptionRecord, now: datetime) -> bool:
    return record.status == SubscriptionStatus.GRACE_PERIOD and record.grace_end is not None and now > record.grace_end


def run_daily_subscription_job(
    service: SubscriptionBillingService,
    lock: JobLock,
    *,
    now: Optional[datetime] = None,
) -> DailyJobResult:
    """Run the daily reconciliation using the service's configured worker count."""

    job = DailySubscriptionJob(
        service=service,
        lock=lock,
        workers=service.config.job_workers,
        lock_ttl_seconds=service.config.job_lock_ttl_seconds,
    )
    return job.run(now=now)


__all__ = ["DAILY_JOB_LOCK", "DailySubscriptionJob", "run_daily_subscription_job"]
