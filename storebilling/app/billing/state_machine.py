"""Pure decision logic for vendor subscription billing.

``apply`` takes a :class:`SubscriptionRecord`, a billing event and the current
time, and returns a :class:`Transition` holding the next record plus the
notifications to emit. Nothing here performs I/O; persistence, dedupe and
delivery are the caller's job.

The function is total: any ``(status, event)`` pair that has no rule returns
the record unchanged with no notifications, so a batch run never aborts on an
unexpected state.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from .models import (
    MAX_TRACKED_PAYMENT_REFS,
    NotificationKind,
    PaymentEvent,
    PendingNotification,
    SubscriptionRecord,
    SubscriptionStatus,
    Transition,
)

_DAY = timedelta(days=1)


@dataclass(frozen=True)
class BillingPolicy:
    """Durations that drive expiry, grace and renewal."""

    billing_cycle_days: int = 30
    grace_period_days: int = 5
    expiry_warning_days: int = 1

    @classmethod
    def from_config(cls, config: Any) -> "BillingPolicy":
        return cls(
            billing_cycle_days=config.billing_cycle_days,
            grace_period_days=config.grace_period_days,
            expiry_warning_days=config.expiry_warning_days,
        )


DEFAULT_POLICY = BillingPolicy()


@dataclass(frozen=True)
class PaymentSucceeded:
    payment: PaymentEvent


@dataclass(frozen=True)
class PaymentFailed:
    payment: PaymentEvent


@dataclass(frozen=True)
class PaymentDisputed:
    payment: PaymentEvent


@dataclass(frozen=True)
class Tick:
    """Time-driven evaluation applied by reconciliation runs."""


@dataclass(frozen=True)
class GraceExpired:
    """Freeze a record whose grace period has lapsed, even if it was already ticked today."""


@dataclass(frozen=True)
class Freeze:
    """Explicit admin freeze."""


@dataclass(frozen=True)
class Reactivate:
    """Explicit reactivation backed by a fresh payment confirmation."""

    reference: str


@dataclass(frozen=True)
class Cancel:
    """Terminal, explicit cancellation."""


BillingEvent = Union[
    PaymentSucceeded, PaymentFailed, PaymentDisputed, Tick, GraceExpired, Freeze, Reactivate, Cancel
]


def apply(
    record: SubscriptionRecord,
    event: BillingEvent,
    now: datetime,
    policy: BillingPolicy = DEFAULT_POLICY,
) -> Transition:
    """Compute the next record state and notifications for ``event``."""

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    if isinstance(event, PaymentSucceeded):
        return _renew(record, event.payment.reference, now, policy)
    if isinstance(event, Reactivate):
        return _renew(record, event.reference, now, policy)
    if isinstance(event, Tick):
        return _tick(record, now, policy)
    if isinstance(event, GraceExpired):
        if record.status != SubscriptionStatus.GRACE_PERIOD or not _grace_lapsed(record, now):
            return _unchanged(record)
        return _expire_grace(record, now)
    if isinstance(event, Freeze):
        return _freeze(record, now, notification_key=now.date().isoformat())
    if isinstance(event, Cancel):
        return _cancel(record)
    return _unchanged(record)


def _renew(
    record: SubscriptionRecord,
    reference: str,
    now: datetime,
    policy: BillingPolicy,
) -> Transition:
    if not reference or record.is_terminal or record.has_processed(reference):
        return _unchanged(record)

    prior_status = record.status
    base = now
    if record.current_period_end is not None and record.current_period_end > now:
        base = record.current_period_end
    new_period_end = base + timedelta(days=policy.billing_cycle_days)
    refs = (record.processed_payment_refs + (reference,))[-MAX_TRACKED_PAYMENT_REFS:]

    updated = _evolve(
        record,
        status=SubscriptionStatus.ACTIVE,
        current_period_end=new_period_end,
        grace_end=None,
        frozen_at=None,
        last_processed_payment_ref=reference,
        processed_payment_refs=refs,
        store_visible=True,
    )

    notifications: List[PendingNotification] = []
    if prior_status in (SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.FROZEN):
        notifications.append(
            _notification(
                updated,
                NotificationKind.REACTIVATED,
                new_period_end.date().isoformat(),
                reference=reference,
                previous_status=prior_status.value,
            )
        )
    return _transition(record, updated, notifications)


def _tick(record: SubscriptionRecord, now: datetime, policy: BillingPolicy) -> Transition:
    today = now.date()
    if record.is_terminal or record.status == SubscriptionStatus.FROZEN:
        return _unchanged(record)
    if record.last_tick_date == today:
        return _unchanged(record)

    if record.status == SubscriptionStatus.ACTIVE:
        period_end = record.current_period_end
        if period_end is None:
            return _transition(record, _evolve(record, last_tick_date=today), [])

        cycle_key = period_end.date().isoformat()
        if now > period_end:
            grace_end = period_end + timedelta(days=policy.grace_period_days)
            updated = _evolve(
                record,
                status=SubscriptionStatus.GRACE_PERIOD,
                grace_end=grace_end,
                last_tick_date=today,
            )
            notice = _notification(
                updated,
                NotificationKind.GRACE_WARNING,
                cycle_key,
                days_remaining=str(_days_until(grace_end, now)),
            )
            return _transition(record, updated, [notice])

        updated = _evolve(record, last_tick_date=today)
        if (period_end.date() - today).days <= policy.expiry_warning_days:
            notice = _notification(
                updated,
                NotificationKind.EXPIRY_WARNING,
                cycle_key,
                days_remaining=str(_days_until(period_end, now)),
            )
            return _transition(record, updated, [notice])
        return _transition(record, updated, [])

    # Grace period: freeze once it lapses, otherwise remind once per day.
    grace_end = record.grace_end
    if _grace_lapsed(record, now):
        return _expire_grace(record, now)

    updated = _evolve(record, last_tick_date=today)
    reminder = _notification(
        updated,
        NotificationKind.GRACE_WARNING,
        today.isoformat(),
        days_remaining=str(_days_until(grace_end, now)),
    )
    return _transition(record, updated, [reminder])


def _grace_lapsed(record: SubscriptionRecord, now: datetime) -> bool:
    return record.grace_end is None or now > record.grace_end


def _expire_grace(record: SubscriptionRecord, now: datetime) -> Transition:
    ticked = _evolve(record, last_tick_date=now.date())
    cycle_key = (record.current_period_end or now).date().isoformat()
    return _freeze(ticked, now, notification_key=cycle_key, original=record)


def _freeze(
    record: SubscriptionRecord,
    now: datetime,
    *,
    notification_key: str,
    original: Optional[SubscriptionRecord] = None,
) -> Transition:
    before = original or record
    if record.status in (SubscriptionStatus.FROZEN, SubscriptionStatus.CANCELLED):
        return _unchanged(before)

    updated = _evolve(
        record,
        status=SubscriptionStatus.FROZEN,
        grace_end=None,
        frozen_at=now,
        store_visible=False,
    )
    notice = _notification(updated, NotificationKind.FROZEN, notification_key)
    return _transition(before, updated, [notice])


def _cancel(record: SubscriptionRecord) -> Transition:
    if record.is_terminal:
        return _unchanged(record)
    updated = _evolve(
        record,
        status=SubscriptionStatus.CANCELLED,
        grace_end=None,
        frozen_at=None,
        store_visible=False,
    )
    return _transition(record, updated, [])


def _evolve(record: SubscriptionRecord, **changes: Any) -> SubscriptionRecord:
    # Re-validate so the status/field invariants hold on every new record.
    data = record.model_dump()
    data.update(changes)
    return SubscriptionRecord.model_validate(data)


def _unchanged(record: SubscriptionRecord) -> Transition:
    return Transition(record=record)


def _transition(
    before: SubscriptionRecord,
    after: SubscriptionRecord,
    notifications: List[PendingNotification],
) -> Transition:
    visibility = after.store_visible if after.store_visible != before.store_visible else None
    return Transition(
        record=after,
        notifications=notifications,
        store_visible=visibility,
        changed=after != before,
    )


def _notification(
    record: SubscriptionRecord,
    kind: NotificationKind,
    period_key: str,
    **extra: str,
) -> PendingNotification:
    context: Dict[str, str] = {"status": record.status.value}
    if record.store_name:
        context["store_name"] = record.store_name
    if record.current_period_end is not None:
        context["period_end"] = record.current_period_end.isoformat()
    if record.grace_end is not None:
        context["grace_end"] = record.grace_end.isoformat()
    if record.frozen_at is not None:
        context["frozen_at"] = record.frozen_at.isoformat()
    context.update(extra)
    return PendingNotification(
        vendor_id=record.vendor_id,
        kind=kind,
        period_key=period_key,
        context=context,
    )


def _days_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now) / _DAY))


__all__ = [
    "BillingEvent",
    "BillingPolicy",
    "Cancel",
    "DEFAULT_POLICY",
    "Freeze",
    "GraceExpired",
    "PaymentDisputed",
    "PaymentFailed",
    "PaymentSucceeded",
    "Reactivate",
    "Tick",
    "apply",
]
