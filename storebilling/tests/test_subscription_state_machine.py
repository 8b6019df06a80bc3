"""Unit tests for the pure subscription state machine."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from storebilling.app.billing import (
    BillingPolicy,
    Cancel,
    Freeze,
    GraceExpired,
    NotificationKind,
    PaymentDisputed,
    PaymentEvent,
    PaymentEventType,
    PaymentFailed,
    PaymentSucceeded,
    Reactivate,
    SubscriptionRecord,
    SubscriptionStatus,
    Tick,
    apply,
)
from storebilling.app.billing.models import MAX_TRACKED_PAYMENT_REFS
from storebilling.tests.billing_fakes import make_record

NOW = datetime(2024, 9, 15, 12, 0, tzinfo=timezone.utc)


def _payment(reference: str, *, vendor_id: str = "vendor-1", kind: PaymentEventType = PaymentEventType.SUCCEEDED):
    return PaymentEvent(reference=reference, vendor_id=vendor_id, type=kind, amount=2500, occurred_at=NOW)


def _assert_status_fields(record: SubscriptionRecord) -> None:
    assert (record.grace_end is not None) == (record.status == SubscriptionStatus.GRACE_PERIOD)
    assert (record.frozen_at is not None) == (record.status == SubscriptionStatus.FROZEN)


def test_tick_moves_lapsed_subscription_into_grace_period():
    period_end = NOW - timedelta(days=1)
    record = make_record(current_period_end=period_end)

    transition = apply(record, Tick(), NOW)

    assert transition.changed is True
    assert transition.record.status == SubscriptionStatus.GRACE_PERIOD
    assert transition.record.grace_end == period_end + timedelta(days=5)
    assert transition.record.last_tick_date == NOW.date()
    assert [n.kind for n in transition.notifications] == [NotificationKind.GRACE_WARNING]
    assert transition.notifications[0].period_key == period_end.date().isoformat()
    assert transition.notifications[0].context["days_remaining"] == "4"
    assert transition.store_visible is None


def test_tick_freezes_when_grace_period_has_lapsed():
    record = make_record(
        status=SubscriptionStatus.GRACE_PERIOD,
        current_period_end=NOW - timedelta(days=6),
        grace_end=NOW - timedelta(days=1),
    )

    transition = apply(record, Tick(), NOW)

    assert transition.record.status == SubscriptionStatus.FROZEN
    assert transition.record.frozen_at == NOW
    assert transition.record.grace_end is None
    assert transition.record.store_visible is False
    assert transition.store_visible is False
    assert [n.kind for n in transition.notifications] == [NotificationKind.FROZEN]
    assert transition.notifications[0].period_key == (NOW - timedelta(days=6)).date().isoformat()


def test_grace_expiry_freezes_after_a_same_day_tick():
    period_end = NOW - timedelta(days=5)
    record = make_record(
        status=SubscriptionStatus.GRACE_PERIOD,
        current_period_end=period_end,
        grace_end=NOW + timedelta(hours=4),
    )
    ticked = apply(record, Tick(), NOW)
    assert ticked.record.status == SubscriptionStatus.GRACE_PERIOD
    later = NOW + timedelta(hours=6)

    assert apply(ticked.record, Tick(), later).changed is False
    expired = apply(ticked.record, GraceExpired(), later)

    assert expired.record.status == SubscriptionStatus.FROZEN
    assert expired.record.frozen_at == later
    assert expired.record.store_visible is False
    assert [n.kind for n in expired.notifications] == [NotificationKind.FROZEN]
    assert expired.notifications[0].period_key == period_end.date().isoformat()
    _assert_status_fields(expired.record)


def test_grace_expiry_leaves_running_grace_and_other_states_alone():
    in_grace = make_record(
        status=SubscriptionStatus.GRACE_PERIOD,
        current_period_end=NOW - timedelta(days=1),
        grace_end=NOW + timedelta(days=4),
    )
    active = make_record(current_period_end=NOW - timedelta(days=1))

    assert apply(in_grace, GraceExpired(), NOW).changed is False
    assert apply(active, GraceExpired(), NOW).changed is False


def test_payment_extends_period_from_current_end_and_is_idempotent():
    period_end = NOW + timedelta(days=3)
    record = make_record(current_period_end=period_end)

    first = apply(record, PaymentSucceeded(payment=_payment("R1")), NOW)

    assert first.record.current_period_end == period_end + timedelta(days=30)
    assert first.record.last_processed_payment_ref == "R1"
    assert first.record.processed_payment_refs == ("R1",)
    assert first.notifications == []

    second = apply(first.record, PaymentSucceeded(payment=_payment("R1")), NOW)

    assert second.changed is False
    assert second.record == first.record
    assert second.notifications == []


def test_payment_on_lapsed_period_starts_from_now():
    record = make_record(current_period_end=NOW - timedelta(days=10))

    transition = apply(record, PaymentSucceeded(payment=_payment("R2")), NOW)

    assert transition.record.current_period_end == NOW + timedelta(days=30)


def test_payment_during_grace_reactivates_once():
    record = make_record(
        status=SubscriptionStatus.GRACE_PERIOD,
        current_period_end=NOW - timedelta(days=2),
        grace_end=NOW + timedelta(days=3),
    )

    transition = apply(record, PaymentSucceeded(payment=_payment("R3")), NOW)

    assert transition.record.status == SubscriptionStatus.ACTIVE
    assert transition.record.grace_end is None
    assert [n.kind for n in transition.notifications] == [NotificationKind.REACTIVATED]
    assert transition.notifications[0].context["previous_status"] == "grace_period"

    replay = apply(transition.record, PaymentSucceeded(payment=_payment("R3")), NOW)
    assert replay.notifications == []


def test_late_payment_reactivates_frozen_store():
    record = make_record(
        status=SubscriptionStatus.FROZEN,
        current_period_end=NOW - timedelta(days=8),
        frozen_at=NOW - timedelta(days=2),
        store_visible=False,
    )

    transition = apply(record, PaymentSucceeded(payment=_payment("late-1")), NOW)

    assert transition.record.status == SubscriptionStatus.ACTIVE
    assert transition.record.frozen_at is None
    assert transition.record.store_visible is True
    assert transition.store_visible is True
    assert transition.notifications[0].kind == NotificationKind.REACTIVATED
    assert transition.notifications[0].period_key == (NOW + timedelta(days=30)).date().isoformat()


def test_reactivate_dedupes_on_reference():
    record = make_record(
        status=SubscriptionStatus.FROZEN,
        current_period_end=NOW - timedelta(days=8),
        frozen_at=NOW - timedelta(days=2),
        store_visible=False,
        processed_payment_refs=("seen",),
        last_processed_payment_ref="seen",
    )

    assert apply(record, Reactivate(reference="seen"), NOW).changed is False
    assert apply(record, Reactivate(reference="fresh"), NOW).record.status == SubscriptionStatus.ACTIVE


def test_tick_emits_expiry_warning_inside_window():
    period_end = NOW + timedelta(hours=20)
    record = make_record(current_period_end=period_end)

    transition = apply(record, Tick(), NOW)

    assert transition.record.status == SubscriptionStatus.ACTIVE
    assert [n.kind for n in transition.notifications] == [NotificationKind.EXPIRY_WARNING]
    assert transition.notifications[0].period_key == period_end.date().isoformat()


def test_tick_outside_warning_window_only_records_tick_date():
    record = make_record(current_period_end=NOW + timedelta(days=10))

    transition = apply(record, Tick(), NOW)

    assert transition.notifications == []
    assert transition.record.last_tick_date == NOW.date()


def test_second_tick_on_same_day_is_a_noop():
    record = make_record(current_period_end=NOW - timedelta(days=1))
    first = apply(record, Tick(), NOW)

    second = apply(first.record, Tick(), NOW + timedelta(hours=3))

    assert second.changed is False
    assert second.notifications == []


def test_grace_reminder_is_keyed_by_day():
    record = make_record(
        status=SubscriptionStatus.GRACE_PERIOD,
        current_period_end=NOW - timedelta(days=2),
        grace_end=NOW + timedelta(days=3),
        last_tick_date=date(2024, 9, 14),
    )

    transition = apply(record, Tick(), NOW)

    assert transition.record.status == SubscriptionStatus.GRACE_PERIOD
    assert transition.notifications[0].kind == NotificationKind.GRACE_WARNING
    assert transition.notifications[0].period_key == "2024-09-15"


@pytest.mark.parametrize("status_fields", [
    {"status": SubscriptionStatus.FROZEN, "frozen_at": NOW - timedelta(days=1), "store_visible": False},
    {"status": SubscriptionStatus.CANCELLED, "store_visible": False},
])
def test_tick_ignores_frozen_and_cancelled_records(status_fields):
    record = make_record(current_period_end=NOW - timedelta(days=30), **status_fields)

    transition = apply(record, Tick(), NOW)

    assert transition.changed is False
    assert transition.record == record


def test_admin_freeze_and_cancel():
    record = make_record(current_period_end=NOW + timedelta(days=5))

    frozen = apply(record, Freeze(), NOW)
    assert frozen.record.status == SubscriptionStatus.FROZEN
    assert frozen.notifications[0].period_key == NOW.date().isoformat()
    assert apply(frozen.record, Freeze(), NOW).changed is False

    cancelled = apply(frozen.record, Cancel(), NOW)
    assert cancelled.record.status == SubscriptionStatus.CANCELLED
    assert cancelled.record.frozen_at is None
    assert cancelled.notifications == []
    assert apply(cancelled.record, PaymentSucceeded(payment=_payment("after-cancel")), NOW).changed is False


def test_failed_and_disputed_payments_do_not_change_state():
    record = make_record(current_period_end=NOW + timedelta(days=5))

    for event in (
        PaymentFailed(payment=_payment("F1", kind=PaymentEventType.FAILED)),
        PaymentDisputed(payment=_payment("D1", kind=PaymentEventType.DISPUTED)),
    ):
        transition = apply(record, event, NOW)
        assert transition.changed is False
        assert transition.notifications == []


def test_processed_refs_are_bounded():
    refs = tuple(f"ref-{index}" for index in range(MAX_TRACKED_PAYMENT_REFS))
    record = make_record(current_period_end=NOW, processed_payment_refs=refs)

    transition = apply(record, PaymentSucceeded(payment=_payment("newest")), NOW)

    assert len(transition.record.processed_payment_refs) == MAX_TRACKED_PAYMENT_REFS
    assert transition.record.processed_payment_refs[-1] == "newest"
    assert "ref-0" not in transition.record.processed_payment_refs


def test_redelivered_reference_is_ignored_while_still_tracked():
    refs = tuple(f"ref-{index}" for index in range(MAX_TRACKED_PAYMENT_REFS))
    record = make_record(current_period_end=NOW, processed_payment_refs=refs)
    renewed = apply(record, PaymentSucceeded(payment=_payment("newest")), NOW).record

    # ref-1 is now the oldest reference inside the dedupe window; ref-0 fell out of it.
    assert apply(renewed, PaymentSucceeded(payment=_payment("ref-1")), NOW).changed is False
    assert apply(renewed, PaymentSucceeded(payment=_payment("ref-0")), NOW).changed is True


def test_custom_policy_lengths_are_respected():
    policy = BillingPolicy(billing_cycle_days=7, grace_period_days=2, expiry_warning_days=3)
    period_end = NOW - timedelta(hours=1)
    record = make_record(current_period_end=period_end)

    transition = apply(record, Tick(), NOW, policy)

    assert transition.record.grace_end == period_end + timedelta(days=2)


def test_status_fields_hold_across_a_full_lifecycle():
    record = make_record(current_period_end=NOW - timedelta(days=1))
    moments = [NOW + timedelta(days=offset) for offset in range(0, 10)]
    seen = {record.status}

    for moment in moments:
        record = apply(record, Tick(), moment).record
        _assert_status_fields(record)
        seen.add(record.status)

    record = apply(record, Reactivate(reference="manual-1"), moments[-1]).record
    _assert_status_fields(record)
    assert seen == {SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.FROZEN}
    assert record.status == SubscriptionStatus.ACTIVE


def test_record_rejects_inconsistent_status_fields():
    with pytest.raises(PydanticValidationError):
        make_record(status=SubscriptionStatus.FROZEN)
    with pytest.raises(PydanticValidationError):
        make_record(grace_end=NOW)
