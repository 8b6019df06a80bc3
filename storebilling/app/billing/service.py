"""Core service coordinating subscription billing with the store and gateway."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .config import BillingConfig
from .errors import AuthError, NotFoundError, PersistenceError, ValidationError
from .gateway import AccountInfo, Bank, ChargeHandle, GatewayResult, PaymentConfirmation
from .models import (
    NotificationKind,
    NotificationRecord,
    PaymentEvent,
    PaymentEventType,
    PendingNotification,
    SubscriptionRecord,
    SubscriptionStatus,
    Transition,
    VendorInfo,
    VendorProfile,
    WebhookOutcome,
)
from .state_machine import (
    BillingEvent,
    BillingPolicy,
    Cancel,
    Freeze,
    PaymentDisputed,
    PaymentFailed,
    PaymentSucceeded,
    Reactivate,
    apply,
)

logger = logging.getLogger("billing")

NotificationKey = Tuple[str, str, str]

_MUTABLE_FIELDS = (
    "status",
    "current_period_end",
    "grace_end",
    "frozen_at",
    "last_processed_payment_ref",
    "processed_payment_refs",
    "last_tick_date",
    "store_visible",
)

_WEBHOOK_EVENT_TYPES = {
    "charge.success": PaymentEventType.SUCCEEDED,
    "charge.failed": PaymentEventType.FAILED,
}


class StoreRepository(Protocol):
    """Persistence of per-vendor subscription records."""

    def find_by_vendor(self, vendor_id: str) -> Optional[SubscriptionRecord]:
        ...

    def update_subscription_fields(
        self,
        vendor_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int,
        notifications: Sequence[PendingNotification] = (),
    ) -> Optional[SubscriptionRecord]:
        """Apply ``fields`` only if the stored version still matches.

        ``notifications`` are queued as pending ledger rows in the same write.
        Returns ``None`` when another writer got there first.
        """

    def list_records(
        self,
        *,
        statuses: Optional[Sequence[SubscriptionStatus]] = None,
    ) -> Sequence[SubscriptionRecord]:
        ...


class UserRepository(Protocol):
    def find_vendor(self, vendor_id: str) -> Optional[VendorProfile]:
        ...


class NotificationLedger(Protocol):
    """Dedupe ledger keyed by ``(vendor_id, kind, period_key)``."""

    def claim_notification(self, notification: PendingNotification) -> bool:
        """Reserve a key for sending.

        Returns ``True`` when the key is new, pending, failed or stuck in
        ``sending`` past the claim TTL, ``False`` otherwise.
        """

    def mark_notification_sent(self, key: NotificationKey) -> None:
        ...

    def mark_notification_failed(self, key: NotificationKey, error: str) -> None:
        ...

    def list_undelivered_notifications(self, *, limit: int = 500) -> Sequence[NotificationRecord]:
        ...


class JobLock(Protocol):
    """Short-lived single-flight guard for batch runs."""

    def acquire_job_lock(self, name: str, owner: str, *, ttl_seconds: int) -> bool:
        ...

    def release_job_lock(self, name: str, owner: str) -> None:
        ...


class NotificationDispatcher(Protocol):
    """Sends vendor-facing subscription emails."""

    def send(self, kind: NotificationKind, vendor_info: VendorInfo) -> None:
        ...


class PaymentGateway(Protocol):
    """External payment provider integration."""

    def initialize_payment(
        self,
        vendor_id: str,
        amount: float,
        email: str,
        *,
        reference: Optional[str] = None,
        callback_url: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> GatewayResult[ChargeHandle]:
        ...

    def verify_transaction(self, reference: str) -> GatewayResult[PaymentConfirmation]:
        ...

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        ...

    def resolve_bank_account(self, bank_code: str, account_number: str) -> GatewayResult[AccountInfo]:
        ...

    def list_banks(self) -> GatewayResult[List[Bank]]:
        ...


@dataclass
class DeliveryReport:
    """Outcome of pushing a batch of notifications through the ledger."""

    sent: List[PendingNotification] = field(default_factory=list)
    skipped: List[PendingNotification] = field(default_factory=list)
    failed: List[Tuple[PendingNotification, str]] = field(default_factory=list)


@dataclass
class SubscriptionBillingService:
    """Applies billing events to vendor records and delivers the resulting emails."""

    stores: StoreRepository
    users: UserRepository
    ledger: NotificationLedger
    dispatcher: NotificationDispatcher
    gateway: PaymentGateway
    config: BillingConfig

    def _now(self, now: Optional[datetime] = None) -> datetime:
        current = now or datetime.now(timezone.utc)
        return current if current.tzinfo else current.replace(tzinfo=timezone.utc)

    @property
    def policy(self) -> BillingPolicy:
        return BillingPolicy.from_config(self.config)

    def get_record(self, vendor_id: str) -> SubscriptionRecord:
        record = self.stores.find_by_vendor(vendor_id)
        if record is None:
            raise NotFoundError(f"No subscription record for vendor {vendor_id}", detail={"vendorId": vendor_id})
        return record

    def apply_event(
        self,
        vendor_id: str,
        event: BillingEvent,
        *,
        now: Optional[datetime] = None,
        record: Optional[SubscriptionRecord] = None,
    ) -> Transition:
        """Run ``event`` through the state machine and persist it with compare-and-set.

        A lost race re-reads the record and re-applies the event, so the
        winner's effect is never overwritten.
        """

        current_time = self._now(now)
        policy = self.policy
        attempts = self.config.conflict_retries
        for attempt in range(1, attempts + 1):
            current = record if (record is not None and attempt == 1) else self.get_record(vendor_id)
            transition = apply(current, event, current_time, policy)
            if not transition.changed:
                return transition

            persisted = self.stores.update_subscription_fields(
                vendor_id,
                _changed_fields(current, transition.record),
                expected_version=current.version,
                notifications=transition.notifications,
            )
            if persisted is not None:
                if persisted.status != current.status:
                    logger.info(
                        "Subscription status changed",
                        extra={
                            "vendor_id": vendor_id,
                            "from_status": current.status.value,
                            "to_status": persisted.status.value,
                            "billing_event": type(event).__name__,
                        },
                    )
                return transition.model_copy(update={"record": persisted})

            logger.info(
                "Subscription write conflict, retrying",
                extra={"vendor_id": vendor_id, "attempt": attempt, "billing_event": type(event).__name__},
            )

        raise PersistenceError(
            f"Could not persist subscription change for vendor {vendor_id} after {attempts} attempts",
            detail={"vendorId": vendor_id},
        )

    def deliver(self, notifications: Sequence[PendingNotification]) -> DeliveryReport:
        """Send notifications whose ledger key has not been delivered yet.

        Ledger and dispatch failures are logged and reported, never raised.
        A notice that could not be claimed or sent keeps its ledger row
        undelivered and is picked up by :meth:`redeliver_pending_notifications`.
        """

        report = DeliveryReport()
        for notification in notifications:
            log_extra = {
                "vendor_id": notification.vendor_id,
                "notification_kind": notification.kind.value,
                "period_key": notification.period_key,
            }
            try:
                claimed = self.ledger.claim_notification(notification)
            except PersistenceError as exc:
                logger.exception("Could not claim subscription notification", extra=log_extra)
                report.failed.append((notification, _describe(exc)))
                continue
            if not claimed:
                report.skipped.append(notification)
                continue

            try:
                vendor_info = self._vendor_info(notification)
                self.dispatcher.send(notification.kind, vendor_info)
            except Exception as exc:
                error = _describe(exc)
                logger.exception("Subscription notification failed", extra=log_extra)
                self._record_outcome(self.ledger.mark_notification_failed, notification.key, error)
                report.failed.append((notification, error))
                continue

            self._record_outcome(self.ledger.mark_notification_sent, notification.key)
            report.sent.append(notification)
        return report

    def _record_outcome(self, mark, key: NotificationKey, *args: str) -> None:
        # A row left in ``sending`` is reclaimed once the claim TTL passes.
        try:
            mark(key, *args)
        except PersistenceError:
            logger.exception(
                "Could not record subscription notification outcome",
                extra={"vendor_id": key[0], "notification_kind": key[1], "period_key": key[2]},
            )

    def redeliver_pending_notifications(self, *, limit: int = 500) -> DeliveryReport:
        undelivered = self.ledger.list_undelivered_notifications(limit=limit)
        return self.deliver([record.as_pending() for record in undelivered])

    def process_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> WebhookOutcome:
        """Authenticate a gateway callback and apply it to the vendor's record."""

        if not signature or not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected payment webhook with invalid signature")
            raise AuthError("Invalid signature")

        payload = _parse_webhook_body(raw_body)
        event_name = str(payload.get("event") or "")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValidationError("Webhook data must be an object")

        event_type = _WEBHOOK_EVENT_TYPES.get(event_name)
        if event_type is None and event_name.startswith("charge.dispute"):
            event_type = PaymentEventType.DISPUTED
        if event_type is None:
            logger.info("Ignoring unhandled webhook event", extra={"webhook_event": event_name})
            return WebhookOutcome(event=event_name, ignored=True)

        payment = _payment_event_from_data(event_type, data, self._now(now))
        if payment is None:
            logger.info(
                "Ignoring webhook without vendor correlation",
                extra={"webhook_event": event_name, "reference": data.get("reference")},
            )
            return WebhookOutcome(event=event_name, reference=_optional_str(data.get("reference")), ignored=True)

        return self._apply_payment(event_name, payment, now=now)

    def confirm_payment(self, reference: str, *, now: Optional[datetime] = None) -> WebhookOutcome:
        """Verify a transaction with the gateway and apply it like a webhook would."""

        confirmation = self.gateway.verify_transaction(reference).unwrap()
        if confirmation.status != "success":
            raise ValidationError(
                f"Payment {reference} is not successful",
                detail={"reference": reference, "paymentStatus": confirmation.status},
            )
        if not confirmation.vendor_id:
            raise ValidationError("Verified payment carries no vendor id", detail={"reference": reference})

        payment = PaymentEvent(
            reference=confirmation.reference,
            vendor_id=confirmation.vendor_id,
            type=PaymentEventType.SUCCEEDED,
            amount=confirmation.amount,
            occurred_at=confirmation.paid_at or self._now(now),
        )
        return self._apply_payment("charge.success", payment, now=now)

    def start_subscription_payment(
        self,
        vendor_id: str,
        *,
        email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> ChargeHandle:
        """Initialize a subscription charge; state only changes once the payment is confirmed."""

        record = self.get_record(vendor_id)
        if record.is_terminal:
            raise ValidationError("Subscription is cancelled", detail={"vendorId": vendor_id})
        profile = self.users.find_vendor(vendor_id)
        if profile is None:
            raise NotFoundError(f"Vendor {vendor_id} not found", detail={"vendorId": vendor_id})
        billing_email = (email or "").strip() or profile.email
        if not billing_email:
            raise ValidationError("An email address is required for payment", detail={"vendorId": vendor_id})

        result = self.gateway.initialize_payment(
            vendor_id,
            self.config.subscription_amount,
            billing_email,
            callback_url=callback_url,
            metadata={"storeId": record.store_id},
        )
        handle = result.unwrap()
        logger.info(
            "Subscription payment initialized",
            extra={"vendor_id": vendor_id, "reference": handle.reference},
        )
        return handle

    def freeze_vendor(self, vendor_id: str, *, now: Optional[datetime] = None) -> Transition:
        transition = self.apply_event(vendor_id, Freeze(), now=now)
        self._deliver_logged(transition.notifications)
        return transition

    def reactivate_vendor(self, vendor_id: str, reference: str, *, now: Optional[datetime] = None) -> Transition:
        if not reference:
            raise ValidationError("reference is required to reactivate a vendor")
        transition = self.apply_event(vendor_id, Reactivate(reference=reference), now=now)
        self._deliver_logged(transition.notifications)
        return transition

    def cancel_vendor(self, vendor_id: str, *, now: Optional[datetime] = None) -> Transition:
        return self.apply_event(vendor_id, Cancel(), now=now)

    def get_vendor_status(self, vendor_id: str) -> Tuple[Optional[VendorProfile], SubscriptionRecord]:
        record = self.get_record(vendor_id)
        return self.users.find_vendor(vendor_id), record

    def get_all_subscription_status(self) -> List[Tuple[Optional[VendorProfile], SubscriptionRecord]]:
        return [(self.users.find_vendor(record.vendor_id), record) for record in self.stores.list_records()]

    def _apply_payment(
        self,
        event_name: str,
        payment: PaymentEvent,
        *,
        now: Optional[datetime] = None,
    ) -> WebhookOutcome:
        if payment.type == PaymentEventType.SUCCEEDED:
            billing_event: BillingEvent = PaymentSucceeded(payment=payment)
        elif payment.type == PaymentEventType.FAILED:
            billing_event = PaymentFailed(payment=payment)
            logger.warning(
                "Subscription charge failed",
                extra={"vendor_id": payment.vendor_id, "reference": payment.reference},
            )
        else:
            billing_event = PaymentDisputed(payment=payment)
            logger.warning(
                "Subscription charge disputed",
                extra={"vendor_id": payment.vendor_id, "reference": payment.reference},
            )

        transition = self.apply_event(payment.vendor_id, billing_event, now=now)
        report = self._deliver_logged(transition.notifications)
        if transition.changed:
            logger.info(
                "Subscription payment applied",
                extra={
                    "vendor_id": payment.vendor_id,
                    "reference": payment.reference,
                    "status": transition.record.status.value,
                },
            )
        return WebhookOutcome(
            event=event_name,
            reference=payment.reference,
            vendor_id=payment.vendor_id,
            applied=transition.changed,
            status=transition.record.status,
            notifications_sent=len(report.sent),
        )

    def _deliver_logged(self, notifications: Sequence[PendingNotification]) -> DeliveryReport:
        # Failed sends stay queued in the ledger for the next reconciliation run.
        report = self.deliver(notifications)
        if report.failed:
            logger.warning(
                "Subscription notifications deferred for redelivery",
                extra={"failed": len(report.failed)},
            )
        return report

    def _vendor_info(self, notification: PendingNotification) -> VendorInfo:
        profile = self.users.find_vendor(notification.vendor_id)
        if profile is None or not profile.email:
            raise NotFoundError(
                f"No contact email for vendor {notification.vendor_id}",
                detail={"vendorId": notification.vendor_id},
            )
        context: Dict[str, str] = {
            "amount": f"{self.config.subscription_amount:,}",
            "currency": self.config.currency,
            "grace_period_days": str(self.config.grace_period_days),
            **notification.context,
        }
        return VendorInfo(
            vendor_id=notification.vendor_id,
            email=profile.email,
            name=profile.name or "there",
            store_name=notification.context.get("store_name") or "your store",
            context=context,
        )


def _changed_fields(before: SubscriptionRecord, after: SubscriptionRecord) -> Dict[str, Any]:
    return {
        name: getattr(after, name)
        for name in _MUTABLE_FIELDS
        if getattr(after, name) != getattr(before, name)
    }


def _parse_webhook_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


def _payment_event_from_data(
    event_type: PaymentEventType,
    data: Mapping[str, Any],
    now: datetime,
) -> Optional[PaymentEvent]:
    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        return None
    vendor_id = _optional_str(metadata.get("vendorId") or metadata.get("vendor_id"))
    if not vendor_id:
        return None

    reference = _optional_str(data.get("reference"))
    if not reference:
        raise ValidationError("Webhook data is missing a payment reference")

    try:
        amount = float(data.get("amount") or 0) / 100
    except (TypeError, ValueError) as exc:
        raise ValidationError("Webhook amount is not numeric") from exc

    occurred_at = now
    raw_paid_at = data.get("paid_at") or data.get("paidAt")
    if isinstance(raw_paid_at, str) and raw_paid_at:
        try:
            parsed = datetime.fromisoformat(raw_paid_at.replace("Z", "+00:00"))
            occurred_at = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug("Unparseable paid_at on webhook", extra={"reference": reference})

    return PaymentEvent(
        reference=reference,
        vendor_id=vendor_id,
        type=event_type,
        amount=amount,
        occurred_at=occurred_at,
    )


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "DeliveryReport",
    "JobLock",
    "NotificationDispatcher",
    "NotificationLedger",
    "PaymentGateway",
    "StoreRepository",
    "SubscriptionBillingService",
    "UserRepository",
]
