"""Domain models for vendor subscription billing."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Dedupe window for payment references. A redelivered reference older than
# the newest MAX_TRACKED_PAYMENT_REFS is treated as a new payment.
MAX_TRACKED_PAYMENT_REFS = 50


class SubscriptionStatus(str, Enum):
    """Canonical billing state of a vendor's store."""

    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    FROZEN = "frozen"
    CANCELLED = "cancelled"


class PaymentEventType(str, Enum):
    """Charge outcomes reported by the payment gateway."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISPUTED = "disputed"


class NotificationKind(str, Enum):
    """Vendor-facing subscription emails tracked by the dedupe ledger."""

    EXPIRY_WARNING = "expiry_warning"
    GRACE_WARNING = "grace_warning"
    FROZEN = "frozen"
    REACTIVATED = "reactivated"


class NotificationStatus(str, Enum):
    """Delivery status of a ledger entry."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SubscriptionRecord(BaseModel):
    """Per-vendor billing state owned by the subscription store."""

    vendor_id: str
    store_id: str
    store_name: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_end: Optional[datetime] = None
    grace_end: Optional[datetime] = None
    frozen_at: Optional[datetime] = None
    last_processed_payment_ref: Optional[str] = None
    processed_payment_refs: Tuple[str, ...] = ()
    last_tick_date: Optional[date] = None
    store_visible: bool = True
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("current_period_end", "grace_end", "frozen_at", "updated_at")
    @classmethod
    def _ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)

    @model_validator(mode="after")
    def _check_status_fields(self) -> "SubscriptionRecord":
        if (self.grace_end is not None) != (self.status == SubscriptionStatus.GRACE_PERIOD):
            raise ValueError("grace_end must be set if and only if status is grace_period")
        if (self.frozen_at is not None) != (self.status == SubscriptionStatus.FROZEN):
            raise ValueError("frozen_at must be set if and only if status is frozen")
        return self

    def has_processed(self, reference: str) -> bool:
        """Return ``True`` when a payment reference was already applied."""
        return reference in self.processed_payment_refs

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED


class PaymentEvent(BaseModel):
    """Normalized charge outcome derived from a gateway payload."""

    reference: str = Field(min_length=1)
    vendor_id: str = Field(min_length=1)
    type: PaymentEventType
    amount: float = Field(default=0, ge=0)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("occurred_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return _aware(value)


class PendingNotification(BaseModel):
    """A notification emitted by the state machine, keyed for dedupe."""

    vendor_id: str
    kind: NotificationKind
    period_key: str
    context: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.vendor_id, self.kind.value, self.period_key)


class NotificationRecord(BaseModel):
    """Ledger row tracking delivery of the notice for one key."""

    vendor_id: str
    kind: NotificationKind
    period_key: str
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    context: Dict[str, str] = Field(default_factory=dict)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.vendor_id, self.kind.value, self.period_key)

    def as_pending(self) -> PendingNotification:
        return PendingNotification(
            vendor_id=self.vendor_id,
            kind=self.kind,
            period_key=self.period_key,
            context=dict(self.context),
        )


class VendorProfile(BaseModel):
    """Contact details for the vendor owning a store."""

    vendor_id: str
    email: Optional[str] = None
    name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class VendorInfo(BaseModel):
    """Rendering context handed to the notification dispatcher."""

    vendor_id: str
    email: str
    name: str
    store_name: str
    context: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Transition(BaseModel):
    """Result of applying one billing event to a record."""

    record: SubscriptionRecord
    notifications: List[PendingNotification] = Field(default_factory=list)
    store_visible: Optional[bool] = None
    changed: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class JobError(BaseModel):
    """A per-vendor failure captured by a batch run."""

    vendor_id: str
    stage: str
    message: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class DailyJobResult(BaseModel):
    """Aggregate outcome of a reconciliation run."""

    processed: int = 0
    warned: int = 0
    frozen: int = 0
    moved_to_grace: int = 0
    redelivered: int = 0
    errors: List[JobError] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)


class WebhookOutcome(BaseModel):
    """What the webhook processor did with an authenticated delivery."""

    event: str
    reference: Optional[str] = None
    vendor_id: Optional[str] = None
    applied: bool = False
    ignored: bool = False
    status: Optional[SubscriptionStatus] = None
    notifications_sent: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "DailyJobResult",
    "JobError",
    "MAX_TRACKED_PAYMENT_REFS",
    "NotificationKind",
    "NotificationRecord",
    "NotificationStatus",
    "PaymentEvent",
    "PaymentEventType",
    "PendingNotification",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "Transition",
    "VendorInfo",
    "VendorProfile",
    "WebhookOutcome",
]
