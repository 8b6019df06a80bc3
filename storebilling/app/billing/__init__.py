"""Vendor subscription billing domain: state machine, webhook processing and reconciliation."""

from .config import BillingConfig, load_billing_config
from .errors import (
    AuthError,
    BillingError,
    GatewayError,
    JobInProgressError,
    NotFoundError,
    PersistenceError,
    TransientGatewayError,
    ValidationError,
)
from .gateway import (
    AccountInfo,
    Bank,
    BankListCache,
    ChargeHandle,
    GatewayResult,
    PaymentConfirmation,
    PaystackClient,
)
from .models import (
    DailyJobResult,
    JobError,
    NotificationKind,
    NotificationRecord,
    NotificationStatus,
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
from .reconciliation import DailySubscriptionJob, run_daily_subscription_job
from .service import (
    DeliveryReport,
    JobLock,
    NotificationDispatcher,
    NotificationLedger,
    PaymentGateway,
    StoreRepository,
    SubscriptionBillingService,
    UserRepository,
)
from .state_machine import (
    BillingPolicy,
    Cancel,
    Freeze,
    GraceExpired,
    PaymentDisputed,
    PaymentFailed,
    PaymentSucceeded,
    Reactivate,
    Tick,
    apply,
)

__all__ = [
    "AccountInfo",
    "AuthError",
    "Bank",
    "BankListCache",
    "BillingConfig",
    "BillingError",
    "BillingPolicy",
    "Cancel",
    "ChargeHandle",
    "DailyJobResult",
    "DailySubscriptionJob",
    "DeliveryReport",
    "Freeze",
    "GraceExpired",
    "GatewayError",
    "GatewayResult",
    "JobError",
    "JobInProgressError",
    "JobLock",
    "NotFoundError",
    "NotificationDispatcher",
    "NotificationKind",
    "NotificationLedger",
    "NotificationRecord",
    "NotificationStatus",
    "PaymentConfirmation",
    "PaymentDisputed",
    "PaymentEvent",
    "PaymentEventType",
    "PaymentFailed",
    "PaymentGateway",
    "PaymentSucceeded",
    "PaystackClient",
    "PendingNotification",
    "PersistenceError",
    "Reactivate",
    "StoreRepository",
    "SubscriptionBillingService",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "Tick",
    "TransientGatewayError",
    "Transition",
    "UserRepository",
    "ValidationError",
    "VendorInfo",
    "VendorProfile",
    "WebhookOutcome",
    "apply",
    "load_billing_config",
]
