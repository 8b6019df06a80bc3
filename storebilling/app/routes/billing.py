"""API routes exposing vendor subscription billing."""
from __future__ import annotations

import hmac
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from ..billing import AuthError, BillingError, DailyJobResult, DailySubscriptionJob, ValidationError
from ..schemas.billing import (
    AdminActionRequest,
    AdminActionResponse,
    BankListResponse,
    DailyJobResponse,
    PaymentCallbackResponse,
    ResolveAccountRequest,
    ResolveAccountResponse,
    SubscriptionInitializeRequest,
    SubscriptionInitializeResponse,
    SubscriptionOverview,
    WebhookResponse,
)
from ..services.billing import get_billing_config, get_billing_service, get_job_lock
from ...subscription_jobs import run_subscription_job

logger = logging.getLogger("billing")

SIGNATURE_HEADER = "x-paystack-signature"

router = APIRouter(tags=["billing"])


def _secret_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _unauthorized() -> HTTPException:
    return AuthError().to_http_exception()


def handle_payment_webhook(raw_body: bytes, signature: Optional[str]) -> WebhookResponse:
    """Synchronous webhook handling shared by the async endpoint."""

    service = get_billing_service()
    try:
        outcome = service.process_webhook(raw_body, signature)
    except AuthError as exc:
        # Paystack treats any non-2xx as a delivery failure; a bad signature is a client error.
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=dict(exc.payload)) from exc
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Payment webhook processing failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": "Webhook processing failed"},
        ) from exc
    return WebhookResponse.from_outcome(outcome)


@router.post("/api/payments/webhook", response_model=WebhookResponse)
async def receive_payment_webhook(request: Request) -> WebhookResponse:
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    return await run_in_threadpool(handle_payment_webhook, raw_body, signature)


def _run_daily_job(trigger: str) -> DailyJobResponse:
    try:
        result = run_subscription_job(trigger=trigger, service=get_billing_service(), lock=get_job_lock())
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return DailyJobResponse.from_result(result)


@router.post("/api/admin/subscription-daily-job", response_model=DailyJobResponse)
def trigger_daily_job(authorization: Optional[str] = Header(None)) -> DailyJobResponse:
    config = get_billing_config()
    if not _secret_matches(_bearer_token(authorization), config.cron_secret):
        raise _unauthorized()
    return _run_daily_job("cron")


@router.get("/api/admin/subscription-daily-job", response_model=DailyJobResponse)
def trigger_daily_job_manually(secret: Optional[str] = Query(None)) -> DailyJobResponse:
    config = get_billing_config()
    if not _secret_matches(secret, config.admin_secret):
        raise _unauthorized()
    return _run_daily_job("manual")


def _job_action(action: str, run: Callable[[], DailyJobResult]) -> AdminActionResponse:
    result = run()
    return AdminActionResponse(action=action, job=DailyJobResponse.from_result(result))


def _require_vendor(payload: AdminActionRequest) -> str:
    vendor_id = (payload.vendor_id or "").strip()
    if not vendor_id:
        raise ValidationError("vendorId is required", detail={"action": payload.action})
    return vendor_id


def _dispatch_admin_action(payload: AdminActionRequest) -> AdminActionResponse:
    service = get_billing_service()
    config = service.config
    job = DailySubscriptionJob(
        service=service,
        lock=get_job_lock(),
        workers=config.job_workers,
        lock_ttl_seconds=config.job_lock_ttl_seconds,
    )
    action = payload.action

    if action == "send_expiry_warnings":
        return _job_action(action, job.send_expiry_warnings)
    if action == "send_grace_period_warnings":
        return _job_action(action, job.send_grace_period_warnings)
    if action == "process_expired_grace_periods":
        return _job_action(action, job.process_expired_grace_periods)
    if action == "freeze_vendor":
        transition = service.freeze_vendor(_require_vendor(payload))
        profile = service.users.find_vendor(transition.record.vendor_id)
        return AdminActionResponse(
            action=action,
            message="Vendor frozen" if transition.changed else "Vendor already frozen or cancelled",
            vendor=SubscriptionOverview.from_record(profile, transition.record),
        )
    if action == "reactivate_vendor":
        vendor_id = _require_vendor(payload)
        transition = service.reactivate_vendor(vendor_id, (payload.reference or "").strip())
        profile = service.users.find_vendor(vendor_id)
        return AdminActionResponse(
            action=action,
            message="Vendor reactivated" if transition.changed else "Payment reference already applied",
            vendor=SubscriptionOverview.from_record(profile, transition.record),
        )
    if action == "cancel_vendor":
        vendor_id = _require_vendor(payload)
        transition = service.cancel_vendor(vendor_id)
        profile = service.users.find_vendor(vendor_id)
        return AdminActionResponse(
            action=action,
            message="Subscription cancelled" if transition.changed else "Subscription already cancelled",
            vendor=SubscriptionOverview.from_record(profile, transition.record),
        )
    if action == "get_vendor_status":
        profile, record = service.get_vendor_status(_require_vendor(payload))
        return AdminActionResponse(action=action, vendor=SubscriptionOverview.from_record(profile, record))
    if action == "get_all_subscription_status":
        now = datetime.now(timezone.utc)
        overviews = [
            SubscriptionOverview.from_record(profile, record, now=now)
            for profile, record in service.get_all_subscription_status()
        ]
        counts: Dict[str, int] = dict(Counter(overview.status.value for overview in overviews))
        return AdminActionResponse(action=action, vendors=overviews, counts=counts)

    raise ValidationError(f"Unknown action: {action}", detail={"action": action})


@router.post("/api/admin/subscription-admin", response_model=AdminActionResponse)
def run_admin_action(payload: AdminActionRequest) -> AdminActionResponse:
    config = get_billing_config()
    if not _secret_matches(payload.admin_secret, config.admin_secret):
        raise _unauthorized()
    try:
        return _dispatch_admin_action(payload)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/api/payments/vendor-subscription", response_model=SubscriptionInitializeResponse)
def initialize_vendor_subscription(payload: SubscriptionInitializeRequest) -> SubscriptionInitializeResponse:
    service = get_billing_service()
    try:
        handle = service.start_subscription_payment(
            payload.vendor_id,
            email=payload.email,
            callback_url=payload.callback_url,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionInitializeResponse.from_handle(
        handle,
        amount=service.config.subscription_amount,
        currency=service.config.currency,
    )


@router.get("/api/payments/vendor-subscription/callback", response_model=PaymentCallbackResponse)
def vendor_subscription_callback(reference: str = Query("", alias="reference")) -> PaymentCallbackResponse:
    reference = reference.strip()
    if not reference:
        raise ValidationError("reference is required").to_http_exception()
    service = get_billing_service()
    try:
        outcome = service.confirm_payment(reference)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PaymentCallbackResponse.from_outcome(outcome)


@router.get("/api/vendor/banks", response_model=BankListResponse)
def list_banks() -> BankListResponse:
    service = get_billing_service()
    try:
        banks = service.gateway.list_banks().unwrap()
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return BankListResponse.from_banks(banks)


@router.post("/api/vendor/resolve-account", response_model=ResolveAccountResponse)
def resolve_account(payload: ResolveAccountRequest) -> ResolveAccountResponse:
    if not payload.bank_code.strip() or not payload.account_number.strip():
        raise ValidationError("bankCode and accountNumber are required").to_http_exception()
    service = get_billing_service()
    try:
        result = service.gateway.resolve_bank_account(payload.bank_code, payload.account_number)
        if not result.success and not result.transient:
            raise ValidationError(result.error or "Failed to resolve account")
        account = result.unwrap()
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ResolveAccountResponse.from_account(account)
