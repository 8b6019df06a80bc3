"""Subscription billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from ...mail.config import env_bool, env_float, env_int


@dataclass(frozen=True)
class BillingConfig:
    """Policy knobs and secrets for the vendor subscription engine."""

    billing_cycle_days: int
    grace_period_days: int
    expiry_warning_days: int
    subscription_amount: int
    currency: str
    paystack_secret_key: str
    paystack_base_url: str
    gateway_timeout_seconds: float
    bank_cache_ttl_seconds: int
    cron_secret: Optional[str]
    admin_secret: Optional[str]
    job_workers: int
    job_lock_ttl_seconds: int
    notification_claim_ttl_seconds: int
    conflict_retries: int
    job_hour_utc: int
    scheduler_enabled: bool


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Build :class:`BillingConfig` from ``env`` (defaults to ``os.environ``)."""

    source = os.environ if env is None else env

    job_hour = env_int(source, "SUBSCRIPTION_JOB_HOUR_UTC", 6)
    if not 0 <= job_hour <= 23:
        raise ValueError(f"SUBSCRIPTION_JOB_HOUR_UTC must be between 0 and 23, got {job_hour}")

    return BillingConfig(
        billing_cycle_days=env_int(source, "BILLING_CYCLE_DAYS", 30, minimum=1),
        grace_period_days=env_int(source, "GRACE_PERIOD_DAYS", 5, minimum=0),
        expiry_warning_days=env_int(source, "EXPIRY_WARNING_DAYS", 1, minimum=0),
        subscription_amount=env_int(source, "SUBSCRIPTION_AMOUNT", 2500, minimum=0),
        currency=(source.get("SUBSCRIPTION_CURRENCY") or "NGN").strip().upper(),
        paystack_secret_key=source.get("PAYSTACK_SECRET_KEY", ""),
        paystack_base_url=(source.get("PAYSTACK_BASE_URL") or "https://api.paystack.co").rstrip("/"),
        gateway_timeout_seconds=env_float(source, "GATEWAY_TIMEOUT_SECONDS", 10.0, minimum=0.1),
        bank_cache_ttl_seconds=env_int(source, "BANK_CACHE_TTL_SECONDS", 3600, minimum=0),
        cron_secret=source.get("CRON_SECRET") or None,
        admin_secret=source.get("ADMIN_SECRET") or None,
        job_workers=env_int(source, "SUBSCRIPTION_JOB_WORKERS", 4, minimum=1),
        job_lock_ttl_seconds=env_int(source, "SUBSCRIPTION_JOB_LOCK_TTL_SECONDS", 900, minimum=1),
        notification_claim_ttl_seconds=env_int(source, "NOTIFICATION_CLAIM_TTL_SECONDS", 900, minimum=1),
        conflict_retries=env_int(source, "SUBSCRIPTION_CONFLICT_RETRIES", 3, minimum=1),
        job_hour_utc=job_hour,
        scheduler_enabled=env_bool(source, "SUBSCRIPTION_SCHEDULER_ENABLED", False),
    )


__all__ = ["BillingConfig", "load_billing_config"]
