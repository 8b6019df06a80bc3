"""Application wiring for the subscription billing service."""
from __future__ import annotations

import logging
import time
from functools import lru_cache
from typing import Callable, Dict, Optional

from ..billing import (
    BankListCache,
    BillingConfig,
    NotificationKind,
    PaystackClient,
    SubscriptionBillingService,
    VendorInfo,
    load_billing_config,
)
from ..billing.repository import PostgresSubscriptionRepository
from ...mail import (
    EmailConfig,
    EmailProvider,
    create_email_provider,
    load_email_config,
    render_subscription_notification,
)

logger = logging.getLogger("billing")

RENEW_PATH = "/vendor/subscription"


class EmailNotificationDispatcher:
    """Renders subscription notices and sends them through the configured provider.

    Each send is retried with linear backoff; the final failure is re-raised so
    the caller can record it in the notification ledger.
    """

    def __init__(
        self,
        *,
        provider: EmailProvider,
        config: EmailConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.config = config
        self._sleep = sleep

    def build_context(self, vendor_info: VendorInfo) -> Dict[str, str]:
        context: Dict[str, str] = dict(vendor_info.context)
        context.update(
            {
                "name": vendor_info.name,
                "store_name": vendor_info.store_name,
                "renew_url": f"{self.config.app_base_url}{RENEW_PATH}",
                "period_end_date": _date_part(context.get("period_end")),
                "grace_end_date": _date_part(context.get("grace_end")),
            }
        )
        context.setdefault("days_remaining", "0")
        return context

    def send(self, kind: NotificationKind, vendor_info: VendorInfo) -> None:
        subject, text_body, html_body = render_subscription_notification(kind, self.build_context(vendor_info))
        attempts = max(1, self.config.max_attempts)
        backoff = max(0.0, self.config.backoff_seconds)

        for attempt in range(1, attempts + 1):
            try:
                self.provider.send_email(vendor_info.email, subject, html_body, text_body)
            except Exception:
                logger.warning(
                    "Subscription email attempt failed",
                    exc_info=True,
                    extra={
                        "vendor_id": vendor_info.vendor_id,
                        "notification_kind": NotificationKind(kind).value,
                        "email_attempt": attempt,
                        "email_attempts": attempts,
                    },
                )
                if attempt >= attempts:
                    raise
                if backoff > 0:
                    self._sleep(backoff * attempt)
                continue

            logger.info(
                "Subscription email dispatched",
                extra={
                    "vendor_id": vendor_info.vendor_id,
                    "notification_kind": NotificationKind(kind).value,
                    "email_provider": self.provider.describe(),
                },
            )
            return


def _date_part(value: Optional[str]) -> str:
    return value[:10] if value else ""


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_email_config() -> EmailConfig:
    return load_email_config()


@lru_cache(maxsize=1)
def get_email_provider() -> EmailProvider:
    return create_email_provider(get_email_config())


@lru_cache(maxsize=1)
def get_subscription_repository() -> PostgresSubscriptionRepository:
    return PostgresSubscriptionRepository(claim_ttl_seconds=get_billing_config().notification_claim_ttl_seconds)


@lru_cache(maxsize=1)
def get_billing_service() -> SubscriptionBillingService:
    config = get_billing_config()
    repository = get_subscription_repository()
    gateway = PaystackClient(
        secret_key=config.paystack_secret_key,
        base_url=config.paystack_base_url,
        timeout=config.gateway_timeout_seconds,
        currency=config.currency,
        bank_cache=BankListCache(ttl_seconds=config.bank_cache_ttl_seconds),
    )
    dispatcher = EmailNotificationDispatcher(provider=get_email_provider(), config=get_email_config())
    service = SubscriptionBillingService(
        stores=repository,
        users=repository,
        ledger=repository,
        dispatcher=dispatcher,
        gateway=gateway,
        config=config,
    )
    return service


def get_job_lock() -> PostgresSubscriptionRepository:
    return get_subscription_repository()


__all__ = [
    "EmailNotificationDispatcher",
    "get_billing_config",
    "get_billing_service",
    "get_email_config",
    "get_email_provider",
    "get_job_lock",
    "get_subscription_repository",
]
