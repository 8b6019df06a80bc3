import dataclasses
from typing import List

import pytest

from storebilling.app.billing import NotificationKind, VendorInfo
from storebilling.app.services.billing import EmailNotificationDispatcher
from storebilling.mail import (
    DevPrintProvider,
    EmailProvider,
    SMTPProvider,
    create_email_provider,
    load_email_config,
    render_subscription_notification,
)


class _FlakyProvider(EmailProvider):
    name = "flaky"

    def __init__(self, failures: int) -> None:
        super().__init__(from_email="billing@example.com")
        self.failures = failures
        self.delivered: List[tuple] = []

    def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> None:  # type: ignore[override]
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("smtp relay refused")
        self.delivered.append((to, subject, html_body, text_body))


def _vendor_info(**context: str) -> VendorInfo:
    base = {
        "period_end": "2024-09-14T12:00:00+00:00",
        "grace_end": "2024-09-19T12:00:00+00:00",
        "days_remaining": "4",
        "currency": "NGN",
        "amount": "2,500",
    }
    base.update(context)
    return VendorInfo(
        vendor_id="vendor-1",
        email="ada@example.com",
        name="Ada",
        store_name="Ada Fabrics",
        context=base,
    )


def test_default_config_uses_dev_provider():
    config = load_email_config(env={})

    provider = create_email_provider(config)

    assert isinstance(provider, DevPrintProvider)
    assert provider.from_email == "billing@example.com"
    assert provider.sender == "Marketplace Billing <billing@example.com>"
    assert config.app_base_url == "http://localhost:3000"
    assert config.max_attempts == 3


def test_smtp_provider_configuration():
    config = load_email_config(
        env={
            "EMAIL_PROVIDER": "SMTP",
            "SMTP_HOST": "mail.example.com",
            "SMTP_PORT": "2525",
            "SMTP_USER": "mailer",
            "SMTP_PASS": "secret",
            "SMTP_USE_TLS": "off",
            "FROM_EMAIL": "subscriptions@example.com",
            "FROM_NAME": "",
            "APP_BASE_URL": "https://shop.example.com/",
        }
    )

    provider = create_email_provider(config)

    assert isinstance(provider, SMTPProvider)
    assert provider.host == "mail.example.com"
    assert provider.port == 2525
    assert provider.use_tls is False
    assert provider.from_email == "subscriptions@example.com"
    assert provider.sender == "subscriptions@example.com"
    assert config.app_base_url == "https://shop.example.com"


def test_unknown_provider_falls_back_to_dev():
    provider = create_email_provider(load_email_config(env={"EMAIL_PROVIDER": "carrier-pigeon"}))

    assert isinstance(provider, DevPrintProvider)


def test_dev_provider_logs_without_retaining_messages(caplog):
    provider = DevPrintProvider(from_email="billing@example.com")

    with caplog.at_level("INFO", logger="storebilling.mail.providers"):
        for index in range(3):
            provider.send_email(f"vendor-{index}@example.com", "Store frozen", "<p>frozen</p>", "frozen")

    dispatches = [record for record in caplog.records if record.getMessage() == "Dev email dispatch"]
    assert [record.email_recipient for record in dispatches] == [
        "vendor-0@example.com",
        "vendor-1@example.com",
        "vendor-2@example.com",
    ]
    assert not hasattr(provider, "outbox")


def test_invalid_numeric_setting_is_rejected():
    with pytest.raises(ValueError):
        load_email_config(env={"SMTP_PORT": "twenty"})


@pytest.mark.parametrize("kind", list(NotificationKind))
def test_every_notification_kind_renders(kind):
    context = {
        "name": "Ada",
        "store_name": "Ada Fabrics",
        "period_end_date": "2024-09-14",
        "grace_end_date": "2024-09-19",
        "days_remaining": "4",
        "currency": "NGN",
        "amount": "2,500",
        "renew_url": "https://shop.example.com/vendor/subscription",
        "grace_period_days": "5",
    }

    subject, text_body, html_body = render_subscription_notification(kind, context)

    assert subject
    assert "{{" not in subject + text_body + html_body
    assert "Ada" in text_body
    assert html_body.startswith("<")


def test_html_body_escapes_vendor_supplied_values():
    context = {"name": "<script>x</script>", "store_name": "Tom & Jerry"}

    subject, text_body, html_body = render_subscription_notification(NotificationKind.FROZEN, context)

    assert "<script>" not in html_body
    assert "&lt;script&gt;" in html_body
    assert "Tom &amp; Jerry" in html_body
    assert "Tom & Jerry" in text_body


def test_dispatcher_builds_context_with_dates_and_renew_link():
    config = load_email_config(env={"APP_BASE_URL": "https://shop.example.com"})
    dispatcher = EmailNotificationDispatcher(provider=_FlakyProvider(0), config=config)

    context = dispatcher.build_context(_vendor_info())

    assert context["renew_url"] == "https://shop.example.com/vendor/subscription"
    assert context["period_end_date"] == "2024-09-14"
    assert context["grace_end_date"] == "2024-09-19"
    assert context["store_name"] == "Ada Fabrics"


def test_dispatcher_retries_with_linear_backoff():
    sleeps: List[float] = []
    provider = _FlakyProvider(failures=2)
    config = dataclasses.replace(load_email_config(env={}), max_attempts=3, backoff_seconds=2.0)
    dispatcher = EmailNotificationDispatcher(provider=provider, config=config, sleep=sleeps.append)

    dispatcher.send(NotificationKind.GRACE_WARNING, _vendor_info())

    assert sleeps == [2.0, 4.0]
    (to, subject, html_body, text_body) = provider.delivered[0]
    assert to == "ada@example.com"
    assert "Ada Fabrics" in subject
    assert "2024-09-19" in text_body


def test_dispatcher_raises_after_final_attempt():
    sleeps: List[float] = []
    provider = _FlakyProvider(failures=5)
    config = dataclasses.replace(load_email_config(env={}), max_attempts=2, backoff_seconds=1.0)
    dispatcher = EmailNotificationDispatcher(provider=provider, config=config, sleep=sleeps.append)

    with pytest.raises(ConnectionError):
        dispatcher.send(NotificationKind.EXPIRY_WARNING, _vendor_info())

    assert sleeps == [1.0]
    assert provider.delivered == []
