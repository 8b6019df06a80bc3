"""Outbound email settings and the environment readers shared by the config loaders."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    return default


def env_int(env: Mapping[str, str], key: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{key} must be an integer, got {raw!r}") from exc
    return value if minimum is None else max(minimum, value)


def env_float(env: Mapping[str, str], key: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = (env.get(key) or "").strip()
    if not raw:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{key} must be a number, got {raw!r}") from exc
    return value if minimum is None else max(minimum, value)


@dataclass(frozen=True)
class EmailConfig:
    """Where subscription notices are sent from and how delivery is retried."""

    provider_name: str
    from_email: str
    from_name: str
    smtp_host: str
    smtp_port: int
    smtp_username: Optional[str]
    smtp_password: Optional[str]
    smtp_use_tls: bool
    smtp_timeout_seconds: float
    app_base_url: str
    max_attempts: int
    backoff_seconds: float

    @property
    def sender(self) -> str:
        if self.from_name:
            return f"{self.from_name} <{self.from_email}>"
        return self.from_email


def load_email_config(env: Optional[Mapping[str, str]] = None) -> EmailConfig:
    """Build :class:`EmailConfig` from ``env`` (defaults to ``os.environ``)."""

    source = os.environ if env is None else env

    return EmailConfig(
        provider_name=(source.get("EMAIL_PROVIDER") or "").strip().lower() or "dev",
        from_email=source.get("FROM_EMAIL") or "billing@example.com",
        from_name=source.get("FROM_NAME", "Marketplace Billing").strip(),
        smtp_host=source.get("SMTP_HOST") or "localhost",
        smtp_port=env_int(source, "SMTP_PORT", 587),
        smtp_username=source.get("SMTP_USER") or None,
        smtp_password=source.get("SMTP_PASS") or None,
        smtp_use_tls=env_bool(source, "SMTP_USE_TLS", True),
        smtp_timeout_seconds=env_float(source, "SMTP_TIMEOUT_SECONDS", 30.0, minimum=1.0),
        app_base_url=(source.get("APP_BASE_URL") or "http://localhost:3000").rstrip("/"),
        max_attempts=env_int(source, "EMAIL_MAX_ATTEMPTS", 3, minimum=1),
        backoff_seconds=env_float(source, "EMAIL_RETRY_BACKOFF", 2.0, minimum=0.0),
    )


__all__ = ["EmailConfig", "env_bool", "env_float", "env_int", "load_email_config"]
