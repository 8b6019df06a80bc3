"""Paystack client normalizing provider responses into uniform results."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from .errors import GatewayError, TransientGatewayError

logger = logging.getLogger("billing.gateway")

T = TypeVar("T")


class ChargeHandle(BaseModel):
    reference: str
    authorization_url: str
    access_code: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class AccountInfo(BaseModel):
    account_name: str
    account_number: str
    bank_code: str

    model_config = ConfigDict(frozen=True)


class Bank(BaseModel):
    name: str
    code: str

    model_config = ConfigDict(frozen=True)


class PaymentConfirmation(BaseModel):
    """Minimal view of a verified transaction."""

    reference: str
    status: str
    amount: float
    vendor_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    """Success/failure envelope returned by every gateway call."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    transient: bool = False

    @classmethod
    def ok(cls, data: T) -> "GatewayResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, *, transient: bool = False) -> "GatewayResult[T]":
        return cls(success=False, error=error, transient=transient)

    def unwrap(self) -> T:
        """Return ``data`` or raise the matching billing error."""

        if self.success and self.data is not None:
            return self.data
        message = self.error or "Payment gateway request failed"
        if self.transient:
            raise TransientGatewayError(message)
        raise GatewayError(message)


@dataclass
class _CacheEntry:
    value: List[Bank]
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class BankListCache:
    """Single-slot TTL cache for the provider's bank list.

    Refreshes are lazy and unsynchronized; concurrent refreshes race and the
    last write wins.
    """

    ttl_seconds: int = 3600
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))
    _entry: Optional[_CacheEntry] = field(default=None, init=False, repr=False)

    def get(self) -> Optional[List[Bank]]:
        entry = self._entry
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            self._entry = None
            return None
        return list(entry.value)

    def set(self, banks: List[Bank]) -> None:
        if self.ttl_seconds <= 0:
            return
        expires_at = self.clock() + timedelta(seconds=self.ttl_seconds)
        self._entry = _CacheEntry(value=list(banks), expires_at=expires_at)

    def clear(self) -> None:
        self._entry = None


def compute_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA512 hex digest Paystack sends in ``x-paystack-signature``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


class _ProviderFailure(Exception):
    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


Opener = Callable[..., Any]


class PaystackClient:
    """Thin wrapper over the Paystack REST API."""

    name = "paystack"

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        currency: str = "NGN",
        bank_cache: Optional[BankListCache] = None,
        opener: Optional[Opener] = None,
    ) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.bank_cache = bank_cache or BankListCache()
        self._opener = opener or urllib_request.urlopen

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
        if amount <= 0:
            return GatewayResult.failure("amount must be positive")
        if not email:
            return GatewayResult.failure("email is required")

        body: Dict[str, Any] = {
            "email": email,
            # Paystack expects the amount in kobo.
            "amount": int(round(amount * 100)),
            "currency": self.currency,
            "reference": reference or f"sub_{vendor_id}_{uuid4().hex[:12]}",
            "metadata": {**(metadata or {}), "vendorId": vendor_id, "type": "vendor_subscription"},
        }
        if callback_url:
            body["callback_url"] = callback_url

        try:
            data = self._request("POST", "/transaction/initialize", body=body)
            handle = ChargeHandle(
                reference=str(data["reference"]),
                authorization_url=str(data["authorization_url"]),
                access_code=data.get("access_code"),
            )
        except _ProviderFailure as exc:
            return GatewayResult.failure(str(exc), transient=exc.transient)
        except (KeyError, TypeError) as exc:
            return GatewayResult.failure(f"Unexpected initialize response: {exc}")
        return GatewayResult.ok(handle)

    def verify_transaction(self, reference: str) -> GatewayResult[PaymentConfirmation]:
        if not reference:
            return GatewayResult.failure("reference is required")
        quoted = urllib_parse.quote(reference, safe="")
        try:
            data = self._request("GET", f"/transaction/verify/{quoted}")
            metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
            vendor_id = metadata.get("vendorId") or metadata.get("vendor_id")
            confirmation = PaymentConfirmation(
                reference=str(data.get("reference") or reference),
                status=str(data.get("status") or "unknown"),
                amount=float(data.get("amount") or 0) / 100,
                vendor_id=str(vendor_id) if vendor_id else None,
                paid_at=_parse_timestamp(data.get("paid_at")),
            )
        except _ProviderFailure as exc:
            return GatewayResult.failure(str(exc), transient=exc.transient)
        except (AttributeError, TypeError, ValueError) as exc:
            return GatewayResult.failure(f"Unexpected verify response: {exc}")
        return GatewayResult.ok(confirmation)

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not self.secret_key or not signature:
            return False
        expected = compute_signature(payload, self.secret_key)
        return hmac.compare_digest(expected, signature.strip().lower())

    def resolve_bank_account(self, bank_code: str, account_number: str) -> GatewayResult[AccountInfo]:
        bank_code = (bank_code or "").strip()
        account_number = (account_number or "").strip()
        if not bank_code or not account_number:
            return GatewayResult.failure("bankCode and accountNumber are required")

        query = urllib_parse.urlencode({"account_number": account_number, "bank_code": bank_code})
        try:
            data = self._request("GET", f"/bank/resolve?{query}")
            info = AccountInfo(
                account_name=str(data["account_name"]),
                account_number=str(data.get("account_number") or account_number),
                bank_code=bank_code,
            )
        except _ProviderFailure as exc:
            return GatewayResult.failure(str(exc), transient=exc.transient)
        except (KeyError, TypeError) as exc:
            return GatewayResult.failure(f"Unexpected resolve response: {exc}")
        return GatewayResult.ok(info)

    def list_banks(self) -> GatewayResult[List[Bank]]:
        cached = self.bank_cache.get()
        if cached is not None:
            return GatewayResult.ok(cached)

        try:
            data = self._request("GET", "/bank?country=nigeria&use_cursor=false")
        except _ProviderFailure as exc:
            return GatewayResult.failure(str(exc), transient=exc.transient)

        banks = [
            Bank(name=str(item["name"]), code=str(item["code"]))
            for item in (data if isinstance(data, list) else [])
            if isinstance(item, dict) and item.get("name") and item.get("code")
        ]
        self.bank_cache.set(banks)
        return GatewayResult.ok(banks)

    def _request(self, method: str, path: str, *, body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        payload = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib_request.Request(
            url,
            data=payload,
            method=method,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )
        try:
            with self._opener(req, timeout=self.timeout) as response:
                raw = response.read()
        except urllib_error.HTTPError as exc:
            message = _error_message(exc.read() if hasattr(exc, "read") else b"") or f"HTTP {exc.code}"
            logger.warning(
                "Paystack request rejected",
                extra={"gateway_path": path.split("?")[0], "status_code": exc.code, "error": message},
            )
            raise _ProviderFailure(message, transient=exc.code >= 500) from exc
        except (urllib_error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
            logger.warning(
                "Paystack request failed",
                extra={"gateway_path": path.split("?")[0], "error": str(exc)},
            )
            raise _ProviderFailure(f"Payment gateway unreachable: {exc}", transient=True) from exc

        try:
            decoded = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _ProviderFailure("Invalid JSON from payment gateway", transient=False) from exc

        if not isinstance(decoded, dict) or decoded.get("status") is False:
            message = (decoded.get("message") if isinstance(decoded, dict) else None) or "Request failed"
            raise _ProviderFailure(str(message), transient=False)
        return decoded.get("data")


def _error_message(raw: bytes) -> Optional[str]:
    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError, AttributeError):
        return None
    if isinstance(decoded, dict) and decoded.get("message"):
        return str(decoded["message"])
    return None


def _parse_timestamp(value: object) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


__all__ = [
    "AccountInfo",
    "Bank",
    "BankListCache",
    "ChargeHandle",
    "GatewayResult",
    "PaymentConfirmation",
    "PaystackClient",
    "compute_signature",
]
