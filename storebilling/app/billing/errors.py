"""Exceptions raised by the subscription billing core."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Base error carrying an API-facing code and HTTP status."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class ValidationError(BillingError):
    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__("validation_error", message, status.HTTP_400_BAD_REQUEST, detail)


class AuthError(BillingError):
    def __init__(self, message: str = "Unauthorized", *, status_code: int = status.HTTP_401_UNAUTHORIZED) -> None:
        super().__init__("unauthorized", message, status_code)


class NotFoundError(BillingError):
    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__("not_found", message, status.HTTP_404_NOT_FOUND, detail)


class GatewayError(BillingError):
    """The payment provider rejected a request."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__("gateway_error", message, status.HTTP_502_BAD_GATEWAY, detail)


class TransientGatewayError(BillingError):
    """Network failure or timeout talking to the provider; the outcome is unknown."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__("gateway_unavailable", message, status.HTTP_503_SERVICE_UNAVAILABLE, detail)


class PersistenceError(BillingError):
    """Storage failure or a write conflict that survived every retry."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__("persistence_error", message, status.HTTP_500_INTERNAL_SERVER_ERROR, detail)


class JobInProgressError(BillingError):
    def __init__(self, message: str = "Daily subscription job is already running") -> None:
        super().__init__("job_in_progress", message, status.HTTP_409_CONFLICT)


__all__ = [
    "AuthError",
    "BillingError",
    "GatewayError",
    "JobInProgressError",
    "NotFoundError",
    "PersistenceError",
    "TransientGatewayError",
    "ValidationError",
]
