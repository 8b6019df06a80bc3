"""API schemas for subscription billing endpoints."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    AccountInfo,
    Bank,
    ChargeHandle,
    DailyJobResult,
    JobError,
    SubscriptionRecord,
    SubscriptionStatus,
    VendorProfile,
    WebhookOutcome,
)


class WebhookResponse(BaseModel):
    success: bool = True
    applied: bool = False
    ignored: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: WebhookOutcome) -> "WebhookResponse":
        return cls(applied=outcome.applied, ignored=outcome.ignored)


class JobErrorItem(BaseModel):
    vendor_id: str = Field(alias="vendorId")
    stage: str
    message: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_error(cls, error: JobError) -> "JobErrorItem":
        return cls(vendor_id=error.vendor_id, stage=error.stage, message=error.message)


class DailyJobResponse(BaseModel):
    success: bool = True
    processed: int
    warned: int
    frozen: int
    moved_to_grace: int = Field(alias="movedToGrace")
    redelivered: int
    errors: List[JobErrorItem] = Field(default_factory=list)
    started_at: Optional[datetime] = Field(alias="startedAt", default=None)
    finished_at: Optional[datetime] = Field(alias="finishedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: DailyJobResult) -> "DailyJobResponse":
        return cls(
            processed=result.processed,
            warned=result.warned,
            frozen=result.frozen,
            moved_to_grace=result.moved_to_grace,
            redelivered=result.redelivered,
            errors=[JobErrorItem.from_error(error) for error in result.errors],
            started_at=result.started_at,
            finished_at=result.finished_at,
        )


class SubscriptionOverview(BaseModel):
    vendor_id: str = Field(alias="vendorId")
    store_id: str = Field(alias="storeId")
    store_name: Optional[str] = Field(alias="storeName", default=None)
    email: Optional[str] = None
    vendor_name: Optional[str] = Field(alias="vendorName", default=None)
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    grace_end: Optional[datetime] = Field(alias="graceEnd", default=None)
    frozen_at: Optional[datetime] = Field(alias="frozenAt", default=None)
    store_visible: bool = Field(alias="storeVisible")
    days_until_expiry: Optional[int] = Field(alias="daysUntilExpiry", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_record(
        cls,
        profile: Optional[VendorProfile],
        record: SubscriptionRecord,
        *,
        now: Optional[datetime] = None,
    ) -> "SubscriptionOverview":
        current_time = now or datetime.now(timezone.utc)
        days_until_expiry = None
        if record.current_period_end is not None:
            days_until_expiry = math.ceil((record.current_period_end - current_time).total_seconds() / 86400)
        return cls(
            vendor_id=record.vendor_id,
            store_id=record.store_id,
            store_name=record.store_name,
            email=profile.email if profile else None,
            vendor_name=profile.name if profile else None,
            status=record.status,
            current_period_end=record.current_period_end,
            grace_end=record.grace_end,
            frozen_at=record.frozen_at,
            store_visible=record.store_visible,
            days_until_expiry=days_until_expiry,
        )


class AdminActionRequest(BaseModel):
    action: str
    vendor_id: Optional[str] = Field(alias="vendorId", default=None)
    admin_secret: Optional[str] = Field(alias="adminSecret", default=None)
    reference: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class AdminActionResponse(BaseModel):
    success: bool = True
    action: str
    message: Optional[str] = None
    job: Optional[DailyJobResponse] = None
    vendor: Optional[SubscriptionOverview] = None
    vendors: Optional[List[SubscriptionOverview]] = None
    counts: Optional[Dict[str, int]] = None

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionInitializeRequest(BaseModel):
    vendor_id: str = Field(alias="vendorId", min_length=1)
    email: Optional[str] = None
    callback_url: Optional[str] = Field(alias="callbackUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionInitializeResponse(BaseModel):
    success: bool = True
    reference: str
    authorization_url: str = Field(alias="authorizationUrl")
    access_code: Optional[str] = Field(alias="accessCode", default=None)
    amount: int
    currency: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_handle(cls, handle: ChargeHandle, *, amount: int, currency: str) -> "SubscriptionInitializeResponse":
        return cls(
            reference=handle.reference,
            authorization_url=handle.authorization_url,
            access_code=handle.access_code,
            amount=amount,
            currency=currency,
        )


class PaymentCallbackResponse(BaseModel):
    success: bool = True
    reference: Optional[str] = None
    vendor_id: Optional[str] = Field(alias="vendorId", default=None)
    status: Optional[SubscriptionStatus] = None
    applied: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: WebhookOutcome) -> "PaymentCallbackResponse":
        return cls(
            reference=outcome.reference,
            vendor_id=outcome.vendor_id,
            status=outcome.status,
            applied=outcome.applied,
        )


class BankItem(BaseModel):
    name: str
    code: str

    model_config = ConfigDict(populate_by_name=True)


class BankListResponse(BaseModel):
    success: bool = True
    banks: List[BankItem]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_banks(cls, banks: List[Bank]) -> "BankListResponse":
        return cls(banks=[BankItem(name=bank.name, code=bank.code) for bank in banks])


class ResolveAccountRequest(BaseModel):
    bank_code: str = Field(alias="bankCode", default="")
    account_number: str = Field(alias="accountNumber", default="")

    model_config = ConfigDict(populate_by_name=True)


class ResolveAccountResponse(BaseModel):
    success: bool = True
    account_name: str = Field(alias="accountName")
    account_number: str = Field(alias="accountNumber")
    bank_code: str = Field(alias="bankCode")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_account(cls, account: AccountInfo) -> "ResolveAccountResponse":
        return cls(
            account_name=account.account_name,
            account_number=account.account_number,
            bank_code=account.bank_code,
        )
