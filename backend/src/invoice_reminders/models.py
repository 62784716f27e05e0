from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ReminderKind = Literal["BEFORE_DUE", "ON_DUE", "AFTER_DUE"]
ReminderChannel = Literal["EMAIL", "WHATSAPP"]
ReminderStatus = Literal["PENDING", "SENDING", "SENT", "FAILED", "SKIPPED", "CANCELLED"]
PaymentStatus = Literal["DRAFT", "PENDING", "SENT", "PAID"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"SENT", "SKIPPED", "CANCELLED"})
CLAIMABLE_STATUSES: frozenset[str] = frozenset({"PENDING", "FAILED"})


class ReminderItem(BaseModel):
    reminder_id: str
    invoice_id: str
    kind: ReminderKind
    day_offset: int
    channel: ReminderChannel
    scheduled_for: datetime
    status: ReminderStatus
    sent_at: datetime | None = None
    error_message: str | None = None
    attempt_count: int = 0
    provider_message_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ReminderListResponse(BaseModel):
    invoice_id: str
    items: list[ReminderItem]


class ReminderPlanResponse(BaseModel):
    invoice_id: str
    items: list[ReminderItem]


class ReminderSendResponse(BaseModel):
    outcome: Literal["sent", "skipped", "already_claimed"]
    reminder: ReminderItem


class ReminderCancelAllResponse(BaseModel):
    invoice_id: str
    cancelled_count: int


class InvoiceSnapshotRequest(BaseModel):
    due_date: date | None = None
    payment_status: PaymentStatus = "PENDING"
    buyer_email: str | None = Field(default=None, max_length=320)
    buyer_phone: str | None = Field(default=None, max_length=32)
    reminders_entitled: bool = True

    @field_validator("buyer_email", "buyer_phone")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class InvoiceSnapshotResponse(BaseModel):
    invoice_id: str
    due_date: date | None = None
    payment_status: PaymentStatus
    has_email: bool
    has_phone: bool
    reminders_entitled: bool


class PaymentStatusChangeRequest(BaseModel):
    payment_status: PaymentStatus


class PaymentStatusChangeResponse(BaseModel):
    invoice_id: str
    payment_status: PaymentStatus
    skipped_count: int


class ReminderStatsResponse(BaseModel):
    pending: int
    sent: int
    failed: int
    upcoming: int


class DispatchTickRequest(BaseModel):
    now_override: datetime | None = None
    limit: int | None = Field(default=None, ge=1, le=500)

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DispatchTickResponse(BaseModel):
    run_at: datetime
    evaluated_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    contended_count: int
