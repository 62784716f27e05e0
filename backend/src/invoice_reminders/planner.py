from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Literal

from .models import ReminderChannel, ReminderKind
from .time_policy import DEFAULT_SEND_HOUR, send_instant

NotEligibleReason = Literal["no_due_date", "no_reachable_channel", "not_entitled", "invoice_paid"]

DEFAULT_OFFSETS: tuple[tuple[ReminderKind, int], ...] = (
    ("BEFORE_DUE", -3),
    ("BEFORE_DUE", -1),
    ("ON_DUE", 0),
    ("AFTER_DUE", 1),
    ("AFTER_DUE", 3),
    ("AFTER_DUE", 7),
)

_NOT_ELIGIBLE_MESSAGES: dict[str, str] = {
    "no_due_date": "Invoice has no due date. Set a due date before enabling reminders.",
    "no_reachable_channel": "Buyer has neither an email address nor a phone number.",
    "not_entitled": "Payment reminders are not available on the current plan.",
    "invoice_paid": "Cannot create reminders for paid invoices.",
}


class NotEligibleError(ValueError):
    """Raised when reminders cannot be planned for an invoice."""

    def __init__(self, reason: NotEligibleReason) -> None:
        super().__init__(_NOT_ELIGIBLE_MESSAGES[reason])
        self.reason = reason


@dataclass(frozen=True)
class ReminderDraft:
    kind: ReminderKind
    day_offset: int
    channel: ReminderChannel
    scheduled_for: datetime

    @property
    def slot(self) -> tuple[str, int, str]:
        return (self.kind, self.day_offset, self.channel)


def kind_for_offset(day_offset: int) -> ReminderKind:
    if day_offset < 0:
        return "BEFORE_DUE"
    if day_offset == 0:
        return "ON_DUE"
    return "AFTER_DUE"


def reachable_channels(*, has_email: bool, has_phone: bool) -> list[ReminderChannel]:
    channels: list[ReminderChannel] = []
    if has_email:
        channels.append("EMAIL")
    if has_phone:
        channels.append("WHATSAPP")
    return channels


def plan_reminders(
    due_date: date | datetime | None,
    *,
    has_email: bool,
    has_phone: bool,
    entitled: bool = True,
    send_hour: int = DEFAULT_SEND_HOUR,
    timezone_name: str | None = None,
    offsets: Iterable[tuple[ReminderKind, int]] = DEFAULT_OFFSETS,
) -> list[ReminderDraft]:
    """Build the ordered reminder drafts for one invoice.

    Drafts are ordered by day offset, then by channel (email before WhatsApp).
    Nothing is persisted here.
    """
    if not entitled:
        raise NotEligibleError("not_entitled")
    if due_date is None:
        raise NotEligibleError("no_due_date")
    channels = reachable_channels(has_email=has_email, has_phone=has_phone)
    if not channels:
        raise NotEligibleError("no_reachable_channel")

    drafts: list[ReminderDraft] = []
    for kind, day_offset in sorted(offsets, key=lambda row: row[1]):
        if kind != kind_for_offset(day_offset):
            raise ValueError(f"offset {day_offset} does not match reminder kind {kind}")
        scheduled_for = send_instant(
            due_date,
            day_offset,
            send_hour=send_hour,
            timezone_name=timezone_name,
        )
        for channel in channels:
            drafts.append(
                ReminderDraft(
                    kind=kind,
                    day_offset=day_offset,
                    channel=channel,
                    scheduled_for=scheduled_for,
                )
            )
    return drafts
