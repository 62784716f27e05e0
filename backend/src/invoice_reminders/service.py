from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from .dispatcher import Dispatcher
from .invoices import BuyerReachabilitySource, EntitlementSource, InvoiceStatusSource
from .lifecycle import LifecycleListener
from .models import TERMINAL_STATUSES, ReminderKind
from .planner import DEFAULT_OFFSETS, NotEligibleError, plan_reminders
from .reminder_store import ReminderRecord, ReminderRepository
from .time_policy import DEFAULT_SEND_HOUR, start_of_local_day

logger = logging.getLogger(__name__)

UPCOMING_WINDOW = timedelta(days=7)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReminderNotFoundError(KeyError):
    """Raised when an operation references a reminder id that does not exist."""


class ReminderStateError(RuntimeError):
    """Raised when a reminder's current status does not allow the requested action."""

    def __init__(self, reminder_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message or f"reminder {reminder_id} is {status}")
        self.reminder_id = reminder_id
        self.status = status


class AlreadyTerminalError(ReminderStateError):
    def __init__(self, reminder_id: str, status: str) -> None:
        super().__init__(reminder_id, status, f"reminder {reminder_id} is already {status}")


class AlreadyClaimedError(ReminderStateError):
    def __init__(self, reminder_id: str, status: str) -> None:
        super().__init__(reminder_id, status, f"reminder {reminder_id} is being handled by another sender")


class SendFailedError(RuntimeError):
    def __init__(self, reminder_id: str, error_message: str) -> None:
        super().__init__(f"reminder {reminder_id} could not be delivered: {error_message}")
        self.reminder_id = reminder_id
        self.error_message = error_message


@dataclass(frozen=True)
class ReminderStats:
    pending: int
    sent: int
    failed: int
    upcoming: int


class ReminderService:
    """Application-facing operations on payment reminders."""

    def __init__(
        self,
        *,
        repository: ReminderRepository,
        invoices: InvoiceStatusSource,
        reachability: BuyerReachabilitySource,
        entitlements: EntitlementSource,
        dispatcher: Dispatcher,
        lifecycle: LifecycleListener,
        send_hour: int = DEFAULT_SEND_HOUR,
        timezone_name: str | None = None,
        offsets: Iterable[tuple[ReminderKind, int]] = DEFAULT_OFFSETS,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._invoices = invoices
        self._reachability = reachability
        self._entitlements = entitlements
        self._dispatcher = dispatcher
        self._lifecycle = lifecycle
        self._send_hour = send_hour
        self._timezone_name = timezone_name
        self._offsets = tuple(offsets)
        self._clock = clock

    def plan_and_enable(self, invoice_id: str) -> list[ReminderRecord]:
        """Replace the invoice's pending reminders with a freshly planned set.

        Drafts scheduled before the start of the current business day are
        dropped so that enabling reminders on an overdue invoice does not fire
        every past reminder at once. Terminal reminders are left as history.
        """
        if self._invoices.get_payment_status(invoice_id) == "PAID":
            raise NotEligibleError("invoice_paid")
        drafts = plan_reminders(
            self._invoices.get_due_date(invoice_id),
            has_email=self._reachability.has_email(invoice_id),
            has_phone=self._reachability.has_phone(invoice_id),
            entitled=self._entitlements.reminders_enabled(invoice_id),
            send_hour=self._send_hour,
            timezone_name=self._timezone_name,
            offsets=self._offsets,
        )

        today = start_of_local_day(self._clock(), timezone_name=self._timezone_name)
        upcoming = [draft for draft in drafts if draft.scheduled_for >= today]
        cancelled, created = self._repository.replace_pending(invoice_id, upcoming)
        logger.info(
            "planned %d reminders for invoice %s (replaced %d pending, dropped %d past)",
            len(created),
            invoice_id,
            cancelled,
            len(drafts) - len(upcoming),
        )
        if len(created) < len(upcoming):
            # A concurrent replan filled some slots first; report what is scheduled now.
            return self._pending_for_invoice(invoice_id)
        return created

    def on_due_date_changed(self, invoice_id: str) -> list[ReminderRecord]:
        """Move the invoice's PENDING reminders onto its current due date.

        Invoices without PENDING reminders are left alone: reminders are only
        rescheduled, never switched on, by a due-date edit. When the invoice is
        no longer eligible (for example the due date was removed) the stale
        PENDING reminders are cancelled.
        """
        if not self._pending_for_invoice(invoice_id):
            return []
        try:
            return self.plan_and_enable(invoice_id)
        except NotEligibleError as exc:
            cancelled = self._repository.cancel_pending_for_invoice(invoice_id)
            logger.info(
                "invoice %s no longer eligible for reminders (%s): cancelled %d pending",
                invoice_id,
                exc.reason,
                cancelled,
            )
            return []

    def _pending_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        return [record for record in self._repository.list_for_invoice(invoice_id) if record.status == "PENDING"]

    def _require(self, reminder_id: str) -> ReminderRecord:
        reminder = self._repository.get(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)
        return reminder

    def get(self, reminder_id: str) -> ReminderRecord:
        return self._require(reminder_id)

    def cancel(self, reminder_id: str) -> ReminderRecord:
        self._require(reminder_id)
        if self._repository.cancel(reminder_id):
            return self._require(reminder_id)

        current = self._require(reminder_id)
        if current.status in TERMINAL_STATUSES:
            raise AlreadyTerminalError(reminder_id, current.status)
        if current.status == "SENDING":
            raise AlreadyClaimedError(reminder_id, current.status)
        raise ReminderStateError(
            reminder_id,
            current.status,
            f"reminder {reminder_id} has already been attempted and can only be retried",
        )

    def cancel_all(self, invoice_id: str) -> int:
        return self._repository.cancel_pending_for_invoice(invoice_id)

    def send_now(self, reminder_id: str) -> ReminderRecord:
        reminder = self._require(reminder_id)
        if reminder.status in TERMINAL_STATUSES:
            raise AlreadyTerminalError(reminder_id, reminder.status)
        if reminder.status == "SENDING" and self._dispatcher.release_stale_claims():
            reminder = self._require(reminder_id)

        outcome = self._dispatcher.execute(reminder)
        current = self._require(reminder_id)
        if outcome.status in {"sent", "skipped"}:
            return current
        if outcome.status == "failed":
            raise SendFailedError(reminder_id, outcome.error_message or "delivery failed")
        raise AlreadyClaimedError(reminder_id, current.status)

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        return self._repository.list_for_invoice(invoice_id)

    def on_paid(self, invoice_id: str) -> int:
        return self._lifecycle.on_paid(invoice_id)

    def stats(self, now: datetime | None = None) -> ReminderStats:
        current = now or self._clock()
        counts = self._repository.count_by_status()
        return ReminderStats(
            pending=counts.get("PENDING", 0),
            sent=counts.get("SENT", 0),
            failed=counts.get("FAILED", 0),
            upcoming=self._repository.count_upcoming(current, current + UPCOMING_WINDOW),
        )
