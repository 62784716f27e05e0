from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal

from .invoices import InvoiceStatusSource
from .notifier import ChannelSender, ChannelSendResult
from .reminder_store import ReminderRecord, ReminderRepository

logger = logging.getLogger(__name__)

DeliveryOutcomeStatus = Literal["sent", "failed", "skipped", "contended", "superseded"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeliveryOutcome:
    reminder_id: str
    status: DeliveryOutcomeStatus
    error_message: str | None = None


@dataclass(frozen=True)
class DispatchTickResult:
    run_at: datetime
    evaluated_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    contended_count: int


class Dispatcher:
    """Finds due reminders, claims them and hands them to their channel.

    Several dispatchers may tick against the same repository at once; the
    repository's conditional claim decides which one sends. A claim that is
    still SENDING after ``sending_lease_seconds`` is treated as abandoned and
    released to FAILED, so a crashed sender never strands a reminder.
    """

    def __init__(
        self,
        *,
        repository: ReminderRepository,
        invoices: InvoiceStatusSource,
        sender: ChannelSender,
        batch_size: int = 50,
        max_attempts: int = 5,
        sending_lease_seconds: float = 900.0,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._invoices = invoices
        self._sender = sender
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._sending_lease = timedelta(seconds=sending_lease_seconds)
        self._clock = clock

    def release_stale_claims(self) -> int:
        """Move SENDING reminders whose lease ran out to FAILED so they can be retried."""
        released = self._repository.release_stale(self._clock() - self._sending_lease)
        if released:
            logger.warning("released %d reminders stuck in SENDING past their lease", released)
        return released

    def execute(self, reminder: ReminderRecord) -> DeliveryOutcome:
        """Run the claim, send and finalize sequence for one reminder."""
        if self._invoices.get_payment_status(reminder.invoice_id) == "PAID":
            if self._repository.skip(reminder.reminder_id):
                return DeliveryOutcome(reminder.reminder_id, "skipped")
            return DeliveryOutcome(reminder.reminder_id, "contended")

        token = self._repository.claim(reminder.reminder_id)
        if token is None:
            return DeliveryOutcome(reminder.reminder_id, "contended")

        result = self._send(reminder)
        if result.ok:
            finalized = self._repository.finalize_sent(
                reminder.reminder_id,
                token,
                sent_at=result.attempted_at,
                provider_message_id=result.provider_message_id,
            )
            if not finalized:
                logger.warning("reminder %s was re-claimed before its send could be recorded", reminder.reminder_id)
                return DeliveryOutcome(reminder.reminder_id, "superseded")
            return DeliveryOutcome(reminder.reminder_id, "sent")

        error_message = result.failure_text()
        logger.warning(
            "reminder %s via %s failed for invoice %s: %s",
            reminder.reminder_id,
            reminder.channel,
            reminder.invoice_id,
            error_message,
        )
        if not self._repository.finalize_failed(reminder.reminder_id, token, error_message=error_message):
            return DeliveryOutcome(reminder.reminder_id, "superseded", error_message)
        return DeliveryOutcome(reminder.reminder_id, "failed", error_message)

    def _send(self, reminder: ReminderRecord) -> ChannelSendResult:
        try:
            return self._sender.send(reminder.channel, reminder.invoice_id)
        except Exception as exc:  # noqa: BLE001
            return ChannelSendResult(
                status="failed",
                attempted_at=self._clock(),
                error_code=type(exc).__name__,
                error_message=str(exc) or repr(exc),
            )

    def tick(self, now: datetime | None = None, *, limit: int | None = None) -> DispatchTickResult:
        run_at = now or self._clock()
        self.release_stale_claims()
        candidates = self._repository.list_due(
            run_at,
            limit=self._batch_size if limit is None else limit,
            max_attempts=self._max_attempts,
        )
        counts = {"sent": 0, "failed": 0, "skipped": 0, "contended": 0, "superseded": 0}
        for reminder in candidates:
            try:
                outcome = self.execute(reminder)
            except Exception:  # noqa: BLE001
                logger.exception("unexpected error while dispatching reminder %s", reminder.reminder_id)
                counts["failed"] += 1
                continue
            counts[outcome.status] += 1

        result = DispatchTickResult(
            run_at=run_at,
            evaluated_count=len(candidates),
            sent_count=counts["sent"],
            failed_count=counts["failed"],
            skipped_count=counts["skipped"],
            contended_count=counts["contended"] + counts["superseded"],
        )
        if candidates:
            logger.info(
                "reminder tick at %s: evaluated=%d sent=%d failed=%d skipped=%d contended=%d",
                run_at.isoformat(),
                result.evaluated_count,
                result.sent_count,
                result.failed_count,
                result.skipped_count,
                result.contended_count,
            )
        return result

    def run(self, stop_event: threading.Event, *, interval_seconds: float = 60.0) -> None:
        """Tick every ``interval_seconds`` until ``stop_event`` is set."""
        logger.info("reminder dispatcher started (interval=%ss, batch=%d)", interval_seconds, self._batch_size)
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("reminder tick failed; retrying on next interval")
            stop_event.wait(interval_seconds)
        logger.info("reminder dispatcher stopped")
