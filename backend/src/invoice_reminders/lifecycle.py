from __future__ import annotations

import logging

from .models import PaymentStatus
from .reminder_store import ReminderRepository

logger = logging.getLogger(__name__)


class LifecycleListener:
    """Applies invoice payment-status changes to the invoice's reminders."""

    def __init__(self, repository: ReminderRepository) -> None:
        self._repository = repository

    def on_paid(self, invoice_id: str) -> int:
        skipped = self._repository.skip_for_invoice(invoice_id)
        if skipped:
            logger.info("invoice %s paid: skipped %d outstanding reminders", invoice_id, skipped)
        return skipped

    def on_payment_status_changed(self, invoice_id: str, payment_status: PaymentStatus) -> int:
        if payment_status != "PAID":
            return 0
        return self.on_paid(invoice_id)
