from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import date
from threading import Lock
from typing import Protocol

from .models import PaymentStatus


class InvoiceNotFoundError(KeyError):
    """Raised when an operation references an invoice id that does not exist."""


class InvoiceStatusSource(Protocol):
    def get_payment_status(self, invoice_id: str) -> PaymentStatus: ...

    def get_due_date(self, invoice_id: str) -> date | None: ...


class BuyerReachabilitySource(Protocol):
    def has_email(self, invoice_id: str) -> bool: ...

    def has_phone(self, invoice_id: str) -> bool: ...


class EntitlementSource(Protocol):
    def reminders_enabled(self, invoice_id: str) -> bool: ...


@dataclass
class _InvoiceEntry:
    invoice_id: str
    due_date: date | None
    payment_status: PaymentStatus
    buyer_email: str | None
    buyer_phone: str | None
    reminders_entitled: bool


class InMemoryInvoiceDirectory:
    """Read side of the invoice system, held in memory for local runs and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._invoices: dict[str, _InvoiceEntry] = {}

    def reset(self) -> None:
        with self._lock:
            self._invoices.clear()

    def upsert(
        self,
        invoice_id: str,
        *,
        due_date: date | None,
        payment_status: PaymentStatus = "PENDING",
        buyer_email: str | None = None,
        buyer_phone: str | None = None,
        reminders_entitled: bool = True,
    ) -> None:
        with self._lock:
            self._invoices[invoice_id] = _InvoiceEntry(
                invoice_id=invoice_id,
                due_date=due_date,
                payment_status=payment_status,
                buyer_email=(buyer_email or "").strip() or None,
                buyer_phone=(buyer_phone or "").strip() or None,
                reminders_entitled=reminders_entitled,
            )

    def set_payment_status(self, invoice_id: str, payment_status: PaymentStatus) -> None:
        with self._lock:
            self._require(invoice_id).payment_status = payment_status

    def _require(self, invoice_id: str) -> _InvoiceEntry:
        entry = self._invoices.get(invoice_id)
        if entry is None:
            raise InvoiceNotFoundError(invoice_id)
        return entry

    def exists(self, invoice_id: str) -> bool:
        return invoice_id in self._invoices

    def get_payment_status(self, invoice_id: str) -> PaymentStatus:
        return self._require(invoice_id).payment_status

    def get_due_date(self, invoice_id: str) -> date | None:
        return self._require(invoice_id).due_date

    def has_email(self, invoice_id: str) -> bool:
        return self._require(invoice_id).buyer_email is not None

    def has_phone(self, invoice_id: str) -> bool:
        return self._require(invoice_id).buyer_phone is not None

    def reminders_enabled(self, invoice_id: str) -> bool:
        return self._require(invoice_id).reminders_entitled


class HttpInvoiceDirectory:
    """Reads reminder-relevant invoice fields from the invoice service over HTTP.

    Used by standalone dispatcher workers, which do not share memory with the
    API process.
    """

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 10) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._base_url = stripped_url
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds

    def _fetch(self, invoice_id: str) -> dict[str, object]:
        url = f"{self._base_url}/invoices/{urllib.parse.quote(invoice_id, safe='')}/reminder-context"
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        request = urllib.request.Request(url, headers=headers, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise InvoiceNotFoundError(invoice_id) from exc
            raise RuntimeError(f"invoice lookup for {invoice_id} failed with HTTP {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise RuntimeError(f"invoice lookup for {invoice_id} failed: {exc.reason}") from exc
        if not isinstance(payload, dict):
            raise RuntimeError(f"invoice lookup for {invoice_id} returned an invalid body")
        return payload

    def get_payment_status(self, invoice_id: str) -> PaymentStatus:
        status = str(self._fetch(invoice_id).get("payment_status") or "PENDING").upper()
        if status not in {"DRAFT", "PENDING", "SENT", "PAID"}:
            return "PENDING"
        return status  # type: ignore[return-value]

    def get_due_date(self, invoice_id: str) -> date | None:
        raw = self._fetch(invoice_id).get("due_date")
        if not raw:
            return None
        return date.fromisoformat(str(raw)[:10])

    def has_email(self, invoice_id: str) -> bool:
        return bool(self._fetch(invoice_id).get("has_email"))

    def has_phone(self, invoice_id: str) -> bool:
        return bool(self._fetch(invoice_id).get("has_phone"))

    def reminders_enabled(self, invoice_id: str) -> bool:
        return bool(self._fetch(invoice_id).get("reminders_entitled", True))
