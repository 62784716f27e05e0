from __future__ import annotations

import json
import urllib.error
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from invoice_reminders.invoices import HttpInvoiceDirectory, InMemoryInvoiceDirectory, InvoiceNotFoundError


def _mock_response(body: dict[str, object]) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("invoice_reminders.invoices.urllib.request.urlopen")
def test_http_directory_reads_reminder_context(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(
        {
            "due_date": "2025-01-10",
            "payment_status": "paid",
            "has_email": True,
            "has_phone": False,
            "reminders_entitled": True,
        }
    )
    directory = HttpInvoiceDirectory(base_url="https://invoices.example.test/", api_key="key-001")

    assert directory.get_payment_status("INV/001") == "PAID"
    assert directory.get_due_date("INV/001") == date(2025, 1, 10)
    assert directory.has_email("INV/001") is True
    assert directory.has_phone("INV/001") is False
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://invoices.example.test/invoices/INV%2F001/reminder-context"
    assert request_arg.get_header("Authorization") == "Bearer key-001"


@patch("invoice_reminders.invoices.urllib.request.urlopen")
def test_http_directory_maps_404_to_not_found(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://invoices.example.test/invoices/INV-404/reminder-context",
        code=404,
        msg="Not Found",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )
    directory = HttpInvoiceDirectory(base_url="https://invoices.example.test", api_key="")

    with pytest.raises(InvoiceNotFoundError):
        directory.get_payment_status("INV-404")


@patch("invoice_reminders.invoices.urllib.request.urlopen")
def test_http_directory_raises_on_upstream_outage(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")
    directory = HttpInvoiceDirectory(base_url="https://invoices.example.test", api_key="")

    with pytest.raises(RuntimeError, match="invoice lookup for INV-001 failed"):
        directory.get_payment_status("INV-001")


def test_in_memory_directory_normalizes_contacts() -> None:
    directory = InMemoryInvoiceDirectory()
    directory.upsert("INV-001", due_date=date(2025, 1, 10), buyer_email="  ", buyer_phone=" +62812 ")

    assert directory.has_email("INV-001") is False
    assert directory.has_phone("INV-001") is True
    assert directory.get_payment_status("INV-001") == "PENDING"
    with pytest.raises(InvoiceNotFoundError):
        directory.set_payment_status("INV-404", "PAID")
