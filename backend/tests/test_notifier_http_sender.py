from __future__ import annotations

import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from invoice_reminders.notifier import (
    ChannelRouter,
    HttpChannelSender,
    StubChannelSender,
    create_channel_sender,
)


def _make_sender(
    *,
    channel: str = "EMAIL",
    base_url: str = "https://notify.example.test",
    api_key: str = "test-api-key-abc123",
) -> HttpChannelSender:
    return HttpChannelSender(channel=channel, base_url=base_url, api_key=api_key)  # type: ignore[arg-type]


def _mock_response(body: dict[str, object] | None, status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = b"" if body is None else json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-123"})
    sender = _make_sender()

    result = sender.send("EMAIL", "INV-001")

    assert result.status == "sent"
    assert result.ok
    assert result.provider_message_id == "msg-123"
    assert result.attempted_at.tzinfo == timezone.utc
    mock_urlopen.assert_called_once()

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://notify.example.test/v1/email/reminders"
    assert request_arg.get_header("Authorization") == "Bearer test-api-key-abc123"
    assert request_arg.get_header("Content-type") == "application/json"
    assert json.loads(request_arg.data.decode("utf-8")) == {
        "channel": "email",
        "invoice_id": "INV-001",
        "kind": "payment_reminder",
    }


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_empty_body_counts_as_sent(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(None, status=204)

    result = _make_sender(channel="WHATSAPP").send("WHATSAPP", "INV-001")

    assert result.status == "sent"
    assert result.provider_message_id is None
    assert mock_urlopen.call_args[0][0].full_url == "https://notify.example.test/v1/whatsapp/reminders"


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_provider_rejection(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"success": False, "error": "template not approved"})

    result = _make_sender(channel="WHATSAPP").send("WHATSAPP", "INV-001")

    assert result.status == "failed"
    assert result.error_code == "provider_rejected"
    assert result.failure_text() == "provider_rejected: template not approved"


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_channel_mismatch(mock_urlopen: MagicMock) -> None:
    result = _make_sender(channel="EMAIL").send("WHATSAPP", "INV-001")

    assert result.status == "failed"
    assert result.error_code == "channel_mismatch"
    mock_urlopen.assert_not_called()


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_http_500(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://notify.example.test/v1/email/reminders",
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_sender().send("EMAIL", "INV-001")

    assert result.status == "failed"
    assert result.error_code == "http_500"
    assert "500" in (result.error_message or "")


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    result = _make_sender().send("EMAIL", "INV-001")

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "Connection" in (result.error_message or "")


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_sender().send("EMAIL", "INV-001")

    assert result.status == "failed"
    assert result.error_code == "timeout"
    assert "timed out" in (result.error_message or "")


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_sender_invalid_json(mock_urlopen: MagicMock) -> None:
    response = _mock_response(None)
    response.read.return_value = b"<html>bad gateway</html>"
    mock_urlopen.return_value = response

    result = _make_sender().send("EMAIL", "INV-001")

    assert result.status == "failed"
    assert result.error_code == "invalid_response"


def test_http_sender_empty_base_url() -> None:
    with pytest.raises(ValueError, match="base_url must not be empty"):
        _make_sender(base_url="")


def test_http_sender_empty_api_key() -> None:
    with pytest.raises(ValueError, match="api_key must not be empty"):
        _make_sender(api_key="  ")


def test_router_reports_unconfigured_channel() -> None:
    router = ChannelRouter({"EMAIL": StubChannelSender()})

    assert router.send("EMAIL", "INV-001").ok
    result = router.send("WHATSAPP", "INV-001")
    assert result.error_code == "channel_not_configured"


def test_stub_sender_disabled() -> None:
    result = StubChannelSender(enabled=False).send("EMAIL", "INV-001")
    assert result.status == "failed"
    assert result.error_code == "notifier_disabled"


def test_create_channel_sender_modes() -> None:
    stub = create_channel_sender(
        sender_type="stub",
        enabled=True,
        base_url="",
        email_api_key="",
        whatsapp_api_key="",
        timeout_seconds=5,
    )
    assert isinstance(stub, StubChannelSender)

    routed = create_channel_sender(
        sender_type="http",
        enabled=True,
        base_url="https://notify.example.test",
        email_api_key="email-key",
        whatsapp_api_key="whatsapp-key",
        timeout_seconds=5,
    )
    assert isinstance(routed, ChannelRouter)
