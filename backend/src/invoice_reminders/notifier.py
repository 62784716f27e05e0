from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Mapping, Protocol

from .models import ReminderChannel

ChannelResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class ChannelSendResult:
    status: ChannelResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"

    def failure_text(self) -> str:
        message = (self.error_message or "").strip()
        if self.error_code and message:
            return f"{self.error_code}: {message}"
        return message or self.error_code or "delivery failed"


class ChannelSender(Protocol):
    def send(self, channel: ReminderChannel, invoice_id: str) -> ChannelSendResult: ...


class StubChannelSender:
    """Local sender that records deliveries instead of transmitting them."""

    def __init__(self, *, enabled: bool = True, fail_invoice_ids: set[str] | None = None) -> None:
        self._enabled = enabled
        self._fail_invoice_ids = set(fail_invoice_ids or ())
        self.sent: list[tuple[str, str]] = []

    def send(self, channel: ReminderChannel, invoice_id: str) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live reminder delivery is disabled",
            )

        if invoice_id in self._fail_invoice_ids:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message=f"Stub sender forced failure for {channel.lower()} delivery",
            )

        self.sent.append((channel, invoice_id))
        message_id = f"stub-{channel.lower()}-{invoice_id}-{len(self.sent)}"
        return ChannelSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _ChannelSendError(Exception):
    """Internal error raised when a delivery HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpChannelSender:
    """Hands a reminder to the delivery service for one channel over HTTP.

    The delivery service owns message content and the channel credentials
    (SMTP, WhatsApp tokens); this sender only says which invoice to remind
    about.
    """

    def __init__(
        self,
        *,
        channel: ReminderChannel,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._channel = channel
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send(self, channel: ReminderChannel, invoice_id: str) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)

        if channel != self._channel:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error_message=f"Sender for {self._channel} cannot deliver {channel}",
            )

        request_payload = {
            "channel": channel.lower(),
            "invoice_id": invoice_id,
            "kind": "payment_reminder",
        }

        try:
            response_data = self._post(request_payload)
        except _ChannelSendError as exc:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )

        if response_data.get("success") is False:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="provider_rejected",
                error_message=str(response_data.get("error") or "Delivery service rejected the reminder"),
            )

        message_id = response_data.get("message_id")
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )

    def _post(self, body: dict[str, str]) -> dict[str, object]:
        """Send a POST request to the channel's reminders endpoint."""
        url = f"{self._base_url}/v1/{self._channel.lower()}/reminders"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise _ChannelSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _ChannelSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ChannelSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise _ChannelSendError(
                error_code="invalid_response",
                message="Delivery service returned a non-JSON body",
            ) from exc
        return parsed if isinstance(parsed, dict) else {}


class ChannelRouter:
    """Routes each reminder to the sender registered for its channel."""

    def __init__(self, senders: Mapping[str, ChannelSender]) -> None:
        self._senders = dict(senders)

    def send(self, channel: ReminderChannel, invoice_id: str) -> ChannelSendResult:
        sender = self._senders.get(channel)
        if sender is None:
            return ChannelSendResult(
                status="failed",
                attempted_at=datetime.now(timezone.utc),
                error_code="channel_not_configured",
                error_message=f"No sender configured for channel {channel}",
            )
        return sender.send(channel, invoice_id)


def create_channel_sender(
    *,
    sender_type: str,
    enabled: bool,
    base_url: str,
    email_api_key: str,
    whatsapp_api_key: str,
    timeout_seconds: int,
) -> ChannelSender:
    if sender_type == "http":
        return ChannelRouter(
            {
                "EMAIL": HttpChannelSender(
                    channel="EMAIL",
                    base_url=base_url,
                    api_key=email_api_key,
                    timeout_seconds=timeout_seconds,
                ),
                "WHATSAPP": HttpChannelSender(
                    channel="WHATSAPP",
                    base_url=base_url,
                    api_key=whatsapp_api_key,
                    timeout_seconds=timeout_seconds,
                ),
            }
        )
    return StubChannelSender(enabled=enabled)
