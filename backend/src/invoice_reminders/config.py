from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_int_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    items: list[int] = []
    for raw in value.split(","):
        item = raw.strip()
        if not item:
            continue
        try:
            items.append(abs(int(item)))
        except ValueError:
            return default
    return tuple(items)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Invoice Reminders"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    # Local business time at which every reminder is delivered.
    reminder_send_hour: int = 9
    reminder_timezone: str = "UTC"
    reminder_before_due_days: tuple[int, ...] = (3, 1)
    reminder_on_due: bool = True
    reminder_after_due_days: tuple[int, ...] = (1, 3, 7)
    reminder_dispatch_interval_seconds: int = 60
    reminder_dispatch_batch_size: int = 50
    reminder_max_send_attempts: int = 5
    # A SENDING claim older than this is considered abandoned by a crashed sender.
    reminder_sending_lease_seconds: int = 900
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_email_api_key: str = ""
    notifier_whatsapp_api_key: str = ""
    notifier_timeout_seconds: int = 30
    invoice_api_base_url: str = ""
    invoice_api_key: str = ""
    cron_secret: str = ""
    runtime_secret_guard_mode: str = "warn"

    def offset_table(self) -> tuple[tuple[str, int], ...]:
        rows: list[tuple[str, int]] = []
        for days in sorted(set(self.reminder_before_due_days), reverse=True):
            if days > 0:
                rows.append(("BEFORE_DUE", -days))
        if self.reminder_on_due:
            rows.append(("ON_DUE", 0))
        for days in sorted(set(self.reminder_after_due_days)):
            if days > 0:
                rows.append(("AFTER_DUE", days))
        return tuple(rows)


def get_settings() -> Settings:
    send_hour = _as_int(os.getenv("REMINDER_SEND_HOUR"), 9)
    return Settings(
        app_name=os.getenv("INVOICING_APP_NAME", "Invoice Reminders"),
        api_prefix=os.getenv("INVOICING_API_PREFIX", "/api/v1"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        reminder_send_hour=send_hour if 0 <= send_hour <= 23 else 9,
        reminder_timezone=os.getenv("REMINDER_TIMEZONE", "UTC"),
        reminder_before_due_days=_as_int_tuple(os.getenv("REMINDER_BEFORE_DUE_DAYS"), (3, 1)),
        reminder_on_due=_as_bool(os.getenv("REMINDER_ON_DUE"), True),
        reminder_after_due_days=_as_int_tuple(os.getenv("REMINDER_AFTER_DUE_DAYS"), (1, 3, 7)),
        reminder_dispatch_interval_seconds=max(1, _as_int(os.getenv("REMINDER_DISPATCH_INTERVAL_SECONDS"), 60)),
        reminder_dispatch_batch_size=max(1, _as_int(os.getenv("REMINDER_DISPATCH_BATCH_SIZE"), 50)),
        reminder_max_send_attempts=max(1, _as_int(os.getenv("REMINDER_MAX_SEND_ATTEMPTS"), 5)),
        reminder_sending_lease_seconds=max(1, _as_int(os.getenv("REMINDER_SENDING_LEASE_SECONDS"), 900)),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_email_api_key=os.getenv("NOTIFIER_EMAIL_API_KEY", ""),
        notifier_whatsapp_api_key=os.getenv("NOTIFIER_WHATSAPP_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        invoice_api_base_url=os.getenv("INVOICE_API_BASE_URL", ""),
        invoice_api_key=os.getenv("INVOICE_API_KEY", ""),
        cron_secret=os.getenv("CRON_SECRET", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if not settings.cron_secret.strip():
        issues.append("CRON_SECRET is empty; the dispatch tick endpoint is unauthenticated")
    if settings.reminder_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_email_api_key.strip():
            issues.append("NOTIFIER_EMAIL_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_whatsapp_api_key.strip():
            issues.append("NOTIFIER_WHATSAPP_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    return tuple(issues)
