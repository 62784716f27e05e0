from __future__ import annotations

import os

from invoice_reminders.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = ("REMINDER_SEND_HOUR", "REMINDER_BEFORE_DUE_DAYS", "REMINDER_AFTER_DUE_DAYS", "NOTIFIER_SENDER_TYPE")
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.reminder_send_hour == 9
        assert settings.notifier_sender_type == "stub"
        assert settings.offset_table() == (
            ("BEFORE_DUE", -3),
            ("BEFORE_DUE", -1),
            ("ON_DUE", 0),
            ("AFTER_DUE", 1),
            ("AFTER_DUE", 3),
            ("AFTER_DUE", 7),
        )
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_reads_custom_schedule() -> None:
    previous = {
        "REMINDER_SEND_HOUR": _set_env("REMINDER_SEND_HOUR", "25"),
        "REMINDER_BEFORE_DUE_DAYS": _set_env("REMINDER_BEFORE_DUE_DAYS", "7, 2"),
        "REMINDER_ON_DUE": _set_env("REMINDER_ON_DUE", "false"),
        "REMINDER_AFTER_DUE_DAYS": _set_env("REMINDER_AFTER_DUE_DAYS", "14"),
        "NOTIFIER_SENDER_TYPE": _set_env("NOTIFIER_SENDER_TYPE", "carrier-pigeon"),
    }
    try:
        settings = get_settings()
        assert settings.reminder_send_hour == 9
        assert settings.notifier_sender_type == "stub"
        assert settings.offset_table() == (("BEFORE_DUE", -7), ("BEFORE_DUE", -2), ("AFTER_DUE", 14))
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_runtime_secret_issues_for_http_sender_and_postgres() -> None:
    settings = Settings(
        reminder_store_backend="postgres",
        database_url="",
        notifier_sender_type="http",
        notifier_api_base_url="https://notify.example.test",
        notifier_email_api_key="email-key",
        cron_secret="",
    )

    issues = runtime_secret_issues(settings)

    assert any("CRON_SECRET" in issue for issue in issues)
    assert any("DATABASE_URL is required" in issue for issue in issues)
    assert any("NOTIFIER_WHATSAPP_API_KEY is required" in issue for issue in issues)
    assert not any("NOTIFIER_EMAIL_API_KEY" in issue for issue in issues)
    assert not any("NOTIFIER_API_BASE_URL" in issue for issue in issues)


def test_runtime_secret_issues_clean_for_configured_stub() -> None:
    assert runtime_secret_issues(Settings(cron_secret="cron-secret-001")) == ()


def test_sending_lease_defaults_and_floor() -> None:
    previous = _set_env("REMINDER_SENDING_LEASE_SECONDS", None)
    try:
        assert get_settings().reminder_sending_lease_seconds == 900
        os.environ["REMINDER_SENDING_LEASE_SECONDS"] = "120"
        assert get_settings().reminder_sending_lease_seconds == 120
        os.environ["REMINDER_SENDING_LEASE_SECONDS"] = "0"
        assert get_settings().reminder_sending_lease_seconds == 1
    finally:
        _restore_env("REMINDER_SENDING_LEASE_SECONDS", previous)
