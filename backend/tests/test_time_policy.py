from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from invoice_reminders.time_policy import resolve_timezone, send_instant, start_of_local_day


def test_send_instant_uses_send_hour_on_offset_day() -> None:
    assert send_instant(date(2025, 1, 10), -3) == datetime(2025, 1, 7, 9, 0, tzinfo=timezone.utc)
    assert send_instant(date(2025, 1, 10), 0) == datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc)
    assert send_instant(date(2025, 1, 10), 7) == datetime(2025, 1, 17, 9, 0, tzinfo=timezone.utc)


def test_send_instant_ignores_time_of_day_on_due_date() -> None:
    late_evening = datetime(2025, 1, 10, 23, 45, tzinfo=timezone.utc)
    assert send_instant(late_evening, 1) == datetime(2025, 1, 11, 9, 0, tzinfo=timezone.utc)


def test_send_instant_crosses_month_and_year_boundaries() -> None:
    assert send_instant(date(2025, 3, 1), -1) == datetime(2025, 2, 28, 9, 0, tzinfo=timezone.utc)
    assert send_instant(date(2024, 12, 29), 7) == datetime(2025, 1, 5, 9, 0, tzinfo=timezone.utc)


def test_send_instant_in_business_timezone() -> None:
    # 09:00 in Jakarta (UTC+7) is 02:00 UTC.
    assert send_instant(date(2025, 1, 10), 0, timezone_name="Asia/Jakarta") == datetime(
        2025, 1, 10, 2, 0, tzinfo=timezone.utc
    )


def test_send_instant_rejects_out_of_range_hour() -> None:
    with pytest.raises(ValueError, match="send_hour must be between 0 and 23"):
        send_instant(date(2025, 1, 10), 0, send_hour=24)


def test_unknown_timezone_falls_back_to_utc() -> None:
    assert resolve_timezone("Not/AZone") == timezone.utc
    assert resolve_timezone("") == timezone.utc
    assert resolve_timezone(None) == timezone.utc


def test_start_of_local_day() -> None:
    now = datetime(2025, 1, 10, 15, 30, tzinfo=timezone.utc)
    assert start_of_local_day(now) == datetime(2025, 1, 10, tzinfo=timezone.utc)
    assert start_of_local_day(now, timezone_name="Asia/Jakarta") == datetime(2025, 1, 9, 17, 0, tzinfo=timezone.utc)
