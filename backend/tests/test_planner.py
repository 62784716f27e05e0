from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from invoice_reminders.planner import NotEligibleError, kind_for_offset, plan_reminders


def test_plan_email_only_yields_six_reminders_in_offset_order() -> None:
    drafts = plan_reminders(date(2025, 1, 10), has_email=True, has_phone=False)

    assert [(draft.kind, draft.day_offset, draft.channel) for draft in drafts] == [
        ("BEFORE_DUE", -3, "EMAIL"),
        ("BEFORE_DUE", -1, "EMAIL"),
        ("ON_DUE", 0, "EMAIL"),
        ("AFTER_DUE", 1, "EMAIL"),
        ("AFTER_DUE", 3, "EMAIL"),
        ("AFTER_DUE", 7, "EMAIL"),
    ]
    assert drafts[0].scheduled_for == datetime(2025, 1, 7, 9, 0, tzinfo=timezone.utc)
    assert drafts[-1].scheduled_for == datetime(2025, 1, 17, 9, 0, tzinfo=timezone.utc)


def test_plan_both_channels_puts_email_first_within_each_offset() -> None:
    drafts = plan_reminders(date(2025, 1, 10), has_email=True, has_phone=True)

    assert len(drafts) == 12
    assert [draft.channel for draft in drafts[:2]] == ["EMAIL", "WHATSAPP"]
    assert drafts[0].scheduled_for == drafts[1].scheduled_for
    assert len({draft.slot for draft in drafts}) == 12


def test_plan_phone_only() -> None:
    drafts = plan_reminders(date(2025, 1, 10), has_email=False, has_phone=True)
    assert {draft.channel for draft in drafts} == {"WHATSAPP"}
    assert len(drafts) == 6


@pytest.mark.parametrize(
    ("kwargs", "reason"),
    [
        ({"due_date": None, "has_email": True, "has_phone": False}, "no_due_date"),
        ({"due_date": date(2025, 1, 10), "has_email": False, "has_phone": False}, "no_reachable_channel"),
        ({"due_date": date(2025, 1, 10), "has_email": True, "has_phone": True, "entitled": False}, "not_entitled"),
    ],
)
def test_plan_rejects_ineligible_invoices(kwargs: dict, reason: str) -> None:
    due_date = kwargs.pop("due_date")
    with pytest.raises(NotEligibleError) as exc_info:
        plan_reminders(due_date, **kwargs)
    assert exc_info.value.reason == reason


def test_plan_with_custom_offsets_sorts_by_day_offset() -> None:
    drafts = plan_reminders(
        date(2025, 1, 10),
        has_email=True,
        has_phone=False,
        offsets=[("AFTER_DUE", 2), ("BEFORE_DUE", -5)],
    )
    assert [draft.day_offset for draft in drafts] == [-5, 2]


def test_plan_rejects_offset_with_wrong_kind() -> None:
    with pytest.raises(ValueError, match="does not match reminder kind"):
        plan_reminders(date(2025, 1, 10), has_email=True, has_phone=False, offsets=[("ON_DUE", 1)])


def test_kind_for_offset() -> None:
    assert kind_for_offset(-1) == "BEFORE_DUE"
    assert kind_for_offset(0) == "ON_DUE"
    assert kind_for_offset(3) == "AFTER_DUE"
