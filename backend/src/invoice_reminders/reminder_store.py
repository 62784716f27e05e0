from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Iterable, Protocol

from sqlalchemy import DateTime, Index, Integer, String, Text, create_engine, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import CLAIMABLE_STATUSES, ReminderChannel, ReminderKind, ReminderStatus
from .planner import ReminderDraft

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


STALE_SENDING_MESSAGE = "sending_lease_expired: delivery outcome unknown, sender stopped before recording it"


def _new_attempt_token() -> str:
    return secrets.token_hex(16)


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    invoice_id: str
    kind: ReminderKind
    day_offset: int
    channel: ReminderChannel
    scheduled_for: datetime
    status: ReminderStatus
    sent_at: datetime | None
    error_message: str | None
    attempt_token: str | None
    attempt_count: int
    provider_message_id: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def slot(self) -> tuple[str, int, str]:
        return (self.kind, self.day_offset, self.channel)


class ReminderRepository(Protocol):
    def reset(self) -> None: ...

    def add_drafts(self, invoice_id: str, drafts: Iterable[ReminderDraft]) -> list[ReminderRecord]: ...

    def replace_pending(
        self,
        invoice_id: str,
        drafts: Iterable[ReminderDraft],
    ) -> tuple[int, list[ReminderRecord]]: ...

    def get(self, reminder_id: str) -> ReminderRecord | None: ...

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]: ...

    def list_due(self, now: datetime, *, limit: int, max_attempts: int) -> list[ReminderRecord]: ...

    def claim(self, reminder_id: str) -> str | None: ...

    def finalize_sent(
        self,
        reminder_id: str,
        token: str,
        *,
        sent_at: datetime,
        provider_message_id: str | None,
    ) -> bool: ...

    def finalize_failed(self, reminder_id: str, token: str, *, error_message: str) -> bool: ...

    def release_stale(self, stale_before: datetime) -> int: ...

    def skip(self, reminder_id: str) -> bool: ...

    def skip_for_invoice(self, invoice_id: str) -> int: ...

    def cancel(self, reminder_id: str) -> bool: ...

    def cancel_pending_for_invoice(self, invoice_id: str) -> int: ...

    def count_by_status(self) -> dict[str, int]: ...

    def count_upcoming(self, start: datetime, end: datetime) -> int: ...


class InMemoryReminderRepository:
    """Process-local store; every transition runs under one lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._reminders: dict[str, ReminderRecord] = {}
        self._ids_by_invoice: dict[str, list[str]] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._reminders.clear()
            self._ids_by_invoice.clear()

    def _insert_drafts(self, invoice_id: str, drafts: Iterable[ReminderDraft]) -> list[ReminderRecord]:
        created: list[ReminderRecord] = []
        ids = self._ids_by_invoice.setdefault(invoice_id, [])
        taken = {
            self._reminders[value].slot
            for value in ids
            if self._reminders[value].status == "PENDING"
        }
        for draft in drafts:
            if draft.slot in taken:
                continue
            now = _now_utc()
            reminder_id = f"rem_{next(self._counter):06d}"
            record = ReminderRecord(
                reminder_id=reminder_id,
                invoice_id=invoice_id,
                kind=draft.kind,
                day_offset=draft.day_offset,
                channel=draft.channel,
                scheduled_for=_coerce_utc(draft.scheduled_for),
                status="PENDING",
                sent_at=None,
                error_message=None,
                attempt_token=None,
                attempt_count=0,
                provider_message_id=None,
                created_at=now,
                updated_at=now,
            )
            self._reminders[reminder_id] = record
            ids.append(reminder_id)
            taken.add(draft.slot)
            created.append(record)
        return created

    def add_drafts(self, invoice_id: str, drafts: Iterable[ReminderDraft]) -> list[ReminderRecord]:
        with self._lock:
            return self._insert_drafts(invoice_id, drafts)

    def replace_pending(
        self,
        invoice_id: str,
        drafts: Iterable[ReminderDraft],
    ) -> tuple[int, list[ReminderRecord]]:
        with self._lock:
            cancelled = sum(
                1
                for value in self._ids_by_invoice.get(invoice_id, [])
                if self._transition(value, allowed={"PENDING"}, status="CANCELLED")
            )
            return cancelled, self._insert_drafts(invoice_id, drafts)

    def get(self, reminder_id: str) -> ReminderRecord | None:
        return self._reminders.get(reminder_id)

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._lock:
            rows = [self._reminders[value] for value in self._ids_by_invoice.get(invoice_id, [])]
        return sorted(rows, key=lambda value: (value.scheduled_for, value.reminder_id))

    def list_due(self, now: datetime, *, limit: int, max_attempts: int) -> list[ReminderRecord]:
        cutoff = _coerce_utc(now)
        with self._lock:
            rows = [
                row
                for row in self._reminders.values()
                if row.scheduled_for <= cutoff
                and (
                    row.status == "PENDING"
                    or (row.status == "FAILED" and row.attempt_count < max_attempts)
                )
            ]
        rows.sort(key=lambda value: (value.scheduled_for, value.reminder_id))
        return rows[:limit]

    def claim(self, reminder_id: str) -> str | None:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None or row.status not in CLAIMABLE_STATUSES:
                return None
            token = _new_attempt_token()
            self._reminders[reminder_id] = ReminderRecord(
                **{
                    **row.__dict__,
                    "status": "SENDING",
                    "attempt_token": token,
                    "attempt_count": row.attempt_count + 1,
                    "updated_at": _now_utc(),
                }
            )
            return token

    def finalize_sent(
        self,
        reminder_id: str,
        token: str,
        *,
        sent_at: datetime,
        provider_message_id: str | None,
    ) -> bool:
        return self._finalize(
            reminder_id,
            token,
            status="SENT",
            sent_at=_coerce_utc(sent_at),
            error_message=None,
            provider_message_id=provider_message_id,
        )

    def finalize_failed(self, reminder_id: str, token: str, *, error_message: str) -> bool:
        return self._finalize(
            reminder_id,
            token,
            status="FAILED",
            sent_at=None,
            error_message=error_message,
            provider_message_id=None,
        )

    def _finalize(
        self,
        reminder_id: str,
        token: str,
        *,
        status: ReminderStatus,
        sent_at: datetime | None,
        error_message: str | None,
        provider_message_id: str | None,
    ) -> bool:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None or row.status != "SENDING" or row.attempt_token != token:
                return False
            self._reminders[reminder_id] = ReminderRecord(
                **{
                    **row.__dict__,
                    "status": status,
                    "sent_at": sent_at,
                    "error_message": error_message,
                    "provider_message_id": provider_message_id,
                    "updated_at": _now_utc(),
                }
            )
            return True

    def _transition(self, reminder_id: str, *, allowed: frozenset[str] | set[str], status: ReminderStatus) -> bool:
        row = self._reminders.get(reminder_id)
        if row is None or row.status not in allowed:
            return False
        self._reminders[reminder_id] = ReminderRecord(
            **{**row.__dict__, "status": status, "updated_at": _now_utc()}
        )
        return True

    def release_stale(self, stale_before: datetime) -> int:
        cutoff = _coerce_utc(stale_before)
        released = 0
        with self._lock:
            for reminder_id, row in list(self._reminders.items()):
                if row.status != "SENDING" or row.updated_at >= cutoff:
                    continue
                self._reminders[reminder_id] = ReminderRecord(
                    **{
                        **row.__dict__,
                        "status": "FAILED",
                        "error_message": STALE_SENDING_MESSAGE,
                        "updated_at": _now_utc(),
                    }
                )
                released += 1
        return released

    def skip(self, reminder_id: str) -> bool:
        with self._lock:
            return self._transition(reminder_id, allowed=CLAIMABLE_STATUSES, status="SKIPPED")

    def skip_for_invoice(self, invoice_id: str) -> int:
        with self._lock:
            return sum(
                1
                for value in self._ids_by_invoice.get(invoice_id, [])
                if self._transition(value, allowed=CLAIMABLE_STATUSES, status="SKIPPED")
            )

    def cancel(self, reminder_id: str) -> bool:
        with self._lock:
            return self._transition(reminder_id, allowed={"PENDING"}, status="CANCELLED")

    def cancel_pending_for_invoice(self, invoice_id: str) -> int:
        with self._lock:
            return sum(
                1
                for value in self._ids_by_invoice.get(invoice_id, [])
                if self._transition(value, allowed={"PENDING"}, status="CANCELLED")
            )

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for row in self._reminders.values():
                counts[row.status] = counts.get(row.status, 0) + 1
        return counts

    def count_upcoming(self, start: datetime, end: datetime) -> int:
        lower = _coerce_utc(start)
        upper = _coerce_utc(end)
        with self._lock:
            return sum(
                1
                for row in self._reminders.values()
                if row.status == "PENDING" and lower <= row.scheduled_for <= upper
            )


class RemindersBase(DeclarativeBase):
    pass


class _ReminderRow(RemindersBase):
    __tablename__ = "payment_reminders"
    __table_args__ = (
        Index(
            "ux_payment_reminders_pending_slot",
            "invoice_id",
            "kind",
            "day_offset",
            "channel",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    day_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _record_from_row(row: _ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        invoice_id=row.invoice_id,
        kind=row.kind,  # type: ignore[arg-type]
        day_offset=row.day_offset,
        channel=row.channel,  # type: ignore[arg-type]
        scheduled_for=_coerce_utc(row.scheduled_for),
        status=row.status,  # type: ignore[arg-type]
        sent_at=_coerce_utc(row.sent_at) if row.sent_at is not None else None,
        error_message=row.error_message,
        attempt_token=row.attempt_token,
        attempt_count=row.attempt_count,
        provider_message_id=row.provider_message_id,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyReminderRepository:
    """Database-backed store.

    Every state transition is a single ``UPDATE ... WHERE status IN (...)``
    statement; success is read from the affected row count, never from a
    prior ``SELECT``.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RemindersBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _conditional_update(self, *criteria, values: dict[str, object]) -> int:
        statement = (
            update(_ReminderRow)
            .where(*criteria)
            .values(**values, updated_at=_now_utc())
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            with session.begin():
                result = session.execute(statement)
                return int(result.rowcount or 0)

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderRow).delete()

    def _insert_drafts(self, session, invoice_id: str, drafts: Iterable[ReminderDraft]) -> list[ReminderRecord]:
        """Insert one PENDING row per free slot inside the caller's transaction.

        A slot taken by a concurrent planner after the SELECT trips the
        partial unique index; that insert is rolled back to its savepoint and
        the slot is skipped.
        """
        created: list[ReminderRecord] = []
        taken = {
            (row.kind, row.day_offset, row.channel)
            for row in session.execute(
                select(_ReminderRow)
                .where(_ReminderRow.invoice_id == invoice_id)
                .where(_ReminderRow.status == "PENDING")
            ).scalars()
        }
        for draft in drafts:
            if draft.slot in taken:
                continue
            now = _now_utc()
            row = _ReminderRow(
                reminder_id=f"rem_{secrets.token_hex(8)}",
                invoice_id=invoice_id,
                kind=draft.kind,
                day_offset=draft.day_offset,
                channel=draft.channel,
                scheduled_for=_coerce_utc(draft.scheduled_for),
                status="PENDING",
                sent_at=None,
                error_message=None,
                attempt_token=None,
                attempt_count=0,
                provider_message_id=None,
                created_at=now,
                updated_at=now,
            )
            taken.add(draft.slot)
            try:
                with session.begin_nested():
                    session.add(row)
            except IntegrityError:
                logger.info("reminder slot %s for invoice %s was planned concurrently", draft.slot, invoice_id)
                continue
            created.append(_record_from_row(row))
        return created

    def add_drafts(self, invoice_id: str, drafts: Iterable[ReminderDraft]) -> list[ReminderRecord]:
        with self._session() as session:
            with session.begin():
                return self._insert_drafts(session, invoice_id, drafts)

    def replace_pending(
        self,
        invoice_id: str,
        drafts: Iterable[ReminderDraft],
    ) -> tuple[int, list[ReminderRecord]]:
        """Cancel the invoice's PENDING rows and insert ``drafts`` in one transaction."""
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ReminderRow)
                    .where(_ReminderRow.invoice_id == invoice_id)
                    .where(_ReminderRow.status == "PENDING")
                    .values(status="CANCELLED", updated_at=_now_utc())
                    .execution_options(synchronize_session=False)
                )
                cancelled = int(result.rowcount or 0)
                return cancelled, self._insert_drafts(session, invoice_id, drafts)

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRow, reminder_id)
            if row is None:
                return None
            return _record_from_row(row)

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRow)
                .where(_ReminderRow.invoice_id == invoice_id)
                .order_by(_ReminderRow.scheduled_for.asc(), _ReminderRow.reminder_id.asc())
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def list_due(self, now: datetime, *, limit: int, max_attempts: int) -> list[ReminderRecord]:
        retryable = (_ReminderRow.status == "FAILED") & (_ReminderRow.attempt_count < max_attempts)
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRow)
                .where((_ReminderRow.status == "PENDING") | retryable)
                .where(_ReminderRow.scheduled_for <= _coerce_utc(now))
                .order_by(_ReminderRow.scheduled_for.asc(), _ReminderRow.reminder_id.asc())
                .limit(limit)
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def claim(self, reminder_id: str) -> str | None:
        token = _new_attempt_token()
        affected = self._conditional_update(
            _ReminderRow.reminder_id == reminder_id,
            _ReminderRow.status.in_(sorted(CLAIMABLE_STATUSES)),
            values={
                "status": "SENDING",
                "attempt_token": token,
                "attempt_count": _ReminderRow.attempt_count + 1,
            },
        )
        return token if affected == 1 else None

    def finalize_sent(
        self,
        reminder_id: str,
        token: str,
        *,
        sent_at: datetime,
        provider_message_id: str | None,
    ) -> bool:
        affected = self._conditional_update(
            _ReminderRow.reminder_id == reminder_id,
            _ReminderRow.status == "SENDING",
            _ReminderRow.attempt_token == token,
            values={
                "status": "SENT",
                "sent_at": _coerce_utc(sent_at),
                "error_message": None,
                "provider_message_id": provider_message_id,
            },
        )
        return affected == 1

    def finalize_failed(self, reminder_id: str, token: str, *, error_message: str) -> bool:
        affected = self._conditional_update(
            _ReminderRow.reminder_id == reminder_id,
            _ReminderRow.status == "SENDING",
            _ReminderRow.attempt_token == token,
            values={"status": "FAILED", "error_message": error_message},
        )
        return affected == 1

    def release_stale(self, stale_before: datetime) -> int:
        return self._conditional_update(
            _ReminderRow.status == "SENDING",
            _ReminderRow.updated_at < _coerce_utc(stale_before),
            values={"status": "FAILED", "error_message": STALE_SENDING_MESSAGE},
        )

    def skip(self, reminder_id: str) -> bool:
        affected = self._conditional_update(
            _ReminderRow.reminder_id == reminder_id,
            _ReminderRow.status.in_(sorted(CLAIMABLE_STATUSES)),
            values={"status": "SKIPPED"},
        )
        return affected == 1

    def skip_for_invoice(self, invoice_id: str) -> int:
        return self._conditional_update(
            _ReminderRow.invoice_id == invoice_id,
            _ReminderRow.status.in_(sorted(CLAIMABLE_STATUSES)),
            values={"status": "SKIPPED"},
        )

    def cancel(self, reminder_id: str) -> bool:
        affected = self._conditional_update(
            _ReminderRow.reminder_id == reminder_id,
            _ReminderRow.status == "PENDING",
            values={"status": "CANCELLED"},
        )
        return affected == 1

    def cancel_pending_for_invoice(self, invoice_id: str) -> int:
        return self._conditional_update(
            _ReminderRow.invoice_id == invoice_id,
            _ReminderRow.status == "PENDING",
            values={"status": "CANCELLED"},
        )

    def count_by_status(self) -> dict[str, int]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRow.status, func.count()).group_by(_ReminderRow.status)
            ).all()
            return {status: int(total) for status, total in rows}

    def count_upcoming(self, start: datetime, end: datetime) -> int:
        with self._session() as session:
            total = session.execute(
                select(func.count())
                .select_from(_ReminderRow)
                .where(_ReminderRow.status == "PENDING")
                .where(_ReminderRow.scheduled_for >= _coerce_utc(start))
                .where(_ReminderRow.scheduled_for <= _coerce_utc(end))
            ).scalar_one()
            return int(total)


def create_reminder_repository(*, backend: str, database_url: str) -> ReminderRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
