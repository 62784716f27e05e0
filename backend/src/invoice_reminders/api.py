from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from .config import Settings, get_settings
from .dispatcher import Dispatcher
from .invoices import InMemoryInvoiceDirectory, InvoiceNotFoundError
from .lifecycle import LifecycleListener
from .models import (
    DispatchTickRequest,
    DispatchTickResponse,
    InvoiceSnapshotRequest,
    InvoiceSnapshotResponse,
    PaymentStatusChangeRequest,
    PaymentStatusChangeResponse,
    ReminderCancelAllResponse,
    ReminderItem,
    ReminderListResponse,
    ReminderPlanResponse,
    ReminderSendResponse,
    ReminderStatsResponse,
)
from .notifier import ChannelSender, create_channel_sender
from .planner import NotEligibleError
from .reminder_store import ReminderRecord, ReminderRepository, create_reminder_repository
from .service import (
    AlreadyClaimedError,
    ReminderNotFoundError,
    ReminderService,
    ReminderStateError,
    SendFailedError,
)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])


def _create_sender(settings: Settings) -> ChannelSender:
    return create_channel_sender(
        sender_type=settings.notifier_sender_type,
        enabled=settings.notifier_enabled,
        base_url=settings.notifier_api_base_url,
        email_api_key=settings.notifier_email_api_key,
        whatsapp_api_key=settings.notifier_whatsapp_api_key,
        timeout_seconds=settings.notifier_timeout_seconds,
    )


def _create_service(
    settings: Settings,
    *,
    repository: ReminderRepository,
    directory: InMemoryInvoiceDirectory,
    sender: ChannelSender,
) -> tuple[Dispatcher, ReminderService]:
    dispatcher = Dispatcher(
        repository=repository,
        invoices=directory,
        sender=sender,
        batch_size=settings.reminder_dispatch_batch_size,
        max_attempts=settings.reminder_max_send_attempts,
        sending_lease_seconds=settings.reminder_sending_lease_seconds,
    )
    service = ReminderService(
        repository=repository,
        invoices=directory,
        reachability=directory,
        entitlements=directory,
        dispatcher=dispatcher,
        lifecycle=LifecycleListener(repository),
        send_hour=settings.reminder_send_hour,
        timezone_name=settings.reminder_timezone,
        offsets=settings.offset_table(),
    )
    return dispatcher, service


reminder_repo: ReminderRepository = create_reminder_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
invoice_directory = InMemoryInvoiceDirectory()
channel_sender: ChannelSender = _create_sender(_settings)
dispatcher, reminder_service = _create_service(
    _settings,
    repository=reminder_repo,
    directory=invoice_directory,
    sender=channel_sender,
)


def configure_runtime(settings: Settings | None = None, *, sender: ChannelSender | None = None) -> None:
    """Rebuild the module-level wiring, e.g. after environment changes in tests."""
    global _settings, reminder_repo, channel_sender, dispatcher, reminder_service
    _settings = settings or get_settings()
    reminder_repo = create_reminder_repository(
        backend=_settings.reminder_store_backend,
        database_url=_settings.database_url,
    )
    channel_sender = sender or _create_sender(_settings)
    dispatcher, reminder_service = _create_service(
        _settings,
        repository=reminder_repo,
        directory=invoice_directory,
        sender=channel_sender,
    )


def reset_runtime_state_for_tests() -> None:
    reminder_repo.reset()
    invoice_directory.reset()


def _require_cron_secret(request: Request) -> None:
    secret = _settings.cron_secret.strip()
    if not secret:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if token != secret:
        raise HTTPException(401, "cron secret required")


def _item(record: ReminderRecord) -> ReminderItem:
    return ReminderItem(
        reminder_id=record.reminder_id,
        invoice_id=record.invoice_id,
        kind=record.kind,
        day_offset=record.day_offset,
        channel=record.channel,
        scheduled_for=record.scheduled_for,
        status=record.status,
        sent_at=record.sent_at,
        error_message=record.error_message,
        attempt_count=record.attempt_count,
        provider_message_id=record.provider_message_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _snapshot(invoice_id: str) -> InvoiceSnapshotResponse:
    return InvoiceSnapshotResponse(
        invoice_id=invoice_id,
        due_date=invoice_directory.get_due_date(invoice_id),
        payment_status=invoice_directory.get_payment_status(invoice_id),
        has_email=invoice_directory.has_email(invoice_id),
        has_phone=invoice_directory.has_phone(invoice_id),
        reminders_entitled=invoice_directory.reminders_enabled(invoice_id),
    )


@router.put("/invoices/{invoice_id}", response_model=InvoiceSnapshotResponse)
def upsert_invoice_snapshot(invoice_id: str, payload: InvoiceSnapshotRequest) -> InvoiceSnapshotResponse:
    due_date_changed = (
        invoice_directory.exists(invoice_id)
        and invoice_directory.get_due_date(invoice_id) != payload.due_date
    )
    invoice_directory.upsert(
        invoice_id,
        due_date=payload.due_date,
        payment_status=payload.payment_status,
        buyer_email=payload.buyer_email,
        buyer_phone=payload.buyer_phone,
        reminders_entitled=payload.reminders_entitled,
    )
    if payload.payment_status == "PAID":
        reminder_service.on_paid(invoice_id)
    elif due_date_changed:
        reminder_service.on_due_date_changed(invoice_id)
    return _snapshot(invoice_id)


@router.get("/invoices/{invoice_id}", response_model=ReminderListResponse)
def list_invoice_reminders(invoice_id: str) -> ReminderListResponse:
    items = [_item(record) for record in reminder_service.list_for_invoice(invoice_id)]
    return ReminderListResponse(invoice_id=invoice_id, items=items)


@router.post("/invoices/{invoice_id}/plan", response_model=ReminderPlanResponse, status_code=status.HTTP_201_CREATED)
def plan_invoice_reminders(invoice_id: str) -> ReminderPlanResponse:
    try:
        created = reminder_service.plan_and_enable(invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(404, "invoice not found") from exc
    except NotEligibleError as exc:
        raise HTTPException(422, {"reason": exc.reason, "message": str(exc)}) from exc
    return ReminderPlanResponse(invoice_id=invoice_id, items=[_item(record) for record in created])


@router.post("/invoices/{invoice_id}/cancel", response_model=ReminderCancelAllResponse)
def cancel_invoice_reminders(invoice_id: str) -> ReminderCancelAllResponse:
    cancelled = reminder_service.cancel_all(invoice_id)
    return ReminderCancelAllResponse(invoice_id=invoice_id, cancelled_count=cancelled)


@router.post("/invoices/{invoice_id}/payment-status", response_model=PaymentStatusChangeResponse)
def change_payment_status(invoice_id: str, payload: PaymentStatusChangeRequest) -> PaymentStatusChangeResponse:
    try:
        invoice_directory.set_payment_status(invoice_id, payload.payment_status)
    except InvoiceNotFoundError as exc:
        raise HTTPException(404, "invoice not found") from exc
    skipped = reminder_service.on_paid(invoice_id) if payload.payment_status == "PAID" else 0
    return PaymentStatusChangeResponse(
        invoice_id=invoice_id,
        payment_status=payload.payment_status,
        skipped_count=skipped,
    )


@router.get("/stats", response_model=ReminderStatsResponse)
def get_reminder_stats() -> ReminderStatsResponse:
    stats = reminder_service.stats()
    return ReminderStatsResponse(
        pending=stats.pending,
        sent=stats.sent,
        failed=stats.failed,
        upcoming=stats.upcoming,
    )


@router.post("/dispatch/tick", response_model=DispatchTickResponse)
def run_dispatch_tick(request: Request, payload: DispatchTickRequest | None = None) -> DispatchTickResponse:
    _require_cron_secret(request)
    request_payload = payload or DispatchTickRequest()
    result = dispatcher.tick(request_payload.now_override, limit=request_payload.limit)
    return DispatchTickResponse(
        run_at=result.run_at,
        evaluated_count=result.evaluated_count,
        sent_count=result.sent_count,
        failed_count=result.failed_count,
        skipped_count=result.skipped_count,
        contended_count=result.contended_count,
    )


@router.get("/{reminder_id}", response_model=ReminderItem)
def get_reminder(reminder_id: str) -> ReminderItem:
    try:
        return _item(reminder_service.get(reminder_id))
    except ReminderNotFoundError as exc:
        raise HTTPException(404, "reminder not found") from exc


@router.post("/{reminder_id}/cancel", response_model=ReminderItem)
def cancel_reminder(reminder_id: str) -> ReminderItem:
    try:
        return _item(reminder_service.cancel(reminder_id))
    except ReminderNotFoundError as exc:
        raise HTTPException(404, "reminder not found") from exc
    except ReminderStateError as exc:
        raise HTTPException(409, str(exc)) from exc


@router.post("/{reminder_id}/send", response_model=ReminderSendResponse)
def send_reminder_now(reminder_id: str) -> ReminderSendResponse:
    try:
        record = reminder_service.send_now(reminder_id)
    except ReminderNotFoundError as exc:
        raise HTTPException(404, "reminder not found") from exc
    except InvoiceNotFoundError as exc:
        raise HTTPException(404, "invoice not found") from exc
    except AlreadyClaimedError:
        return ReminderSendResponse(
            outcome="already_claimed",
            reminder=_item(reminder_service.get(reminder_id)),
        )
    except ReminderStateError as exc:
        raise HTTPException(409, str(exc)) from exc
    except SendFailedError as exc:
        raise HTTPException(502, exc.error_message) from exc
    outcome = "sent" if record.status == "SENT" else "skipped"
    return ReminderSendResponse(outcome=outcome, reminder=_item(record))
