from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading

from .config import Settings, get_settings
from .dispatcher import Dispatcher
from .invoices import HttpInvoiceDirectory, InvoiceStatusSource
from .notifier import create_channel_sender
from .reminder_store import create_reminder_repository

logger = logging.getLogger(__name__)


def build_dispatcher(settings: Settings, *, invoices: InvoiceStatusSource | None = None) -> Dispatcher:
    if settings.reminder_store_backend.strip().lower() == "inmemory":
        logger.warning("REMINDER_STORE_BACKEND=inmemory: this worker cannot see reminders planned by the API process")
    if invoices is None:
        invoices = HttpInvoiceDirectory(
            base_url=settings.invoice_api_base_url,
            api_key=settings.invoice_api_key,
        )
    return Dispatcher(
        repository=create_reminder_repository(
            backend=settings.reminder_store_backend,
            database_url=settings.database_url,
        ),
        invoices=invoices,
        sender=create_channel_sender(
            sender_type=settings.notifier_sender_type,
            enabled=settings.notifier_enabled,
            base_url=settings.notifier_api_base_url,
            email_api_key=settings.notifier_email_api_key,
            whatsapp_api_key=settings.notifier_whatsapp_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
        ),
        batch_size=settings.reminder_dispatch_batch_size,
        max_attempts=settings.reminder_max_send_attempts,
        sending_lease_seconds=settings.reminder_sending_lease_seconds,
    )


def run_workers(
    dispatcher: Dispatcher,
    *,
    workers: int,
    interval_seconds: float,
    stop_event: threading.Event,
) -> None:
    """Run ``workers`` dispatch loops against one dispatcher until ``stop_event`` is set."""
    threads = [
        threading.Thread(
            target=dispatcher.run,
            args=(stop_event,),
            kwargs={"interval_seconds": interval_seconds},
            name=f"reminder-dispatcher-{index}",
            daemon=True,
        )
        for index in range(max(1, workers))
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Deliver due payment reminders.")
    parser.add_argument("--once", action="store_true", help="Run a single dispatch tick and exit.")
    parser.add_argument("--workers", type=int, default=1, help="Concurrent dispatch loops in this process.")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between ticks (default: REMINDER_DISPATCH_INTERVAL_SECONDS).",
    )
    parser.add_argument("--log-level", default="INFO", help="Root log level.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    if not settings.invoice_api_base_url.strip():
        print("INVOICE_API_BASE_URL is required to run the reminder worker", file=sys.stderr)
        return 2

    dispatcher = build_dispatcher(settings)
    if args.once:
        result = dispatcher.tick()
        print(
            json.dumps(
                {
                    "run_at": result.run_at.isoformat(),
                    "evaluated_count": result.evaluated_count,
                    "sent_count": result.sent_count,
                    "failed_count": result.failed_count,
                    "skipped_count": result.skipped_count,
                    "contended_count": result.contended_count,
                }
            )
        )
        return 0

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("received signal %s; stopping after the current tick", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    interval = args.interval if args.interval is not None else float(settings.reminder_dispatch_interval_seconds)
    run_workers(dispatcher, workers=args.workers, interval_seconds=interval, stop_event=stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
