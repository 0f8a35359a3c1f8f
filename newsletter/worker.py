"""
Delivery Worker Entrypoint

Runs the delivery loop in its own process. Any number of these can run
against the same database.

Usage:
    python -m newsletter.worker

SIGINT/SIGTERM stop the loop after the in-flight send.
"""

import signal
import threading

import structlog

from newsletter.database import build_store, init_db
from newsletter.services.delivery_worker import DeliveryWorker
from newsletter.services.email_client import build_email_client
from newsletter.services.monitoring import init_sentry, setup_logging
from newsletter.store.memory import InMemoryStore

logger = structlog.get_logger()


def main() -> None:
    setup_logging()
    init_sentry(with_fastapi=False)

    init_db()
    store = build_store()
    if isinstance(store, InMemoryStore):
        # A separate process never sees the API's in-memory queue
        logger.warning("worker_using_in_memory_store", hint="set DATABASE_URL")

    email_client = build_email_client()
    worker = DeliveryWorker(store=store, email_client=email_client)

    stop_event = threading.Event()

    def request_stop(signum, frame):
        logger.info("worker_stop_requested", signal=signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    logger.info("worker_ready", store=type(store).__name__)
    try:
        worker.run_until_stopped(stop_event)
    finally:
        email_client.close()


if __name__ == "__main__":
    main()
