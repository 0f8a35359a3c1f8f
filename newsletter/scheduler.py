"""
APScheduler Background Jobs

Optional embedded delivery worker: drains the delivery queue on an interval
inside the API process. Deployments running `python -m newsletter.worker`
leave EMBEDDED_WORKER_INTERVAL_SECONDS at 0.
"""

from typing import Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from newsletter.config import settings
from newsletter.services.delivery_worker import DeliveryWorker
from newsletter.services.email_client import build_email_client
from newsletter.store.base import Store

logger = structlog.get_logger(__name__)


def run_delivery_drain(worker: DeliveryWorker):
    """
    Wrapper function for the scheduled delivery drain.

    Processes every eligible task, then returns until the next tick.
    """
    try:
        processed = worker.drain()
        if processed:
            logger.info("delivery_drain_completed", processed=processed)
    except Exception as e:
        logger.error("delivery_drain_crashed", error=str(e), exc_info=True)


def start_scheduler(store: Store, environment: str = "production") -> Optional[BackgroundScheduler]:
    """
    Start background scheduler with the delivery drain job.

    Args:
        store: Store shared with the request handlers
        environment: Current environment (skip scheduler in testing)

    Returns:
        BackgroundScheduler instance, or None when the embedded worker is disabled
    """
    interval = settings.embedded_worker_interval_seconds

    if environment == "testing" or interval <= 0:
        logger.info("scheduler_skipped", environment=environment, interval=interval)
        return None

    scheduler = BackgroundScheduler(timezone="UTC")
    worker = DeliveryWorker(store=store, email_client=build_email_client())

    scheduler.add_job(
        run_delivery_drain,
        trigger=IntervalTrigger(seconds=interval),
        args=[worker],
        id="delivery_queue_drain",
        name="Newsletter Delivery Queue Drain",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info("job_registered", job="delivery_queue_drain", interval_seconds=interval)

    scheduler.start()
    logger.info("scheduler_started", jobs=["delivery_queue_drain"])

    return scheduler


def stop_scheduler(scheduler: Optional[BackgroundScheduler]):
    """
    Stop background scheduler.

    Waits for a running drain so an in-flight send completes or times out.
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_delivery_drain",
]
