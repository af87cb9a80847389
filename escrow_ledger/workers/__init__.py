import asyncio

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from escrow_ledger.core.config import settings
from escrow_ledger.core.logging_config import setup_logging

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return a shared event loop for all Celery worker tasks.

    All async tasks must use the same loop to avoid 'Future attached to
    a different loop' errors caused by the shared asyncpg connection pool.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop

celery_app = Celery(
    "escrow_ledger_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # In-flight sweeps finish on warm shutdown; an interrupted one is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "release-due-transactions": {
            "task": "release_due_transactions",
            "schedule": float(settings.release_sweep_interval_seconds),
        },
        "archive-settled-transactions-daily": {
            "task": "archive_settled_transactions",
            "schedule": crontab(minute=15, hour=3),
        },
    },
)

@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    setup_logging()


# Import tasks so they are registered with the celery app
import escrow_ledger.workers.release_sweep  # noqa: F401, E402
