# freight_intake/celery_app.py

import logging

from celery import Celery
from celery.signals import task_failure

from freight_intake.config import settings

logger = logging.getLogger(__name__)

celery = Celery(
    "freight_intake",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery.conf.broker_connection_retry_on_startup = True

celery.conf.task_default_queue = "freight_intake"
celery.conf.task_routes = {
    "freight_intake.tasks.*": {"queue": "freight_intake"},
}


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, args=None, kwargs=None, **kw):
    """Log tasks that failed for good (after retries)."""
    logger.error(
        f"Task {sender.name if sender else 'unknown'} [{task_id or 'N/A'}] failed: {exception!r} "
        f"args={args or []} kwargs={kwargs or {}}"
    )
