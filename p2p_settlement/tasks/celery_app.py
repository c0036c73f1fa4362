"""
Celery application configuration.

Queue notifications are delivered by Celery workers so request handlers
and the queue engine never block on Telegram.
"""

from celery import Celery

from p2p_settlement.config import settings

celery_app = Celery(
    "p2p_settlement",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# Auto-discover tasks in the tasks package
celery_app.autodiscover_tasks(["p2p_settlement.tasks"])
