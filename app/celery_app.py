from celery import Celery
from celery.schedules import crontab

from app.config import settings
from app.logging import configure_logging

configure_logging()

celery_app = Celery(
    "admissions",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.invitations"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "expire-parent-invitations": {
            "task": "app.tasks.invitations.expire_invitations",
            "schedule": crontab(minute=0),
        },
    },
)
