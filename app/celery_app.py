from celery import Celery
from celery.schedules import crontab

from app.core.config import REDIS_URL

celery_app = Celery(
    "subscription_backend",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["app.tasks.subscription_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
)

celery_app.conf.beat_schedule = {
    "expire-promo-subscriptions-hourly": {
        "task": "expire_promo_subscriptions",
        "schedule": crontab(minute=0),
    },
}
