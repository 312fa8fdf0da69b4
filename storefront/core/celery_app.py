from celery import Celery
from celery.schedules import crontab

from storefront.core.config import settings

celery_app = Celery(
    "storefront",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["storefront.tasks.email_tasks", "storefront.tasks.payment_tasks"]
)

# Celery Configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_track_started=True,

    task_time_limit=300,        # Hard limit (5 min)
    task_soft_time_limit=240,   # Soft limit (4 min)

    worker_prefetch_multiplier=4,
    worker_max_tasks_per_child=1000,

    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,  # 1 hour
)

celery_app.conf.task_routes = {
    "storefront.tasks.email_tasks.*": {"queue": "emails"},
}

celery_app.conf.beat_schedule = {
    "reconcile-pending-payments-every-5-min": {
        "task": "storefront.tasks.payment_tasks.reconcile_pending_payments",
        "schedule": crontab(minute="*/5"),
    },
}
