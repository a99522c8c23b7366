from celery import Celery
from celery.schedules import crontab

from backoffice.core.config import settings

celery_app = Celery(
    "backoffice",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "backoffice.tasks.checkout_tasks",
        "backoffice.tasks.inventory_tasks",
        "backoffice.tasks.credit_tasks",
        "backoffice.tasks.plugin_tasks",
    ],
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
    "backoffice.tasks.plugin_tasks.*": {"queue": "webhooks"},
}

celery_app.conf.beat_schedule = {
    "deliver-plugin-events-every-minute": {
        "task": "backoffice.tasks.plugin_tasks.deliver_plugin_events",
        "schedule": crontab(minute="*"),
    },
    "reconcile-inventory-every-5-min": {
        "task": "backoffice.tasks.inventory_tasks.reconcile_inventory",
        "schedule": crontab(minute="*/5"),
    },
    "expire-checkout-sessions-every-5-min": {
        "task": "backoffice.tasks.checkout_tasks.expire_checkout_sessions",
        "schedule": crontab(minute="*/5"),
    },
    "release-expired-cart-holds-every-15-min": {
        "task": "backoffice.tasks.inventory_tasks.release_expired_cart_holds",
        "schedule": crontab(minute="*/15"),
    },
    "expire-credits-daily": {
        "task": "backoffice.tasks.credit_tasks.expire_credits",
        "schedule": crontab(hour=3, minute=0),
    },
}
