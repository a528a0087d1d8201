# bloom/celery_worker.py
from celery import Celery
from celery.schedules import crontab

from bloom.utils.settings import CELERY_BROKER_URL, CELERY_RESULT_BACKEND

celery_app = Celery(
    "bloom",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

#tasks live outside this module, register them explicitly
celery_app.conf.imports = (
    "bloom.tasks.expire",
    "bloom.tasks.fulfillment",
    "bloom.tasks.subscriptions",
    "bloom.services.notification_service",
)

celery_app.conf.beat_schedule = {
    "expire-carts-every-minute": {
        "task": "bloom.tasks.expire.expire_carts_task",
        "schedule": 60.0,
    },
    "expire-pending-orders-every-minute": {
        "task": "bloom.tasks.expire.expire_pending_orders_task",
        "schedule": 60.0,
    },
    "retry-fulfillments-every-minute": {
        "task": "bloom.tasks.fulfillment.retry_fulfillments_task",
        "schedule": 60.0,
    },
    "poll-deliveries-every-15-minutes": {
        "task": "bloom.tasks.fulfillment.poll_deliveries_task",
        "schedule": 15 * 60.0,
    },
    "tick-subscriptions-hourly": {
        "task": "bloom.tasks.subscriptions.tick_subscriptions_task",
        "schedule": crontab(minute=5),
    },
}

celery_app.conf.timezone = "UTC"
