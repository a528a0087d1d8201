# bloom/tasks/subscriptions.py
from bloom.celery_worker import celery_app
from bloom.data.database import SessionLocal
from bloom.services.delivery_resolver import DeliveryResolver
from bloom.services.florist_client import FloristClient
from bloom.services.lock_service import LockService
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.services.payments import get_gateway
from bloom.services.subscription_scheduler import SubscriptionScheduler
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="bloom.tasks.subscriptions.tick_subscriptions_task")
def tick_subscriptions_task():
    logger.info("Subscription tick started")

    db = SessionLocal()
    try:
        florist = FloristClient()
        orchestrator = OrderOrchestrator(
            db=db,
            resolver=DeliveryResolver(florist),
            gateway=get_gateway(),
            florist=florist,
            lock_service=LockService(),
        )
        return SubscriptionScheduler(db, orchestrator).tick()
    finally:
        db.close()
