# bloom/tasks/fulfillment.py
from bloom.celery_worker import celery_app
from bloom.data.database import SessionLocal
from bloom.services.delivery_resolver import DeliveryResolver
from bloom.services.florist_client import FloristClient
from bloom.services.lock_service import LockService
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.services.payments import get_gateway
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


def _orchestrator(db) -> OrderOrchestrator:
    florist = FloristClient()
    return OrderOrchestrator(
        db=db,
        resolver=DeliveryResolver(florist),
        gateway=get_gateway(),
        florist=florist,
        lock_service=LockService(),
    )


@celery_app.task(name="bloom.tasks.fulfillment.retry_fulfillments_task")
def retry_fulfillments_task():
    db = SessionLocal()
    try:
        count = _orchestrator(db).retry_due_fulfillments()
        logger.info(f"Re-submitted {count} orders to fulfillment")
        return count
    finally:
        db.close()


@celery_app.task(name="bloom.tasks.fulfillment.poll_deliveries_task")
def poll_deliveries_task():
    db = SessionLocal()
    try:
        count = _orchestrator(db).poll_deliveries()
        logger.info(f"{count} orders reported delivered")
        return count
    finally:
        db.close()
