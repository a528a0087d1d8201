# bloom/tasks/expire.py
from bloom.celery_worker import celery_app
from bloom.data.database import SessionLocal
from bloom.services.cart_service import CartService
from bloom.services.delivery_resolver import DeliveryResolver
from bloom.services.florist_client import FloristClient
from bloom.services.lock_service import LockService
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.services.payments import get_gateway
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="bloom.tasks.expire.expire_carts_task")
def expire_carts_task():
    logger.info("Expire carts task started")

    db = SessionLocal()
    try:
        return CartService(db, FloristClient()).expire_carts()
    finally:
        db.close()


@celery_app.task(name="bloom.tasks.expire.expire_pending_orders_task")
def expire_pending_orders_task():
    logger.info("Expire pending orders task started")

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
        return orchestrator.expire_abandoned()
    finally:
        db.close()
