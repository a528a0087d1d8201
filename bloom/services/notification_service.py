# bloom/services/notification_service.py
from bloom.celery_worker import celery_app
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


class NotificationService:
    """
    Customer notifications, pushed through Celery so checkout never waits on them.
    """

    @staticmethod
    def send_order_confirmation(order_id: int, email: str, confirmation_id: str):
        send_order_confirmation_task.delay(order_id, email, confirmation_id)


@celery_app.task(name="bloom.services.notification_service.send_order_confirmation_task")
def send_order_confirmation_task(order_id: int, email: str, confirmation_id: str):
    #mail delivery belongs to the account side, we only record the event here
    logger.info(f"[NOTIFICATION] Order {order_id} confirmed as {confirmation_id}, notifying {email}")
    return {"order_id": order_id, "confirmation_id": confirmation_id, "status": "sent"}
