# bloom/api/routers/webhooks.py
from fastapi import APIRouter, Depends, HTTPException

from bloom.api.dependencies import get_orchestrator, require_webhook_secret
from bloom.domain.schemas import FulfillmentWebhookIn
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], dependencies=[Depends(require_webhook_secret)])


@router.post("/fulfillment")
def fulfillment_event(
    payload: FulfillmentWebhookIn,
    svc: OrderOrchestrator = Depends(get_orchestrator),
):
    """Delivery status pushed by the florist network."""
    if payload.status.lower() != "delivered":
        logger.info(f"Ignoring fulfillment event {payload.status} for {payload.confirmation_id}")
        return {"status": "ignored"}

    try:
        order = svc.mark_delivered(payload.confirmation_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"status": order.status, "order_id": order.id}
