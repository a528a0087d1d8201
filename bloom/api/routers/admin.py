# bloom/api/routers/admin.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from bloom.api.dependencies import checkout_http_error, get_orchestrator, require_admin
from bloom.domain.errors import CheckoutError
from bloom.domain.schemas import OrderOut, ReconciliationOut, RefundIn, ResolveChargeIn
from bloom.services.order_orchestrator import OrderOrchestrator

router = APIRouter(prefix="/admin/orders", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/reconciliation", response_model=List[ReconciliationOut])
def reconciliation_queue(svc: OrderOrchestrator = Depends(get_orchestrator)):
    """Charged orders the network never confirmed, waiting for a human decision."""
    return svc.list_reconciliation()


@router.post("/{order_id}/retry-fulfillment", response_model=OrderOut)
def retry_fulfillment(order_id: int, svc: OrderOrchestrator = Depends(get_orchestrator)):
    try:
        return svc.operator_retry_fulfillment(order_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{order_id}/refund", response_model=OrderOut)
def refund(order_id: int, payload: RefundIn, svc: OrderOrchestrator = Depends(get_orchestrator)):
    try:
        return svc.operator_refund(order_id, payload.reason)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CheckoutError as e:
        raise checkout_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{order_id}/resolve-charge", response_model=OrderOut)
def resolve_charge(order_id: int, payload: ResolveChargeIn, svc: OrderOrchestrator = Depends(get_orchestrator)):
    """Pending order whose charge outcome was never learned, checked by hand at the processor."""
    try:
        return svc.operator_resolve_charge(order_id, payload.charge_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CheckoutError as e:
        raise checkout_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
