# bloom/api/routers/orders.py
from fastapi import APIRouter, Depends, HTTPException, Query

from bloom.api.dependencies import get_orchestrator
from bloom.domain.schemas import OrderOut
from bloom.services.order_orchestrator import OrderOrchestrator

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/lookup", response_model=OrderOut)
def lookup_order(
    confirmation_id: str = Query(...),
    email: str = Query(...),
    svc: OrderOrchestrator = Depends(get_orchestrator),
):
    """Guest lookup, confirmation number + email."""
    try:
        return svc.lookup(confirmation_id, email)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    user_id: str | None = Query(None),
    svc: OrderOrchestrator = Depends(get_orchestrator),
):
    try:
        return svc.get_order(order_id, user_id)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
