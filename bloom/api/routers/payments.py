# bloom/api/routers/payments.py
from fastapi import APIRouter, Depends, HTTPException

from bloom.api.dependencies import get_payment_gateway
from bloom.domain.schemas import PaymentKeyOut
from bloom.services.payments.port import PaymentGateway

router = APIRouter(prefix="/payment", tags=["payment"])


@router.get("/{processor}-key", response_model=PaymentKeyOut)
def payment_key(processor: str, gateway: PaymentGateway = Depends(get_payment_gateway)):
    """Client-side key for tokenizing a card in the browser. Never a secret."""
    if processor != gateway.processor:
        raise HTTPException(status_code=404, detail=f"{processor} is not enabled")
    return {"processor": gateway.processor, **gateway.client_key()}
