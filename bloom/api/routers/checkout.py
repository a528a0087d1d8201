# bloom/api/routers/checkout.py
from datetime import date

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from bloom.api.dependencies import (
    checkout_http_error,
    get_cart_service,
    get_orchestrator,
    get_resolver,
)
from bloom.domain import status as st
from bloom.domain.errors import CheckoutError
from bloom.domain.schemas import OrderOut, PlaceOrderIn, TotalOut
from bloom.domain.types import DeliveryQuote, PaymentToken
from bloom.services.cart_service import CartService
from bloom.services.delivery_resolver import DeliveryResolver
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.utils.clock import as_utc
from bloom.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.get("/get-total", response_model=TotalOut)
def get_total(
    session_id: str = Query(...),
    zip: str = Query(...),
    delivery_date: date = Query(..., alias="date"),
    carts: CartService = Depends(get_cart_service),
    resolver: DeliveryResolver = Depends(get_resolver),
):
    cart = carts.snapshot(session_id)
    if cart.is_empty:
        raise HTTPException(status_code=400, detail="Cart is empty")

    try:
        check = resolver.price_check(cart.lines, zip, delivery_date)
    except CheckoutError as e:
        raise checkout_http_error(e)

    return {
        "subtotal": check.subtotal,
        "delivery": check.delivery_fee,
        "tax": check.tax,
        "total": check.subtotal + check.delivery_fee + check.tax,
    }


@router.post("/place-order", response_model=OrderOut, status_code=201)
def place_order(
    payload: PlaceOrderIn,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
    carts: CartService = Depends(get_cart_service),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """
    Cart + quote + single-use token -> Order.
    Same Idempotency-Key returns the same Order.
    """
    quote = DeliveryQuote(
        zip=payload.quote.zip,
        date=payload.quote.date,
        fee=payload.quote.fee,
        quoted_at=as_utc(payload.quote.quoted_at),
        expires_at=as_utc(payload.quote.expires_at),
    )
    token = PaymentToken(value=payload.payment.token, processor=payload.payment.processor)

    try:
        order = orchestrator.place_order(
            cart=carts.snapshot(payload.session_id),
            quote=quote,
            payment=token,
            recipient=payload.recipient,
            sender=payload.sender,
            idempotency_key=idempotency_key,
            card_message=payload.card.render(),
            special_instructions=payload.special_instructions,
            user_id=payload.user_id,
        )
    except CheckoutError as e:
        raise checkout_http_error(e)

    if payload.client_total is not None and payload.client_total != order.total:
        logger.info(f"Order {order.id}: client displayed {payload.client_total}, charged {order.total}")

    if order.status in (st.PROCESSING, st.CONFIRMED):
        #paid, the cart has done its job
        carts.destroy(payload.session_id)

    return order
