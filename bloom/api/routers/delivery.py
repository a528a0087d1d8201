# bloom/api/routers/delivery.py
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query

from bloom.api.dependencies import checkout_http_error, get_resolver
from bloom.domain.errors import CheckoutError, NotDeliverable
from bloom.domain.schemas import DeliveryDatesOut, QuoteOut
from bloom.domain.types import LookupFailed, NotDeliverableResult
from bloom.services.delivery_resolver import DeliveryResolver

router = APIRouter(tags=["delivery"])


@router.get("/delivery-dates", response_model=DeliveryDatesOut)
def delivery_dates(
    zip: str = Query(...),
    resolver: DeliveryResolver = Depends(get_resolver),
):
    try:
        result = resolver.resolve(zip)
    except CheckoutError as e:
        raise checkout_http_error(e)

    if isinstance(result, NotDeliverableResult):
        raise HTTPException(status_code=422, detail=NotDeliverable.public_message)
    if isinstance(result, LookupFailed):
        raise HTTPException(status_code=503, detail=result.reason)

    return {
        "zip": result.zip,
        "dates": [{"date": d.date, "fee": d.fee, "available": d.available} for d in result.dates],
        "display_fee": resolver.display_fee(result.zip),
    }


@router.get("/delivery-quote", response_model=QuoteOut)
def delivery_quote(
    zip: str = Query(...),
    delivery_date: date = Query(..., alias="date"),
    resolver: DeliveryResolver = Depends(get_resolver),
):
    try:
        return resolver.quote(zip, delivery_date)
    except CheckoutError as e:
        raise checkout_http_error(e)
