# bloom/api/routers/carts.py
from fastapi import APIRouter, Depends, HTTPException

from bloom.api.dependencies import checkout_http_error, get_cart_service
from bloom.domain.errors import CheckoutError
from bloom.domain.schemas import CartItemIn, CartOut, QuantityIn
from bloom.services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("/{session_id}", response_model=CartOut)
def get_cart(session_id: str, svc: CartService = Depends(get_cart_service)):
    cart = svc.get_cart(session_id)
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    return cart


@router.post("/{session_id}/items", response_model=CartOut)
def add_item(
    session_id: str,
    payload: CartItemIn,
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.add_item(session_id, payload.sku, payload.quantity)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CheckoutError as e:
        raise checkout_http_error(e)
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{session_id}/items/{sku}", response_model=CartOut)
def update_quantity(
    session_id: str,
    sku: str,
    payload: QuantityIn,
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.update_quantity(session_id, sku, payload.quantity)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{session_id}/items/{sku}", response_model=CartOut)
def remove_item(
    session_id: str,
    sku: str,
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.remove_item(session_id, sku)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/{session_id}", status_code=204)
def destroy_cart(session_id: str, svc: CartService = Depends(get_cart_service)):
    if not svc.destroy(session_id):
        raise HTTPException(status_code=404, detail="Cart not found")
