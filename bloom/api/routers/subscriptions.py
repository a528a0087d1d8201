# bloom/api/routers/subscriptions.py
from fastapi import APIRouter, Depends, HTTPException, Query

from bloom.api.dependencies import checkout_http_error, get_scheduler
from bloom.domain.errors import CheckoutError
from bloom.domain.schemas import (
    PortalSessionIn,
    PortalSessionOut,
    SubscriptionCreate,
    SubscriptionOut,
)
from bloom.services.subscription_scheduler import SubscriptionScheduler

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _run(action, *args, **kwargs):
    #shared error mapping for owner actions
    try:
        return action(*args, **kwargs)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CheckoutError as e:
        raise checkout_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/", response_model=SubscriptionOut, status_code=201)
def create_subscription(
    payload: SubscriptionCreate,
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.create_subscription, payload)


@router.get("/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(
    subscription_id: int,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.get_subscription, subscription_id, user_id)


@router.post("/{subscription_id}/pause", response_model=SubscriptionOut)
def pause(
    subscription_id: int,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.pause, subscription_id, user_id)


@router.post("/{subscription_id}/resume", response_model=SubscriptionOut)
def resume(
    subscription_id: int,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.resume, subscription_id, user_id)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
def cancel(
    subscription_id: int,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.cancel, subscription_id, user_id)


@router.post("/{subscription_id}/portal-session", response_model=PortalSessionOut)
def create_portal_session(
    subscription_id: int,
    payload: PortalSessionIn,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    """Processor-hosted page where the owner updates the stored card."""
    url = _run(svc.create_portal_session, subscription_id, payload.return_url, user_id)
    return {"url": url}


@router.post("/deliveries/{delivery_id}/skip", response_model=SubscriptionOut)
def skip_delivery(
    delivery_id: int,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.skip, delivery_id, user_id)


@router.post("/deliveries/{delivery_id}/retry", response_model=SubscriptionOut)
def retry_delivery(
    delivery_id: int,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.retry_delivery, delivery_id, user_id)


@router.post("/deliveries/{delivery_id}/abandon", response_model=SubscriptionOut)
def abandon_delivery(
    delivery_id: int,
    user_id: str = Query(...),
    svc: SubscriptionScheduler = Depends(get_scheduler),
):
    return _run(svc.abandon_delivery, delivery_id, user_id)
