# bloom/api/dependencies.py
import hmac

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from bloom.data.database import get_db
from bloom.domain.errors import CheckoutError, QuoteStale
from bloom.services.cache_service import DisplayFeeCache
from bloom.services.cart_service import CartService
from bloom.services.delivery_resolver import DeliveryResolver
from bloom.services.florist_client import FloristClient
from bloom.services.lock_service import LockService
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.services.payments import get_gateway
from bloom.services.payments.port import PaymentGateway
from bloom.services.subscription_scheduler import SubscriptionScheduler
from bloom.utils import settings


def get_florist() -> FloristClient:
    return FloristClient()


def get_fee_cache() -> DisplayFeeCache:
    return DisplayFeeCache()


def get_lock_service() -> LockService:
    return LockService()


def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


def get_resolver(
    florist: FloristClient = Depends(get_florist),
    cache: DisplayFeeCache = Depends(get_fee_cache),
) -> DeliveryResolver:
    return DeliveryResolver(florist, cache)


def get_cart_service(
    db: Session = Depends(get_db),
    florist: FloristClient = Depends(get_florist),
) -> CartService:
    return CartService(db, florist)


def get_orchestrator(
    db: Session = Depends(get_db),
    resolver: DeliveryResolver = Depends(get_resolver),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    florist: FloristClient = Depends(get_florist),
    lock_service: LockService = Depends(get_lock_service),
) -> OrderOrchestrator:
    return OrderOrchestrator(
        db=db,
        resolver=resolver,
        gateway=gateway,
        florist=florist,
        lock_service=lock_service,
    )


def get_scheduler(
    db: Session = Depends(get_db),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> SubscriptionScheduler:
    return SubscriptionScheduler(db, orchestrator)


def require_admin(authorization: str = Header("")):
    expected = settings.ADMIN_API_TOKEN
    token = authorization.removeprefix("Bearer ").strip()
    if not expected or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Operator token required")


def require_webhook_secret(x_webhook_secret: str = Header("")):
    expected = settings.FLORIST_WEBHOOK_SECRET
    if not expected or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


def checkout_http_error(e: CheckoutError) -> HTTPException:
    """Customer-facing translation, upstream detail stays in the logs."""
    if isinstance(e, QuoteStale):
        return HTTPException(
            status_code=e.http_status,
            detail={
                "message": e.public_message,
                "subtotal": str(e.subtotal),
                "delivery_fee": str(e.delivery_fee),
                "tax": str(e.tax),
                "total": str(e.total),
            },
        )
    return HTTPException(status_code=e.http_status, detail=e.public_message)
