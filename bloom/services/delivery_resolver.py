# bloom/services/delivery_resolver.py
import re
from datetime import date
from decimal import Decimal
from typing import Iterable

from requests import RequestException

from bloom.domain.errors import InvalidInput, NotDeliverable, FulfillmentUnavailable
from bloom.domain.types import (
    CartLine,
    DatesAvailable,
    DeliveryQuote,
    LookupFailed,
    NotDeliverableResult,
    PriceCheck,
    ResolveResult,
)
from bloom.services.cache_service import DisplayFeeCache
from bloom.services.florist_client import FloristClient, MalformedResponse
from bloom.utils.settings import DEFAULT_DELIVERY_FEE
from bloom.utils.logging import get_logger

logger = get_logger(__name__)

ZIP_RE = re.compile(r"[0-9]{5}")


def validate_zip(zip_code) -> str:
    #cheap local reject, no round trip for garbage. ASCII digits only, no trimming
    if not isinstance(zip_code, str) or not ZIP_RE.fullmatch(zip_code):
        raise InvalidInput("ZIP code must be exactly 5 digits")
    return zip_code


class DeliveryResolver:
    """
    Single source of truth for "can we deliver, and for how much".
    Only fees returned live by the network for a (zip, date) pair end up in a DeliveryQuote.
    """

    def __init__(self, florist: FloristClient, cache: DisplayFeeCache | None = None):
        self.florist = florist
        self.cache = cache

    def resolve(self, zip_code: str) -> ResolveResult:
        zip_code = validate_zip(zip_code)

        try:
            dates = self.florist.get_delivery_dates(zip_code)
        except (RequestException, MalformedResponse, ValueError) as e:
            #malformed is a network problem, not "not deliverable"
            logger.warning(f"Delivery lookup failed for {zip_code}: {e}")
            return LookupFailed(zip=zip_code, reason="unable to verify delivery, retry")

        available = [d for d in dates if d.available]
        if not available:
            logger.info(f"ZIP {zip_code} has no serviceable dates")
            return NotDeliverableResult(zip=zip_code)

        if self.cache is not None:
            self.cache.store_fee(zip_code, min(d.fee for d in available))

        return DatesAvailable(zip=zip_code, dates=dates)

    def display_fee(self, zip_code: str) -> Decimal:
        zip_code = validate_zip(zip_code)
        cached = self.cache.get_fee(zip_code) if self.cache is not None else None
        return cached if cached is not None else DEFAULT_DELIVERY_FEE

    def quote(self, zip_code: str, delivery_date: date) -> DeliveryQuote:
        result = self.resolve(zip_code)

        if isinstance(result, LookupFailed):
            raise FulfillmentUnavailable(result.reason)
        if isinstance(result, NotDeliverableResult):
            raise NotDeliverable(f"no delivery to {result.zip}")

        for d in result.dates:
            if d.date == delivery_date and d.available:
                return DeliveryQuote.issue(result.zip, delivery_date, d.fee)

        raise NotDeliverable(f"{delivery_date} not available for {result.zip}")

    def price_check(self, lines: Iterable[CartLine], zip_code: str, delivery_date: date) -> PriceCheck:
        """Live re-quote (get-total) used right before charging."""
        zip_code = validate_zip(zip_code)
        products = [
            {"code": line.sku, "price": line.unit_price, "quantity": line.quantity}
            for line in lines
        ]
        return self.florist.get_total(products, zip_code, delivery_date)
