# bloom/services/cache_service.py
from decimal import Decimal

import redis
from redis.exceptions import RedisError

from bloom.utils.retry import redis_retry
from bloom.utils.settings import REDIS_URL, DELIVERY_DATES_CACHE_TTL_SECONDS
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


class DisplayFeeCache:
    """
    Last seen delivery fee per ZIP, shown while the live lookup is in flight.
    Display only - nothing read from here may price an order.
    """

    def __init__(self, url: str | None = None, ttl: int = DELIVERY_DATES_CACHE_TTL_SECONDS):
        self.redis = redis.Redis.from_url(url or REDIS_URL, decode_responses=True)
        self.ttl = ttl

    @redis_retry()
    def _get(self, key: str) -> str | None:
        return self.redis.get(key)

    @redis_retry()
    def _set(self, key: str, value: str) -> None:
        self.redis.set(name=key, value=value, ex=self.ttl)

    def get_fee(self, zip_code: str) -> Decimal | None:
        try:
            value = self._get(f"delivery-fee:{zip_code}")
        except RedisError as e:
            logger.warning(f"Display fee cache read failed for {zip_code}: {e}")
            return None
        return Decimal(value) if value is not None else None

    def store_fee(self, zip_code: str, fee: Decimal) -> None:
        try:
            self._set(f"delivery-fee:{zip_code}", str(fee))
        except RedisError as e:
            logger.warning(f"Display fee cache write failed for {zip_code}: {e}")
