# bloom/services/lock_service.py
import uuid

import redis
from redis.exceptions import RedisError

from bloom.utils.retry import redis_retry
from bloom.utils.settings import REDIS_URL
from bloom.utils.logging import get_logger

logger = get_logger(__name__)

#LUA compare-and-delete, atomic
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""

#redis runs the script as one uninterruptible step
#nobody can slip in between GET and DEL, so we never drop someone else's lock


class LockService:
    """
    -per idempotency key checkout lock
    -release only by the holder (owner token)
    -TTL so a crashed worker never wedges a key
    """

    def __init__(self, url: str | None = None):
        self.redis = redis.Redis.from_url(
            url or REDIS_URL,
            decode_responses=True,
        )

    @redis_retry()
    def acquire(self, name: str, ttl: int) -> str | None:
        key = f"lock:{name}"
        owner = uuid.uuid4().hex
        logger.info(f"Acquire lock {key}")
        #SET lock:checkout:abc <owner> NX EX 60
        ok = self.redis.set(
            name=key,
            value=owner,
            nx=True, #only if not exists
            ex=ttl, #expires on its own
        )
        return owner if ok else None

    def release(self, name: str, owner: str) -> bool:
        key = f"lock:{name}"
        logger.info(f"Release lock {key}")
        try:
            res = self._release(key, owner)
        except RedisError as e:
            #TTL cleans it up
            logger.warning(f"Failed to release lock {key}: {e}")
            return False
        return bool(res)

    @redis_retry()
    def _release(self, key: str, owner: str):
        return self.redis.eval(_RELEASE_LUA, 1, key, owner)
