"""Per-user token bucket kept in Redis so every instance sees the same budget.

Refill and take happen in one WATCH/MULTI transaction on the bucket key; a
concurrent writer aborts the EXEC and the bucket is re-read.
"""

from time import time

import redis

from pogpp.common.config import settings
from pogpp.common.errors import RateLimitExceeded
from pogpp.common.logging import logger
from pogpp.common.metrics import rate_limited_total

BUCKET_TTL_SECONDS = 120


class TokenBucketLimiter:
    """Capacity equals the refill rate: `limit_per_minute` tokens per minute."""

    def __init__(self, rdb: redis.Redis, limit_per_minute: int | None = None, scope: str = "default") -> None:
        self.rdb = rdb
        self.capacity = float(limit_per_minute or settings.rate_limit_per_minute)
        self.scope = scope

    def _key(self, subject: str) -> str:
        return f"tokenbucket:{self.scope}:{subject}"

    def consume(self, subject: str, now: float | None = None) -> float:
        """Take one token for `subject`; return tokens left or raise when empty."""

        key = self._key(subject)
        now = time() if now is None else now
        refill_per_sec = self.capacity / 60.0

        def take(pipe) -> float | None:
            values = pipe.hmget(key, "tokens", "updated_at")
            tokens = float(values[0]) if values[0] is not None else self.capacity
            updated_at = float(values[1]) if values[1] is not None else now
            elapsed = max(0.0, now - updated_at)
            tokens = min(self.capacity, tokens + elapsed * refill_per_sec)
            granted = tokens >= 1.0
            if granted:
                tokens -= 1.0
            pipe.multi()
            pipe.hset(key, mapping={"tokens": tokens, "updated_at": now})
            pipe.expire(key, BUCKET_TTL_SECONDS)
            return tokens if granted else None

        remaining = self.rdb.transaction(take, key, value_from_callable=True)
        if remaining is None:
            rate_limited_total.labels(service=settings.service_name).inc()
            logger.warning("rate limit exceeded scope=%s subject=%s", self.scope, subject)
            raise RateLimitExceeded("rate limit exceeded", scope=self.scope)
        return remaining
