"""
Fixed-window rate limiter keyed by client identity.

Counting is separated from storage: RateLimiter owns the window algorithm,
a RateLimitStore owns the buckets. InMemoryRateLimitStore serves a single
instance (capped LRU, expired buckets purged); RedisRateLimitStore shares
counters across instances.

Requests are counted in two phases - reserve() before the handler runs,
commit() once the response status is known - so policies can decide not
to count failed or successful requests.
"""
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "relate:ratelimit:"

DEFAULT_POLICY = "default"
SEND_POLICY = "send"
AUTH_POLICY = "auth"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_ms: int
    max_requests: int
    message: str = "Too many requests, please try again later"
    skip_failed_requests: bool = False
    skip_successful_requests: bool = False


@dataclass
class RateLimitBucket:
    count: int
    reset_at: int  # epoch ms


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch ms

    def headers(self) -> dict[str, str]:
        """Standard X-RateLimit-* headers. Reset is reported in epoch seconds."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at / 1000)),
        }


@dataclass
class RateLimitReservation:
    """Handle returned by reserve(); pass it to commit() exactly once."""
    key: str
    policy: RateLimitPolicy
    result: RateLimitResult
    tracked: bool = True
    committed: bool = False


class RateLimitStore(Protocol):
    async def increment(self, key: str, window_ms: int, now: int) -> RateLimitBucket: ...

    async def release(self, key: str, reset_at: int, now: int) -> Optional[RateLimitBucket]: ...

    async def peek(self, key: str, now: int) -> Optional[RateLimitBucket]: ...


class InMemoryRateLimitStore:
    """
    Process-local buckets. Safe without a lock on a single event loop
    (no awaits between read and write). Bounded by max_entries.
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max(1, max_entries)
        self._buckets: "OrderedDict[str, RateLimitBucket]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._buckets)

    def _purge_expired(self, now: int) -> None:
        expired = [k for k, b in self._buckets.items() if b.reset_at <= now]
        for key in expired:
            del self._buckets[key]

    def _make_room(self, now: int) -> None:
        if len(self._buckets) < self.max_entries:
            return
        self._purge_expired(now)
        while len(self._buckets) >= self.max_entries:
            evicted, _ = self._buckets.popitem(last=False)
            logger.debug("Rate limit bucket evicted: %s", evicted)

    async def increment(self, key: str, window_ms: int, now: int) -> RateLimitBucket:
        bucket = self._buckets.get(key)
        if bucket is None or now >= bucket.reset_at:
            if bucket is None:
                self._make_room(now)
            # Replace, never decrement into a new window
            bucket = RateLimitBucket(count=0, reset_at=now + window_ms)
            self._buckets[key] = bucket
        self._buckets.move_to_end(key)
        bucket.count += 1
        return RateLimitBucket(count=bucket.count, reset_at=bucket.reset_at)

    async def release(self, key: str, reset_at: int, now: int) -> Optional[RateLimitBucket]:
        bucket = self._buckets.get(key)
        if bucket is None or bucket.reset_at != reset_at or now >= bucket.reset_at:
            return None
        bucket.count = max(0, bucket.count - 1)
        return RateLimitBucket(count=bucket.count, reset_at=bucket.reset_at)

    async def peek(self, key: str, now: int) -> Optional[RateLimitBucket]:
        bucket = self._buckets.get(key)
        if bucket is None or now >= bucket.reset_at:
            return None
        return RateLimitBucket(count=bucket.count, reset_at=bucket.reset_at)


class RedisRateLimitStore:
    """Counters shared across instances. Keys expire with their window."""

    def __init__(self, redis=None, prefix: str = REDIS_KEY_PREFIX):
        self._redis = redis
        self.prefix = prefix

    async def _client(self):
        if self._redis is None:
            from src.utils.redis_client import get_redis
            self._redis = await get_redis()
        return self._redis

    async def increment(self, key: str, window_ms: int, now: int) -> RateLimitBucket:
        redis = await self._client()
        redis_key = f"{self.prefix}{key}"

        pipe = redis.pipeline()
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        count, ttl_ms = await pipe.execute()

        # First hit of a window (or a key that lost its expiry)
        if ttl_ms is None or int(ttl_ms) < 0:
            await redis.pexpire(redis_key, window_ms)
            ttl_ms = window_ms

        return RateLimitBucket(count=int(count), reset_at=now + int(ttl_ms))

    async def release(self, key: str, reset_at: int, now: int) -> Optional[RateLimitBucket]:
        if now >= reset_at:
            return None
        redis = await self._client()
        redis_key = f"{self.prefix}{key}"
        count = int(await redis.decr(redis_key))
        if count < 0:
            count = int(await redis.incr(redis_key))
        return RateLimitBucket(count=count, reset_at=reset_at)

    async def peek(self, key: str, now: int) -> Optional[RateLimitBucket]:
        redis = await self._client()
        redis_key = f"{self.prefix}{key}"
        pipe = redis.pipeline()
        pipe.get(redis_key)
        pipe.pttl(redis_key)
        raw, ttl_ms = await pipe.execute()
        if raw is None or ttl_ms is None or int(ttl_ms) < 0:
            return None
        return RateLimitBucket(count=int(raw), reset_at=now + int(ttl_ms))


def should_count_status(policy: RateLimitPolicy, status_code: int) -> bool:
    """Whether a finished request still counts against the window."""
    if policy.skip_failed_requests and status_code >= 400:
        return False
    if policy.skip_successful_requests and status_code < 400:
        return False
    return True


class RateLimiter:
    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock or _now_ms

    @staticmethod
    def _key(identity: str, policy: RateLimitPolicy) -> str:
        return f"{policy.name}:{identity or 'unknown'}"

    @staticmethod
    def _result(policy: RateLimitPolicy, bucket: RateLimitBucket) -> RateLimitResult:
        return RateLimitResult(
            allowed=bucket.count <= policy.max_requests,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - bucket.count),
            reset_at=bucket.reset_at,
        )

    async def reserve(self, identity: str, policy: RateLimitPolicy) -> RateLimitReservation:
        """Count one request now. The caller decides later whether it sticks."""
        key = self._key(identity, policy)
        now = self._clock()
        try:
            bucket = await self.store.increment(key, policy.window_ms, now)
        except Exception as e:
            # Store failure should not block traffic - allow through
            logger.warning("Rate limiter store error: %s. Allowing request.", str(e))
            return RateLimitReservation(
                key=key,
                policy=policy,
                result=RateLimitResult(
                    allowed=True,
                    limit=policy.max_requests,
                    remaining=policy.max_requests,
                    reset_at=now + policy.window_ms,
                ),
                tracked=False,
            )

        result = self._result(policy, bucket)
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded: key=%s count=%d limit=%d",
                key, bucket.count, policy.max_requests,
                extra={"policy": policy.name},
            )
        return RateLimitReservation(key=key, policy=policy, result=result)

    async def commit(self, reservation: RateLimitReservation, should_count: bool) -> RateLimitResult:
        """
        Finalize a reservation. should_count=False gives the slot back,
        provided the window it was taken from is still open.
        """
        if reservation.committed:
            return reservation.result
        reservation.committed = True

        if should_count or not reservation.tracked or not reservation.result.allowed:
            return reservation.result

        try:
            bucket = await self.store.release(
                reservation.key, reservation.result.reset_at, self._clock(),
            )
        except Exception as e:
            logger.warning("Rate limiter release failed: %s", str(e))
            return reservation.result

        if bucket is None:
            return reservation.result
        reservation.result = self._result(reservation.policy, bucket)
        return reservation.result

    async def allow(self, identity: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Single-phase check: the request always counts."""
        reservation = await self.reserve(identity, policy)
        return await self.commit(reservation, should_count=True)

    async def peek(self, identity: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Current standing for identity without counting a request."""
        now = self._clock()
        try:
            bucket = await self.store.peek(self._key(identity, policy), now)
        except Exception as e:
            logger.warning("Rate limiter peek failed: %s", str(e))
            bucket = None
        if bucket is None:
            bucket = RateLimitBucket(count=0, reset_at=now + policy.window_ms)
        return self._result(policy, bucket)


def build_policies(settings) -> dict[str, RateLimitPolicy]:
    """Named policies: broad default, medium outbound send, strict auth."""
    return {
        DEFAULT_POLICY: RateLimitPolicy(
            name=DEFAULT_POLICY,
            window_ms=settings.rate_limit_default_window_ms,
            max_requests=settings.rate_limit_default_max,
            message="Too many requests. Please try again later.",
        ),
        SEND_POLICY: RateLimitPolicy(
            name=SEND_POLICY,
            window_ms=settings.rate_limit_send_window_ms,
            max_requests=settings.rate_limit_send_max,
            message="Too many emails sent. Please try again later.",
        ),
        AUTH_POLICY: RateLimitPolicy(
            name=AUTH_POLICY,
            window_ms=settings.rate_limit_auth_window_ms,
            max_requests=settings.rate_limit_auth_max,
            message="Too many failed authentication attempts. Please try again later.",
            skip_successful_requests=True,
        ),
    }


def build_rate_limit_store(settings) -> RateLimitStore:
    if settings.rate_limit_backend == "redis":
        return RedisRateLimitStore()
    return InMemoryRateLimitStore(max_entries=settings.rate_limit_max_entries)


@lru_cache()
def get_rate_limiter() -> RateLimiter:
    from src.config import get_settings
    return RateLimiter(build_rate_limit_store(get_settings()))
