import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import redis
from fastapi import HTTPException, status

from app.core.config import settings

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS_DETAIL = "Too many requests. Please try again later."


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiter(ABC):
    """Fixed-window attempt counters keyed by ``scope:identity``."""

    @abstractmethod
    def hit(self, key: str, limit: int, window_seconds: int) -> ThrottleDecision:
        raise NotImplementedError

    @abstractmethod
    def reset(self) -> None:
        raise NotImplementedError


class InMemoryRateLimiter(RateLimiter):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def hit(self, key: str, limit: int, window_seconds: int) -> ThrottleDecision:
        now = self._clock()
        with self._lock:
            attempts, resets_at = self._windows.get(key, (0, now + window_seconds))
            if resets_at <= now:
                attempts, resets_at = 0, now + window_seconds
            if attempts >= limit:
                return ThrottleDecision(allowed=False, retry_after=max(1, int(resets_at - now)))
            self._windows[key] = (attempts + 1, resets_at)
        return ThrottleDecision(allowed=True)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


class RedisRateLimiter(RateLimiter):
    def __init__(self, redis_url: str, prefix: str = "daycare:throttle") -> None:
        self._client = redis.Redis.from_url(redis_url, socket_connect_timeout=0.2, socket_timeout=0.2)
        self._prefix = prefix

    def hit(self, key: str, limit: int, window_seconds: int) -> ThrottleDecision:
        redis_key = f"{self._prefix}:{key}"
        pipe = self._client.pipeline()
        pipe.incr(redis_key)
        pipe.ttl(redis_key)
        attempts, ttl = pipe.execute()
        if ttl < 0:
            # First hit in the window, or a key left without an expiry.
            self._client.expire(redis_key, window_seconds)
            ttl = window_seconds

        if attempts > limit:
            return ThrottleDecision(allowed=False, retry_after=max(1, ttl))
        return ThrottleDecision(allowed=True)

    def reset(self) -> None:
        keys = list(self._client.scan_iter(match=f"{self._prefix}:*"))
        if keys:
            self._client.delete(*keys)


class FallbackRateLimiter(RateLimiter):
    """Uses Redis while it answers and per-process counters when it does not."""

    def __init__(self, primary: RateLimiter, fallback: RateLimiter) -> None:
        self._primary = primary
        self._fallback = fallback

    def hit(self, key: str, limit: int, window_seconds: int) -> ThrottleDecision:
        try:
            return self._primary.hit(key, limit, window_seconds)
        except redis.RedisError as exc:
            logger.warning("rate_limiter_degraded key=%s message=%s", key, exc)
            return self._fallback.hit(key, limit, window_seconds)

    def reset(self) -> None:
        try:
            self._primary.reset()
        except redis.RedisError as exc:
            logger.warning("rate_limiter_reset_failed message=%s", exc)
        self._fallback.reset()


def build_rate_limiter(backend: str, redis_url: str) -> RateLimiter:
    if backend.strip().lower() == "redis":
        return FallbackRateLimiter(primary=RedisRateLimiter(redis_url), fallback=InMemoryRateLimiter())
    return InMemoryRateLimiter()


rate_limiter: RateLimiter = build_rate_limiter(settings.rate_limit_backend, settings.rate_limit_redis_url)


def throttle(scope: str, identity: str, limit: int, window_seconds: int) -> None:
    decision = rate_limiter.hit(f"{scope}:{identity}", limit, window_seconds)
    if decision.allowed:
        return
    logger.info("rate_limited scope=%s retry_after=%s", scope, decision.retry_after)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=TOO_MANY_REQUESTS_DETAIL,
        headers={"Retry-After": str(decision.retry_after)},
    )
