from __future__ import annotations

import math
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from ai_proxy.errors import ProxyError, ProxyErrorCode
from ai_proxy.runtime.bounded_maps import BoundedTimestampWindows

_redis_from_url: Any | None

try:
    from redis.asyncio import from_url as _redis_from_url
except ImportError:  # pragma: no cover - optional dependency.
    _redis_from_url = None

if TYPE_CHECKING:
    import logging


@dataclass(slots=True, frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("Rate limit must allow at least one request per window.")
        if self.window_seconds <= 0:
            raise ValueError("Rate limit window must be positive.")


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: float = 0.0
    rule: RateLimitRule | None = None


class RateLimitStore(Protocol):
    async def hit(
        self, key: str, rules: Sequence[RateLimitRule], now: float
    ) -> RateLimitDecision: ...

    async def close(self) -> None: ...


class InMemoryRateLimitStore:
    """Sliding-window counters kept in process memory.

    Check and record happen under one lock so concurrent requests from the
    same key cannot both pass the last free slot.
    """

    def __init__(self, *, max_keys: int, max_entries_per_key: int) -> None:
        self._lock = threading.Lock()
        self._windows: BoundedTimestampWindows[str] = BoundedTimestampWindows(
            max_keys=max_keys,
            max_entries_per_key=max_entries_per_key,
        )

    async def hit(
        self, key: str, rules: Sequence[RateLimitRule], now: float
    ) -> RateLimitDecision:
        horizon = max(rule.window_seconds for rule in rules)
        with self._lock:
            timestamps = list(self._windows.window(key, now=now, horizon_seconds=horizon))
            for rule in rules:
                cutoff = now - rule.window_seconds
                recent = [stamp for stamp in timestamps if stamp > cutoff]
                if len(recent) >= rule.limit:
                    freed_at = recent[len(recent) - rule.limit] + rule.window_seconds
                    return RateLimitDecision(
                        allowed=False,
                        retry_after_seconds=max(0.0, freed_at - now),
                        rule=rule,
                    )
            self._windows.append(key, now)
        return RateLimitDecision(allowed=True)

    async def close(self) -> None:
        return None


# Evaluated atomically by Redis, so a check and its insert cannot interleave
# with another caller's check on the same key.
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local member = ARGV[2]
local horizon = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - horizon)
for i = 4, #ARGV, 2 do
  local limit = tonumber(ARGV[i])
  local window = tonumber(ARGV[i + 1])
  local floor = '(' .. tostring(now - window)
  local count = redis.call('ZCOUNT', key, floor, '+inf')
  if count >= limit then
    local entries = redis.call('ZRANGEBYSCORE', key, floor, '+inf', 'WITHSCORES', 'LIMIT', count - limit, 1)
    return {0, tostring(tonumber(entries[2]) + window - now), tostring((i - 4) / 2)}
  end
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(horizon))
return {1, '0', '-1'}
"""


class RedisRateLimitStore:
    def __init__(self, client: Any, *, key_prefix: str = "ai_proxy:ratelimit:") -> None:
        self._client = client
        self._key_prefix = key_prefix

    async def hit(
        self, key: str, rules: Sequence[RateLimitRule], now: float
    ) -> RateLimitDecision:
        horizon = max(rule.window_seconds for rule in rules)
        args: list[str] = [repr(now), uuid.uuid4().hex, repr(horizon)]
        for rule in rules:
            args.extend([str(rule.limit), repr(rule.window_seconds)])
        reply = await self._client.eval(
            _SLIDING_WINDOW_SCRIPT, 1, f"{self._key_prefix}{key}", *args
        )
        allowed, retry_after, rule_index = (_decode(item) for item in reply)
        if int(allowed) == 1:
            return RateLimitDecision(allowed=True)
        return RateLimitDecision(
            allowed=False,
            retry_after_seconds=max(0.0, float(retry_after)),
            rule=rules[int(float(rule_index))],
        )

    async def close(self) -> None:
        close = getattr(self._client, "aclose", None) or getattr(self._client, "close", None)
        if close is not None:
            await close()


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RateLimiter:
    def __init__(
        self,
        *,
        rules: Sequence[RateLimitRule],
        store: RateLimitStore,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if enabled and not rules:
            raise ValueError("At least one rate limit rule is required when enabled.")
        self.rules = tuple(rules)
        self.enabled = enabled
        self._store = store
        self._clock = clock

    async def check(self, key: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(allowed=True)
        return await self._store.hit(key, self.rules, self._clock())

    async def enforce(self, key: str) -> None:
        decision = await self.check(key)
        if decision.allowed:
            return
        retry_after = max(1, math.ceil(decision.retry_after_seconds))
        raise ProxyError(
            ProxyErrorCode.RATE_LIMIT_EXCEEDED,
            f"Rate limit exceeded. Please try again in {retry_after} seconds.",
            retry_after=retry_after,
        )

    async def close(self) -> None:
        await self._store.close()


def build_rate_limiter(
    *,
    rules: Sequence[tuple[int, float]],
    enabled: bool,
    max_tracked_keys: int,
    redis_url: str | None,
    logger: logging.Logger,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    parsed_rules = [RateLimitRule(limit=limit, window_seconds=window) for limit, window in rules]
    store: RateLimitStore
    if redis_url and _redis_from_url is not None:
        store = RedisRateLimitStore(_redis_from_url(redis_url))
        logger.info("rate_limit_store backend=redis rules=%d", len(parsed_rules))
    else:
        if redis_url:
            logger.warning(
                "rate_limit_redis_unavailable reason=%s fallback=in_memory",
                "redis package is not installed",
            )
        store = InMemoryRateLimitStore(
            max_keys=max_tracked_keys,
            max_entries_per_key=max((rule.limit for rule in parsed_rules), default=1),
        )
        logger.info("rate_limit_store backend=memory rules=%d", len(parsed_rules))
    return RateLimiter(rules=parsed_rules, store=store, enabled=enabled, clock=clock)
