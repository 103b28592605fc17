from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from ai_proxy.errors import ProxyError, ProxyErrorCode
from ai_proxy.gateway.auth import CallerIdentity
from ai_proxy.runtime.bounded_maps import BoundedCounterMap


class UsageStore(Protocol):
    """Accounting backend; the proxy only increments and reads."""

    async def count(self, key: str) -> int: ...

    async def increment(self, key: str) -> int: ...


class InMemoryUsageStore:
    def __init__(self, max_keys: int = 10000) -> None:
        self._lock = threading.Lock()
        self._counters: BoundedCounterMap[str] = BoundedCounterMap(max_keys=max_keys)

    async def count(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key)

    async def increment(self, key: str) -> int:
        with self._lock:
            return self._counters.increment(key)


@dataclass(slots=True, frozen=True)
class UsageStatus:
    allowed: bool
    used: int
    limit: int
    unlimited: bool = False

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class UsagePolicy:
    def __init__(
        self,
        *,
        store: UsageStore,
        enabled: bool,
        max_generations: int,
        unlimited_roles: Iterable[str] = ("admin",),
    ) -> None:
        self.store = store
        self.enabled = enabled
        self.max_generations = max(0, int(max_generations))
        self.unlimited_roles = {role.strip().lower() for role in unlimited_roles if role.strip()}

    def is_unlimited(self, identity: CallerIdentity) -> bool:
        return identity.role is not None and identity.role.lower() in self.unlimited_roles

    async def status(self, identity: CallerIdentity) -> UsageStatus:
        if not self.enabled or self.is_unlimited(identity):
            return UsageStatus(allowed=True, used=0, limit=self.max_generations, unlimited=True)
        used = await self.store.count(identity.usage_key)
        return UsageStatus(
            allowed=used < self.max_generations,
            used=used,
            limit=self.max_generations,
        )

    async def check(self, identity: CallerIdentity) -> UsageStatus:
        """Refuse callers whose recorded successes already reach the limit.

        Nothing is reserved here, so generations that are in flight together
        can each pass and overshoot the limit by their count. Failed
        generations never consume the allowance.
        """
        status = await self.status(identity)
        if not status.allowed:
            raise ProxyError(
                ProxyErrorCode.USAGE_LIMIT_REACHED,
                "You have reached your AI generation limit. "
                "Please contact the administrator for more.",
            )
        return status

    async def record_success(self, identity: CallerIdentity) -> None:
        if not self.enabled or self.is_unlimited(identity):
            return
        await self.store.increment(identity.usage_key)
