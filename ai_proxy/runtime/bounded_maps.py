from __future__ import annotations

from collections import OrderedDict, deque
from collections.abc import ItemsView
from typing import TypeVar

K = TypeVar("K")
V = TypeVar("V")


class _BoundedMap[K, V]:
    """Insertion-ordered map that evicts the least recently written key."""

    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, V] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: K, default: V | None = None) -> V | None:
        return self._data.get(key, default)

    def set(self, key: K, value: V) -> None:
        is_new = key not in self._data
        self._data[key] = value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)

    def items(self) -> ItemsView[K, V]:
        return self._data.items()

    def to_dict(self) -> dict[K, V]:
        return dict(self._data)


class BoundedCounterMap[K]:
    def __init__(self, max_keys: int):
        self._map: _BoundedMap[K, int] = _BoundedMap(max_keys=max_keys)

    def __len__(self) -> int:
        return len(self._map)

    def increment(self, key: K, amount: int = 1) -> int:
        current = self._map.get(key, 0)
        next_value = int(current or 0) + int(amount)
        self._map.set(key, next_value)
        return next_value

    def get(self, key: K, default: int = 0) -> int:
        value = self._map.get(key, default)
        return int(value or 0)

    def to_dict(self) -> dict[K, int]:
        return self._map.to_dict()


class BoundedTimestampWindows[K]:
    """Per-key timestamp deques for sliding-window counting.

    Both the number of tracked keys and the length of each window are bounded,
    so a flood of distinct callers cannot grow memory without limit.
    """

    def __init__(self, *, max_keys: int, max_entries_per_key: int):
        self._max_entries = max(1, int(max_entries_per_key))
        self._map: _BoundedMap[K, deque[float]] = _BoundedMap(max_keys=max_keys)

    def __len__(self) -> int:
        return len(self._map)

    def window(self, key: K, *, now: float, horizon_seconds: float) -> deque[float]:
        """Return the key's timestamps newer than ``now - horizon_seconds``."""
        bucket = self._map.get(key)
        if bucket is None:
            return deque(maxlen=self._max_entries)
        cutoff = now - horizon_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        return bucket

    def append(self, key: K, timestamp: float) -> deque[float]:
        bucket = self._map.get(key)
        if bucket is None:
            bucket = deque(maxlen=self._max_entries)
        bucket.append(timestamp)
        self._map.set(key, bucket)
        return bucket

    def to_dict(self) -> dict[K, list[float]]:
        return {key: list(bucket) for key, bucket in self._map.items()}
