# authstate/storage/cache.py
from __future__ import annotations
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple
import threading, time

_MISSING = object()


class TTLCache:
    """
    Bounded, process-local cache whose entries expire `ttl` seconds after they
    were stored. When full, the least recently written entry is evicted.
    """

    def __init__(self, ttl: float = 300.0, maxsize: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.maxsize = maxsize
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            item = self._data.get(key, _MISSING)
            if item is _MISSING:
                self.misses += 1
                return default
            stored_at, value = item
            if self._clock() - stored_at >= self.ttl:
                del self._data[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.maxsize <= 0:
            return
        with self._lock:
            self._data.pop(key, None)
            self._data[key] = (self._clock(), value)
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._data.pop(key, None)

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._data if predicate(k)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._data)


class NullCache:
    """Drop-in replacement that never stores anything."""

    hits = 0
    misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        return default

    def set(self, key: Hashable, value: Any) -> None:
        pass

    def invalidate(self, key: Hashable) -> None:
        pass

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        return 0

    def clear(self) -> None:
        pass

    def __contains__(self, key: Hashable) -> bool:
        return False

    def __len__(self) -> int:
        return 0


def make_cache(ttl: float, maxsize: int, clock: Optional[Callable[[], float]] = None):
    if ttl <= 0 or maxsize <= 0:
        return NullCache()
    return TTLCache(ttl=ttl, maxsize=maxsize, clock=clock or time.monotonic)
