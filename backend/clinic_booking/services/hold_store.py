"""
Key-value stores that can back slot holds. Store failures are raised as
StoreUnavailable, never reported as a missing key.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from redis import Redis
from redis.exceptions import RedisError

from ..errors import StoreUnavailable


class HoldStore(Protocol):
    def create_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        ...

    def delete(self, key: str, expected: Optional[str] = None) -> bool:
        ...

    def ping(self) -> bool:
        ...


# Deletes KEYS[1] only while it still holds ARGV[1].
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def _text(value) -> Optional[str]:
    return value.decode() if isinstance(value, bytes) else value


@contextmanager
def _redis_errors():
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailable(f"Hold store unreachable: {exc}") from exc


class RedisHoldStore:
    """Holds kept as plain Redis strings with native expiry."""

    def __init__(self, redis: Redis):
        self.redis = redis
        self._compare_and_delete = redis.register_script(_COMPARE_AND_DELETE)

    @classmethod
    def from_url(cls, url: str) -> "RedisHoldStore":
        return cls(Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        ))

    def create_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with _redis_errors():
            return bool(self.redis.set(key, value, nx=True, ex=ttl_seconds))

    def get(self, key: str) -> Optional[str]:
        with _redis_errors():
            return _text(self.redis.get(key))

    def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        with _redis_errors():
            return [_text(v) for v in self.redis.mget(list(keys))]

    def delete(self, key: str, expected: Optional[str] = None) -> bool:
        with _redis_errors():
            if expected is None:
                return bool(self.redis.delete(key))
            return bool(self._compare_and_delete(keys=[key], args=[expected]))

    def ping(self) -> bool:
        with _redis_errors():
            return bool(self.redis.ping())


class InMemoryHoldStore:
    """
    Single-process store for local runs and tests.

    ``clock`` returns monotonic seconds; inject a fake one to move time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def create_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self.clock() + ttl_seconds)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            return [self._live(k) for k in keys]

    def delete(self, key: str, expected: Optional[str] = None) -> bool:
        with self._lock:
            current = self._live(key)
            if current is None or (expected is not None and current != expected):
                return False
            del self._data[key]
            return True

    def ping(self) -> bool:
        return True
