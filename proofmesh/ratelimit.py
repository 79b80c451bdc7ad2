"""Per-client rolling-window admission control."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from .config import RateLimitConfig, RateLimitsConfig
from .errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class Bucket:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed window per key, opened by the key's first request.

    The bucket map is only trimmed by :meth:`sweep`.
    """

    def __init__(
        self, limit: int, window_s: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        if limit <= 0 or window_s <= 0:
            raise ValueError("limit and window must be positive")
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._buckets: dict[str, Bucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, conf: RateLimitConfig, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        return cls(conf.limit, conf.window_s, clock=clock)

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or now > bucket.reset_at:
                self._buckets[key] = Bucket(count=1, reset_at=now + self.window_s)
                return True
            bucket.count += 1
            return bucket.count <= self.limit

    def retry_after(self, key: str) -> float:
        with self._lock:
            bucket = self._buckets.get(key)
        if bucket is None:
            return 0.0
        return max(0.0, bucket.reset_at - self._clock())

    def sweep(self) -> int:
        """Drop expired buckets; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, b in self._buckets.items() if now > b.reset_at]
            for key in expired:
                del self._buckets[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._buckets)


def _strip_port(value: str) -> str:
    value = value.strip()
    if value.startswith("["):
        end = value.find("]")
        return value[1:end] if end != -1 else value[1:]
    try:
        ipaddress.ip_address(value)
        return value
    except ValueError:
        pass
    host, sep, port = value.rpartition(":")
    if sep and port.isdigit() and ":" not in host:
        return host
    return value


def client_key(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    """Client identity: first ``X-Forwarded-For`` hop, else the peer address, without port."""
    forwarded = None
    for name, value in headers.items():
        if name.lower() == "x-forwarded-for":
            forwarded = value
            break
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return _strip_port(first)
    return _strip_port(remote_addr or "")


class RateLimiters:
    """The two route-level limiters the platform applies."""

    def __init__(
        self, config: Optional[RateLimitsConfig] = None, clock: Callable[[], float] = time.monotonic
    ) -> None:
        config = config or RateLimitsConfig()
        self.search = RateLimiter.from_config(config.search, clock=clock)
        self.batch_resolution = RateLimiter.from_config(config.batch_resolution, clock=clock)

    def admit(self, limiter: RateLimiter, key: str) -> None:
        if not limiter.allow(key):
            retry_after = limiter.retry_after(key)
            logger.warning(f"Rate limit exceeded for {key}; retry in {retry_after:.0f}s")
            raise RateLimited(f"rate limit exceeded for {key}", retry_after=retry_after)

    def admit_search(self, headers: Mapping[str, str], remote_addr: Optional[str] = None) -> None:
        self.admit(self.search, client_key(headers, remote_addr))

    def admit_batch_resolution(self, headers: Mapping[str, str], remote_addr: Optional[str] = None) -> None:
        self.admit(self.batch_resolution, client_key(headers, remote_addr))

    def sweep(self) -> int:
        return self.search.sweep() + self.batch_resolution.sweep()


__all__ = ["Bucket", "RateLimiter", "RateLimiters", "client_key"]
