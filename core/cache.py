"""
Response Cache

Short-TTL memoization for read-only, side-effect-free calls whose results
change rarely (symbol and market metadata). Population is single-flight: if
several callers race on the same absent or expired key, exactly one runs the
compute function and the others await its result. That keeps a burst of
callers from stampeding a rate-limited upstream.

Rules:
    - An entry read after its expiry is a miss
    - Writes overwrite unconditionally
    - A failed computation propagates to every waiter of that attempt and
      leaves the key empty (no negative caching)
    - No eviction beyond TTL (one entry per logical call type per connection)

Usage:
    cache = ResponseCache()
    markets = await cache.get_or_compute("markets", 3600, fetch_markets)
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from core.logging import get_logger


def make_key(operation: str, **params: Any) -> str:
    """
    Build a cache key from an operation name and its parameters.

    Example:
        >>> make_key("GET /api/v3/exchangeInfo", symbol="BTCUSDT")
        'GET /api/v3/exchangeInfo|symbol=BTCUSDT'
    """
    if not params:
        return operation
    parts = [f"{name}={params[name]}" for name in sorted(params)]
    return f"{operation}|{'&'.join(parts)}"


class ResponseCache:
    """
    Per-connection TTL cache with single-flight population.

    Attributes:
        hits: Number of reads served from a live entry
        misses: Number of reads that triggered a computation
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0
        self.logger = get_logger(__name__)

    def peek(self, key: str) -> Tuple[bool, Any]:
        """Return (True, value) for a live entry, (False, None) otherwise."""
        entry = self._entries.get(key)
        if entry is None:
            return False, None

        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return False, None

        return True, value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (self._clock() + ttl, value)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or every key when called without arguments."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    async def get_or_compute(
        self,
        key: str,
        ttl: float,
        compute_fn: Callable[[], Awaitable[Any]]
    ) -> Any:
        """
        Return the cached value for `key`, computing it at most once concurrently.

        Args:
            key: Cache key (see make_key)
            ttl: Lifetime of a freshly computed value in seconds
            compute_fn: Coroutine function producing the value

        Returns:
            The cached or freshly computed value

        Raises:
            Whatever compute_fn raised, to every caller awaiting that attempt
        """
        while True:
            found, value = self.peek(key)
            if found:
                self.hits += 1
                return value

            pending = self._inflight.get(key)
            if pending is None:
                break

            self.logger.debug(f"Cache key '{key}' already being computed, awaiting result")
            try:
                # shield: one waiter being cancelled must not cancel the shared attempt
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if pending.cancelled():
                    # The computing caller was cancelled; take over
                    continue
                raise

        self.misses += 1
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future

        try:
            value = await compute_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an attempt without waiters does not warn
            future.exception()
            raise
        else:
            self.set(key, value, ttl)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)
