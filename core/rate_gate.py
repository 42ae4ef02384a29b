"""
Rate Gate

Bounds the outbound request rate of one exchange connection so that the
exchange never sees more than `max_requests` calls in any trailing window of
`per_seconds`. Callers over the limit are delayed, never rejected.

Algorithm:
    Sliding-window log. Each granted slot records its monotonic timestamp;
    a slot frees itself once it is older than the window. A waiter computes
    how long until enough of the oldest slots age out and sleeps exactly that
    long. Waiters queue on an asyncio.Lock, so they are served in order and a
    non-blocking try_acquire() never jumps ahead of someone already waiting.

This is the only intentional suspension point on the request path.

Usage:
    gate = RateGate(max_requests=10, per_seconds=1.0)
    await gate.acquire()                # waits if needed
    if gate.try_acquire():              # never waits
        ...
"""

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Optional

from core.errors import TransportError
from core.logging import get_logger


class RateGate:
    """
    Sliding-window limiter for one exchange connection.

    One instance per connection; different exchanges must not share a gate.

    Attributes:
        max_requests: Requests allowed per window
        per_seconds: Window length in seconds
    """

    def __init__(
        self,
        max_requests: int,
        per_seconds: float,
        clock: Optional[Callable[[], float]] = None
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be a positive integer")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be a positive span of time")

        self.max_requests = max_requests
        self.per_seconds = per_seconds
        self._clock = clock or time.monotonic
        self._slots: Deque[float] = deque()
        self._waiters = asyncio.Lock()
        self.logger = get_logger(__name__)

    # ============================================
    # Internal Helpers
    # ============================================

    def _check_count(self, n: int) -> None:
        if n < 1 or n > self.max_requests:
            raise ValueError(f"Cannot acquire {n} slots from a gate of {self.max_requests}")

    def _purge(self, now: float) -> None:
        while self._slots and now - self._slots[0] >= self.per_seconds:
            self._slots.popleft()

    def _try_take(self, n: int) -> Optional[float]:
        """Take n slots if they fit, else return seconds until they would."""
        now = self._clock()
        self._purge(now)

        if len(self._slots) + n <= self.max_requests:
            self._slots.extend([now] * n)
            return None

        # The slot that has to expire before n more fit
        blocking = self._slots[len(self._slots) + n - self.max_requests - 1]
        return max(blocking + self.per_seconds - now, 0.001)

    async def _acquire(self, n: int) -> None:
        async with self._waiters:
            while True:
                delay = self._try_take(n)
                if delay is None:
                    return
                self.logger.debug(f"Rate gate full ({self.max_requests}/{self.per_seconds}s), waiting {delay:.3f}s")
                await asyncio.sleep(delay)

    # ============================================
    # Public API
    # ============================================

    async def acquire(self, n: int = 1, timeout: Optional[float] = None) -> None:
        """
        Wait until `n` request slots are available and take them.

        Args:
            n: Number of slots (weight of the request)
            timeout: Give up after this many seconds (None waits forever)

        Raises:
            ValueError: If n is not in 1..max_requests
            TransportError: If the timeout elapsed; no slot is consumed

        Cancellation of the awaiting task also leaves the gate untouched.
        """
        self._check_count(n)

        if timeout is None:
            await self._acquire(n)
            return

        try:
            await asyncio.wait_for(self._acquire(n), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Timed out after {timeout:.3f}s waiting for rate gate")

    def try_acquire(self, n: int = 1) -> bool:
        """
        Take `n` slots only if they are available right now.

        Returns False (without taking anything) when the window is full or
        another caller is already waiting on the gate.
        """
        self._check_count(n)

        if self._waiters.locked():
            return False

        return self._try_take(n) is None

    def available(self) -> int:
        """Slots that could be taken right now."""
        self._purge(self._clock())
        return self.max_requests - len(self._slots)

    def reset(self) -> None:
        """Forget all recorded slots."""
        self._slots.clear()

    def __repr__(self) -> str:
        return f"<RateGate({self.max_requests} per {self.per_seconds}s)>"
