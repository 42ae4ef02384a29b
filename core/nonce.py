"""
Nonce Generator

Produces request-uniqueness tokens for signed calls in the spelling each
exchange expects (unix seconds or milliseconds, as int or string).

Exchanges reject a nonce they have already seen, and several of them also
reject one that is lower than the previous value. Wall-clock resolution alone
is not enough (many calls can land in the same millisecond, and clocks can
step backwards), so the generator keeps the last issued value and always
returns max(clock, last + 1) under a single lock.

Usage:
    generator = NonceGenerator(NonceFormat.UNIX_MILLISECONDS)
    payload["nonce"] = generator.next()
"""

import threading
import time
from typing import Callable, Optional

from core.schemas import Nonce, NonceFormat


class NonceGenerator:
    """
    Thread-safe, strictly increasing nonce source for one exchange connection.

    Attributes:
        nonce_format: Output spelling
        offset_seconds: Subtracted from the clock before conversion; some
                        exchanges reject nonces ahead of their server time

    Example:
        >>> gen = NonceGenerator(NonceFormat.UNIX_SECONDS_STRING)
        >>> gen.next()
        '1704110400'
        >>> gen.next()   # same second
        '1704110401'
    """

    def __init__(
        self,
        nonce_format: NonceFormat = NonceFormat.UNIX_MILLISECONDS,
        offset_seconds: float = 0.0,
        clock: Optional[Callable[[], float]] = None
    ):
        self.nonce_format = NonceFormat(nonce_format)
        self.offset_seconds = offset_seconds
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._last = 0

    @property
    def _in_milliseconds(self) -> bool:
        return self.nonce_format in (NonceFormat.UNIX_MILLISECONDS, NonceFormat.UNIX_MILLISECONDS_STRING)

    @property
    def _as_string(self) -> bool:
        return self.nonce_format in (NonceFormat.UNIX_SECONDS_STRING, NonceFormat.UNIX_MILLISECONDS_STRING)

    def next(self) -> Nonce:
        """
        Return the next nonce.

        Never fails and never returns a value lower than or equal to a
        previously returned one, regardless of how many threads call it.
        """
        with self._lock:
            now = self._clock() - self.offset_seconds
            value = int(now * 1000) if self._in_milliseconds else int(now)
            if value <= self._last:
                value = self._last + 1
            self._last = value

        return str(value) if self._as_string else value

    @property
    def last(self) -> int:
        """Last issued value as an integer (0 before the first call)."""
        with self._lock:
            return self._last
