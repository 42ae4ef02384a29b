"""
Unit Tests for NonceGenerator

These tests verify that:
- Nonces come out in the exchange's spelling (seconds/milliseconds, int/str)
- Nonces strictly increase, even within one clock tick or when the clock steps back
- Concurrent callers never receive the same nonce

Run with:
    pytest tests/unit/test_nonce.py -v
"""

import threading

from core.nonce import NonceGenerator
from core.schemas import NonceFormat


class FrozenClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestNonceFormats:
    """Output spelling per NonceFormat"""

    def test_unix_seconds_is_int(self):
        gen = NonceGenerator(NonceFormat.UNIX_SECONDS, clock=FrozenClock(1704110400.7))
        assert gen.next() == 1704110400

    def test_unix_seconds_string(self):
        gen = NonceGenerator(NonceFormat.UNIX_SECONDS_STRING, clock=FrozenClock(1704110400.7))
        assert gen.next() == "1704110400"

    def test_unix_milliseconds(self):
        gen = NonceGenerator(NonceFormat.UNIX_MILLISECONDS, clock=FrozenClock(1704110400.123))
        assert gen.next() == 1704110400123

    def test_unix_milliseconds_string(self):
        gen = NonceGenerator(NonceFormat.UNIX_MILLISECONDS_STRING, clock=FrozenClock(1704110400.5))
        assert gen.next() == "1704110400500"

    def test_offset_is_subtracted(self):
        gen = NonceGenerator(NonceFormat.UNIX_SECONDS, offset_seconds=10, clock=FrozenClock(1000.0))
        assert gen.next() == 990


class TestMonotonicity:
    """Nonces never repeat and never go backwards"""

    def test_same_tick_increments(self):
        gen = NonceGenerator(NonceFormat.UNIX_SECONDS, clock=FrozenClock(1000.0))
        assert [gen.next() for _ in range(3)] == [1000, 1001, 1002]

    def test_clock_stepping_back(self):
        clock = FrozenClock(2000.0)
        gen = NonceGenerator(NonceFormat.UNIX_SECONDS, clock=clock)
        first = gen.next()
        clock.now = 1500.0
        assert gen.next() == first + 1

    def test_clock_moving_forward_is_followed(self):
        clock = FrozenClock(2000.0)
        gen = NonceGenerator(NonceFormat.UNIX_SECONDS, clock=clock)
        gen.next()
        clock.now = 3000.0
        assert gen.next() == 3000
        assert gen.last == 3000

    def test_concurrent_callers_get_distinct_values(self):
        gen = NonceGenerator(NonceFormat.UNIX_MILLISECONDS, clock=FrozenClock(1000.0))
        results = []
        lock = threading.Lock()

        def worker():
            values = [gen.next() for _ in range(200)]
            with lock:
                results.extend(values)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1600
        assert len(set(results)) == 1600
        assert max(results) == gen.last
