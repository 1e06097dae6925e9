"""
Unit tests for the concurrency limiter (dbackup/limiter.py).
"""

import threading

import pytest

from dbackup.limiter import ConcurrencyLimiter, NoSlotAvailable


class TestConcurrencyLimiter:

    def test_default_capacity(self):
        limiter = ConcurrencyLimiter()

        assert limiter.capacity == 2
        assert limiter.available == 2
        assert limiter.in_use == 0

    @pytest.mark.parametrize('capacity', [0, -1, 1.5, '2', True])
    def test_invalid_capacity(self, capacity):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(capacity)

    def test_acquire_never_blocks(self):
        """Test acquire fails immediately when the pool is exhausted."""
        limiter = ConcurrencyLimiter(2)

        first = limiter.acquire()
        second = limiter.acquire()

        with pytest.raises(NoSlotAvailable):
            limiter.acquire()

        assert limiter.in_use == 2
        assert limiter.available == 0
        assert first is not second

    def test_release_frees_a_slot(self):
        limiter = ConcurrencyLimiter(1)

        slot = limiter.acquire()
        limiter.release(slot)

        assert limiter.available == 1
        limiter.release(limiter.acquire())

    def test_double_release(self):
        limiter = ConcurrencyLimiter(1)
        slot = limiter.acquire()
        limiter.release(slot)

        with pytest.raises(RuntimeError):
            limiter.release(slot)

    def test_release_foreign_slot(self):
        limiter = ConcurrencyLimiter(1)
        other = ConcurrencyLimiter(1)

        with pytest.raises(RuntimeError):
            limiter.release(other.acquire())

        assert limiter.available == 1

    def test_capacity_never_exceeded_across_threads(self):
        """Test concurrent acquirers never hold more than capacity slots."""
        limiter = ConcurrencyLimiter(3)
        acquired = []
        lock = threading.Lock()
        start = threading.Barrier(10)

        def worker():
            start.wait()
            try:
                slot = limiter.acquire()
            except NoSlotAvailable:
                return
            with lock:
                acquired.append(slot)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(acquired) == 3
        assert limiter.in_use == 3
