"""
Global concurrency limit for backup runs.

A fixed number of slots is shared by all jobs. Acquiring never blocks: the
scheduler skips a firing when no slot is free instead of waiting for one.
"""

import itertools
import threading


class NoSlotAvailable(Exception):
    """Raised when every concurrency slot is in use."""
    pass


class Slot:
    """Token for one acquired unit of the concurrency budget."""

    def __init__(self, limiter, number: int):
        self.limiter = limiter
        self.number = number

    def __repr__(self):
        return f'<Slot #{self.number}>'


class ConcurrencyLimiter:
    """Counting permit pool with non-blocking acquire."""

    def __init__(self, capacity: int = 2):
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
            raise ValueError(f"Concurrency capacity must be a positive integer, got {capacity!r}")

        self.capacity = capacity
        self._semaphore = threading.BoundedSemaphore(capacity)
        self._lock = threading.Lock()
        self._held = set()
        self._counter = itertools.count(1)

    def acquire(self) -> Slot:
        """
        Take a slot without waiting.

        Returns:
            Slot to hand back to release()

        Raises:
            NoSlotAvailable: If all slots are in use
        """
        if not self._semaphore.acquire(blocking=False):
            raise NoSlotAvailable(f"All {self.capacity} concurrency slot(s) are in use")

        with self._lock:
            slot = Slot(self, next(self._counter))
            self._held.add(slot)
        return slot

    def release(self, slot: Slot):
        """
        Return a previously acquired slot.

        Raises:
            RuntimeError: If the slot was already released or is not from this limiter
        """
        with self._lock:
            if slot not in self._held:
                raise RuntimeError(f"{slot!r} is not held by this limiter")
            self._held.remove(slot)
        self._semaphore.release()

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._held)

    @property
    def available(self) -> int:
        return self.capacity - self.in_use
