"""Bounded execution slots per queue, plus a process-wide cap."""

from typing import Optional


class WorkerPool:
    """
    Counting slots. ``try_acquire`` never blocks: a full queue is skipped and
    the scheduling loop moves on to other queues.
    """

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._max_total = max_concurrency
        self._limits: dict[str, int] = {}
        self._in_use: dict[str, int] = {}
        self._total = 0

    def set_limit(self, queue: str, limit: Optional[int]) -> None:
        """Cap concurrent invocations for ``queue`` (None = process cap only)."""
        if limit is not None:
            if limit < 1:
                raise ValueError("per-queue limit must be >= 1")
            self._limits[queue] = limit
        else:
            self._limits.pop(queue, None)

    @property
    def total_in_use(self) -> int:
        return self._total

    @property
    def capacity(self) -> int:
        return self._max_total

    def in_use(self, queue: str) -> int:
        return self._in_use.get(queue, 0)

    def available(self, queue: str) -> int:
        """Free slots for ``queue`` given both the queue and process caps."""
        global_free = self._max_total - self._total
        limit = self._limits.get(queue)
        if limit is None:
            return max(global_free, 0)
        return max(min(global_free, limit - self.in_use(queue)), 0)

    def has_free_slot(self, queue: str) -> bool:
        return self.available(queue) > 0

    def try_acquire(self, queue: str, slots: int = 1) -> bool:
        if self.available(queue) < slots:
            return False
        self._in_use[queue] = self.in_use(queue) + slots
        self._total += slots
        return True

    def release(self, queue: str, slots: int = 1) -> None:
        held = self.in_use(queue)
        if slots > held:
            raise RuntimeError(f"releasing {slots} slots but queue {queue!r} holds {held}")
        self._in_use[queue] = held - slots
        self._total -= slots
