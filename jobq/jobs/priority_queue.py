"""Ready-job ordering with weighted round-robin across priority classes.

Within a class jobs come out by (scheduled_at, id). Across classes a smooth
weighted round-robin picks the class, so with weights critical=8, high=4,
normal=2, low=1 every non-empty class is served at least once per 15 picks.
The round-robin credits survive ``replace()`` so fairness holds across
scheduling passes, not just within one.
"""

import heapq
from typing import Iterable, Mapping, Optional
from uuid import UUID

from jobq.jobs.models import Job
from jobq.jobs.types import Priority

DEFAULT_WEIGHTS: dict[Priority, int] = {
    Priority.CRITICAL: 8,
    Priority.HIGH: 4,
    Priority.NORMAL: 2,
    Priority.LOW: 1,
}


class PriorityQueue:
    """In-memory ordering of ready jobs, referenced by id."""

    def __init__(self, weights: Optional[Mapping[Priority, int]] = None):
        weights = dict(weights or DEFAULT_WEIGHTS)
        if set(weights) != set(Priority) or any(w < 1 for w in weights.values()):
            raise ValueError("weights need a positive integer for every priority")
        self._weights = weights
        self._credits: dict[Priority, int] = {p: 0 for p in Priority}
        self._heaps: dict[Priority, list] = {p: [] for p in Priority}
        self._jobs: dict[UUID, Job] = {}

    @classmethod
    def from_weight_list(cls, weights: list[int]) -> "PriorityQueue":
        """Build from [critical, high, normal, low] weights (settings format)."""
        return cls(dict(zip(Priority.ordered(), weights)))

    @property
    def fairness_window(self) -> int:
        """Picks within which every non-empty class is served at least once."""
        return sum(self._weights.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: UUID) -> bool:
        return job_id in self._jobs

    def depth(self, priority: Priority) -> int:
        return sum(1 for j in self._jobs.values() if j.priority is priority)

    def push(self, job: Job) -> None:
        if job.id in self._jobs:
            self.discard(job.id)
        self._jobs[job.id] = job
        heapq.heappush(self._heaps[job.priority], (job.scheduled_at, job.id))

    def discard(self, job_id: UUID) -> None:
        """Forget a job. Its heap entry is skipped lazily on pop."""
        self._jobs.pop(job_id, None)

    def replace(self, jobs: Iterable[Job]) -> None:
        """Swap contents for a fresh snapshot, keeping round-robin credits."""
        self._jobs.clear()
        for heap in self._heaps.values():
            heap.clear()
        for job in jobs:
            self.push(job)

    def _head(self, priority: Priority) -> Optional[Job]:
        heap = self._heaps[priority]
        while heap:
            scheduled_at, job_id = heap[0]
            job = self._jobs.get(job_id)
            if job is not None and job.scheduled_at == scheduled_at:
                return job
            heapq.heappop(heap)
        return None

    def _pick_class(self) -> Optional[Priority]:
        active = [p for p in Priority.ordered() if self._head(p) is not None]
        for p in Priority:
            if p not in active:
                self._credits[p] = 0
        if not active:
            return None

        total = 0
        for p in active:
            self._credits[p] += self._weights[p]
            total += self._weights[p]
        # max() keeps the first maximum, so ties go to the higher class
        chosen = max(active, key=lambda p: self._credits[p])
        self._credits[chosen] -= total
        return chosen

    def pop(self) -> Optional[Job]:
        priority = self._pick_class()
        if priority is None:
            return None
        job = self._head(priority)
        heapq.heappop(self._heaps[priority])
        del self._jobs[job.id]
        return job
