"""Pending-request queue ordered by priority weight, then submission order."""
import heapq
import itertools
from typing import Dict, List, Optional

from .schemas import JobRecord, Priority

_REMOVED = object()


class RequestQueue:
    """Heap-backed dispatch queue.

    Entries are ``[score, tie_breaker, request]`` lists so that ``remove()`` can
    invalidate an entry in place; invalidated entries are skipped when popped.
    Callers serialise access (the engine holds the store lock around every call).
    """

    def __init__(self, priority_processing: bool = True):
        self.priority_processing = priority_processing
        self._heap: List[list] = []
        self._entries: Dict[str, list] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._entries

    def _score(self, request: JobRecord) -> tuple:
        if not self.priority_processing:
            return (0, next(self._counter))
        # heapq is a min-heap: negate the weight so urgent pops first
        return (-request.priority.weight, request.sequence)

    def enqueue(self, request: JobRecord) -> None:
        if request.id in self._entries:
            raise ValueError(f"request {request.id} is already queued")
        score = self._score(request)
        entry = [score, next(self._counter), request]
        self._entries[request.id] = entry
        heapq.heappush(self._heap, entry)

    def dequeue_next(self) -> Optional[JobRecord]:
        while self._heap:
            _, _, request = heapq.heappop(self._heap)
            if request is not _REMOVED:
                del self._entries[request.id]
                return request
        return None

    def remove(self, request_id: str) -> bool:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        entry[-1] = _REMOVED
        return True

    def peek_ids(self) -> List[str]:
        live = [entry for entry in self._heap if entry[-1] is not _REMOVED]
        return [entry[-1].id for entry in sorted(live, key=lambda e: (e[0], e[1]))]

    def counts_by_priority(self) -> Dict[str, int]:
        counts = {priority.value: 0 for priority in Priority}
        for entry in self._entries.values():
            counts[entry[-1].priority.value] += 1
        return counts

    def clear(self) -> List[JobRecord]:
        """Drop every pending entry and return the requests in dispatch order."""
        drained = []
        while True:
            request = self.dequeue_next()
            if request is None:
                return drained
            drained.append(request)
