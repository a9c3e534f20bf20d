import threading
import time
from typing import Dict, List, Optional

from .schemas import EngineStats, JobRecord, RequestStatus

_TAG_FIELDS = ("project_id", "page_id", "batch_id")


class JobStore:
    """Authoritative in-memory map from request id to its current record.

    ``lock`` is the engine-wide mutex: the scheduler, workers and public entry
    points hold it for every read-modify-write of a record or of the queue.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self._jobs: Dict[str, JobRecord] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._jobs

    def add(self, record: JobRecord) -> None:
        with self.lock:
            if record.id in self._jobs:
                raise ValueError(f"duplicate request id {record.id}")
            self._jobs[record.id] = record

    def get(self, request_id: str) -> Optional[JobRecord]:
        # live record, callers must hold the lock while mutating it
        return self._jobs.get(request_id)

    def snapshot(self, request_id: str) -> Optional[JobRecord]:
        with self.lock:
            record = self._jobs.get(request_id)
            return record.snapshot() if record is not None else None

    def list_by_tag(self, **tags: str) -> List[JobRecord]:
        unknown = set(tags) - set(_TAG_FIELDS)
        if unknown:
            raise ValueError(f"unknown tag(s): {', '.join(sorted(unknown))}")
        with self.lock:
            matches = [
                record.snapshot()
                for record in self._jobs.values()
                if all(getattr(record.tags, name) == value for name, value in tags.items())
            ]
        # newest first, like the export job listings
        return sorted(matches, key=lambda record: record.sequence, reverse=True)

    def cleanup(self, retention_seconds: float, now: Optional[float] = None) -> List[str]:
        """Remove terminal requests that finished more than ``retention_seconds`` ago."""
        now = time.time() if now is None else now
        cutoff = now - retention_seconds
        with self.lock:
            expired = [
                request_id
                for request_id, record in self._jobs.items()
                if record.status.is_terminal and (record.completed_at or record.submitted_at) <= cutoff
            ]
            for request_id in expired:
                del self._jobs[request_id]
        return expired

    def stats(self) -> EngineStats:
        counts = {status: 0 for status in RequestStatus}
        with self.lock:
            for record in self._jobs.values():
                counts[record.status] += 1
            total = len(self._jobs)
        return EngineStats(
            total=total,
            queued=counts[RequestStatus.QUEUED],
            in_progress=counts[RequestStatus.IN_PROGRESS],
            completed=counts[RequestStatus.COMPLETED],
            failed=counts[RequestStatus.FAILED],
            cancelled=counts[RequestStatus.CANCELLED],
        )
