"""In-process record of running and finished voice-over jobs."""

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field

from voiceover_producer.constants import MAX_FINISHED_JOBS

logger = logging.getLogger(__name__)

FINISHED = ("complete", "failed")


@dataclass
class JobRecord:
    job_id: str
    status: str = "running"        # running, complete, failed
    progress: int = 0
    message: str = ""
    result: dict | None = None
    error: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["jobId"] = data.pop("job_id")
        data["createdAt"] = data.pop("created_at")
        data["updatedAt"] = data.pop("updated_at")
        return data


class JobStore:
    """Thread-safe map of job id -> JobRecord. One per app.

    Running jobs are always kept. Once more than ``max_finished`` jobs have
    completed or failed, the ones that finished first are dropped.
    """

    def __init__(self, max_finished: int = MAX_FINISHED_JOBS):
        self.max_finished = max_finished
        self._jobs: dict[str, JobRecord] = {}
        self._finished: dict[str, None] = {}    # insertion order = finish order
        self._lock = threading.Lock()

    def create(self, job_id: str | None = None) -> JobRecord:
        record = JobRecord(job_id or uuid.uuid4().hex)
        with self._lock:
            self._finished.pop(record.job_id, None)
            self._jobs[record.job_id] = record
        return record

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, **changes) -> JobRecord | None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return None
            for key, value in changes.items():
                setattr(record, key, value)
            record.updated_at = time.time()
            if record.status in FINISHED and job_id not in self._finished:
                self._finished[job_id] = None
                self._evict()
            return record

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            self._finished.pop(job_id, None)

    def _evict(self) -> None:
        while len(self._finished) > self.max_finished:
            oldest = next(iter(self._finished))
            del self._finished[oldest]
            self._jobs.pop(oldest, None)
            logger.debug("Evicted finished job %s", oldest)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
