"""
In-memory job registry for the conversion pipeline.

JobStore is the single source of truth for job state. It is constructed once
per process and injected into every component that needs it (orchestrator,
janitor, HTTP layer). Records never leave the store by reference: readers get
snapshot copies and writers go through ``update``/``transition`` so that
progress written by a conversion task is immediately visible to pollers.

Job records are intentionally not persisted; they are lost on restart.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import InvalidTransitionError, NotFoundError
from .models import JobStatus, JobView


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    """
    Internal representation of one conversion request.

    Attributes:
        id: Unique job identifier (hex UUID), also the progress topic name
        status: Current lifecycle state
        original_filename: Filename supplied by the client at upload
        file_size: Size of the uploaded input in bytes
        input_path: Stored upload; deleted once a conversion finishes
        output_path: Converted artifact, set on success only
        progress: 0-100, non-decreasing while processing
        message: Human-readable description of the current step
        error: Failure description, set in the error state only
        result: Strategy metadata (dimensions, page count), success only
        download_url: Generated download reference, success only
        owner_id: User that requested the conversion
        enhanced: Whether the stricter strategy subset was requested
    """

    id: str
    status: JobStatus
    original_filename: str
    file_size: int
    input_path: Optional[Path]
    uploaded_at: datetime = field(default_factory=utcnow)
    output_path: Optional[Path] = None
    progress: int = 0
    message: str = ""
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    download_url: Optional[str] = None
    owner_id: Optional[str] = None
    enhanced: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def snapshot(self) -> "JobRecord":
        return copy.deepcopy(self)

    def to_view(self) -> JobView:
        """Project the record for untrusted callers (no filesystem paths)."""
        return JobView(
            id=self.id,
            status=self.status,
            progress=self.progress,
            message=self.message,
            file_name=self.original_filename,
            file_size=self.file_size,
            download_url=self.download_url,
            error=self.error,
            result=self.result,
            uploaded_at=self.uploaded_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class JobStore:
    """
    Thread-safe map from job id to JobRecord.

    A single lock guards the dictionary and is only held for in-memory
    manipulation, never across file I/O or awaits. All accessors are safe to
    call from the event loop and from worker threads alike.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def put(self, job_id: str, job: JobRecord) -> None:
        with self._lock:
            self._jobs[job_id] = job.snapshot()

    def get(self, job_id: str) -> Optional[JobRecord]:
        """Return a snapshot of the job, or None if the id is unknown."""
        with self._lock:
            record = self._jobs.get(job_id)
            return record.snapshot() if record else None

    def require(self, job_id: str) -> JobRecord:
        record = self.get(job_id)
        if record is None:
            raise NotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return record

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def pop_if(self, job_id: str, predicate: Callable[[JobRecord], bool]) -> Optional[JobRecord]:
        """
        Atomically remove a job if ``predicate`` holds for its current state.

        Used by the janitor so that a job whose state changed between the scan
        and the eviction is left in place.
        """
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or not predicate(record):
                return None
            return self._jobs.pop(job_id)

    def entries(self) -> List[Tuple[str, JobRecord]]:
        with self._lock:
            return [(job_id, record.snapshot()) for job_id, record in self._jobs.items()]

    def update(self, job_id: str, **fields: Any) -> JobRecord:
        """
        Update non-status attributes of a job.

        ``progress`` is clamped to 0-100 and never lowered; stale progress
        reports are ignored rather than rejected.

        Raises:
            NotFoundError: If the job is unknown (e.g. evicted meanwhile)
        """
        if "status" in fields:
            raise ValueError("use transition() to change job status")
        with self._lock:
            record = self._locked_get(job_id)
            self._apply(record, fields)
            return record.snapshot()

    def transition(self, job_id: str, status: JobStatus, **fields: Any) -> JobRecord:
        """
        Move a job to ``status`` and apply ``fields`` in one atomic step.

        Entering ``processing`` resets progress to 0; entering a terminal
        state stamps ``completed_at``.

        Raises:
            NotFoundError: If the job is unknown
            InvalidTransitionError: If the move is not a forward lifecycle step
        """
        with self._lock:
            record = self._locked_get(job_id)
            if not record.status.can_transition_to(status):
                raise InvalidTransitionError(job_id, record.status.value, status.value)
            record.status = status
            if status is JobStatus.PROCESSING:
                record.progress = 0
                record.started_at = fields.pop("started_at", None) or utcnow()
            if status.is_terminal:
                record.completed_at = fields.pop("completed_at", None) or utcnow()
            self._apply(record, fields)
            return record.snapshot()

    def _locked_get(self, job_id: str) -> JobRecord:
        record = self._jobs.get(job_id)
        if record is None:
            raise NotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return record

    @staticmethod
    def _apply(record: JobRecord, fields: Dict[str, Any]) -> None:
        for key, value in fields.items():
            if not hasattr(record, key):
                raise AttributeError(f"JobRecord has no field '{key}'")
            if key == "progress":
                value = max(record.progress, min(100, max(0, int(value))))
            setattr(record, key, value)
