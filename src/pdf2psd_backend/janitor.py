"""
Periodic retention sweep over the job store.

Terminal jobs are evicted once ``completed_at`` is older than the retention
window; uploads that were never converted are evicted once ``uploaded_at`` is
older than the upload window. Their files and per-job directories are deleted after
the record has left the store. Pending and processing jobs are never evicted.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .job_store import JobRecord, JobStore, utcnow
from .models import JobStatus
from .utils import clear_directory, remove_file_quietly

logger = logging.getLogger(__name__)


class JanitorTask:
    """
    Scheduled eviction of expired jobs and their files.

    Args:
        store: The process-wide job store
        retention: How long terminal jobs are kept after ``completed_at``
        upload_retention: How long never-converted uploads are kept
        interval: Time between sweeps
        stuck_after: Age after which an active job is reported as stuck
        upload_root: Per-job upload directories under this root are removed
            along with any files left in them
        output_root: Same, for per-job output directories
    """

    def __init__(
        self,
        store: JobStore,
        retention: timedelta = timedelta(minutes=30),
        upload_retention: timedelta = timedelta(minutes=60),
        interval: timedelta = timedelta(minutes=30),
        stuck_after: timedelta = timedelta(hours=2),
        upload_root: Optional[Path] = None,
        output_root: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.retention = retention
        self.upload_retention = upload_retention
        self.interval = interval
        self.stuck_after = stuck_after
        self.upload_root = upload_root
        self.output_root = output_root
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="job-janitor")
        logger.info(f"Janitor started (interval={self.interval}, retention={self.retention})")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Janitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Janitor sweep failed")

    def is_expired(self, job: JobRecord, now: datetime) -> bool:
        if job.status.is_terminal:
            return job.completed_at is not None and job.completed_at < now - self.retention
        if job.status is JobStatus.UPLOADED:
            return job.uploaded_at < now - self.upload_retention
        return False

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """
        Run one retention pass.

        Returns:
            Ids of the evicted jobs
        """
        now = now or utcnow()
        evicted: List[str] = []
        for job_id, job in self.store.entries():
            if not job.status.is_terminal and job.status is not JobStatus.UPLOADED:
                started = job.started_at or job.uploaded_at
                if started < now - self.stuck_after:
                    logger.warning(f"Job {job_id} has been {job.status.value} since {started.isoformat()}")
                continue

            removed = self.store.pop_if(job_id, lambda current: self.is_expired(current, now))
            if removed is None:
                continue

            self._remove_artifacts(removed)
            evicted.append(job_id)
            logger.info(f"Evicted {removed.status.value} job {job_id}")

        if evicted:
            logger.info(f"Janitor sweep evicted {len(evicted)} job(s); {len(self.store)} remaining")
        return evicted

    def _remove_artifacts(self, job: JobRecord) -> None:
        # Per-job directories can hold files the record does not know about,
        # such as a .part written late by a timed-out strategy thread.
        for path, root in ((job.input_path, self.upload_root), (job.output_path, self.output_root)):
            if path is not None:
                remove_file_quietly(path)
            if root is not None:
                clear_directory(root / job.id, root)
