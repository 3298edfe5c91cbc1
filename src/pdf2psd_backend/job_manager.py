"""
Job orchestration and lifecycle management for PDF to PSD conversions.

This module drives each job through its lifecycle:
- Upload validation and storage (status ``uploaded``)
- Quota admission (status ``pending``)
- Asynchronous conversion through the strategy chain (status ``processing``)
- Finalization to ``completed`` or ``error``, with progress and terminal
  events published to the job's topic along the way

The JobOrchestrator class is the core business logic behind the HTTP layer,
coordinating the job store, quota gate, strategy chain and broadcaster. It
never holds a lock across I/O; all shared state lives in the injected
JobStore.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol, Set, Tuple
from uuid import uuid4

from omegaconf import DictConfig

from .broadcaster import Observer, ProgressBroadcaster
from .configuration import strategy_entries
from .exceptions import (
    ConversionError,
    FileTooLargeError,
    InvalidTransitionError,
    NotFoundError,
    QuotaError,
    ValidationError,
)
from .job_store import JobRecord, JobStore, utcnow
from .models import EventType, JobStatus, JobView, ProgressEvent
from .quota import QuotaGate
from .s3_service import publish_output
from .strategies import ConversionResult, build_strategies
from .strategy_chain import StrategyChain
from .user_store import UserRecord
from .utils import (
    clear_directory,
    ensure_directory,
    format_bytes,
    remove_empty_parent,
    remove_file_quietly,
    sanitize_filename,
)

logger = logging.getLogger(__name__)

ChainFactory = Callable[[bool], StrategyChain]

PDF_SIGNATURE = b"%PDF"


class AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


def chain_factory_from_config(config: DictConfig) -> ChainFactory:
    """Build a factory producing a fresh StrategyChain per job from ``conversion`` settings."""
    entries = strategy_entries(config)
    min_output_bytes = int(config.conversion.min_output_bytes)

    def factory(enhanced: bool) -> StrategyChain:
        return StrategyChain(build_strategies(entries, enhanced=enhanced), min_output_bytes=min_output_bytes)

    return factory


class JobOrchestrator:
    """
    Central coordinator for the conversion job lifecycle.

    Attributes:
        store: Process-wide job store (single source of truth)
        quota: Admission gate and settlement for conversion allowances
        broadcaster: Per-job progress topics
        upload_root: Base directory for uploaded PDFs (one subdirectory per job)
        output_root: Base directory for converted outputs (one subdirectory per job)
    """

    def __init__(
        self,
        store: JobStore,
        quota: QuotaGate,
        broadcaster: ProgressBroadcaster,
        chain_factory: ChainFactory,
        upload_root: Path,
        output_root: Path,
        max_upload_bytes: int = 100 * 1024 * 1024,
        chunk_bytes: int = 1024 * 1024,
        allowed_extensions: Iterable[str] = (".pdf",),
        allowed_content_types: Iterable[str] = ("application/pdf",),
        output_suffix: str = ".psd",
        s3_bucket: str = "",
        url_expiration: int = 3600,
        cleanup_after_download: bool = False,
    ) -> None:
        self.store = store
        self.quota = quota
        self.broadcaster = broadcaster
        self.chain_factory = chain_factory
        self.upload_root = ensure_directory(Path(upload_root))
        self.output_root = ensure_directory(Path(output_root))
        self.max_upload_bytes = max_upload_bytes
        self.chunk_bytes = chunk_bytes
        self.allowed_extensions = {ext.lower() for ext in allowed_extensions}
        self.allowed_content_types = {ctype.lower() for ctype in allowed_content_types}
        self.output_suffix = output_suffix
        self.s3_bucket = s3_bucket
        self.url_expiration = url_expiration
        self.cleanup_after_download = cleanup_after_download
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: DictConfig,
        store: JobStore,
        quota: QuotaGate,
        broadcaster: ProgressBroadcaster,
        chain_factory: Optional[ChainFactory] = None,
    ) -> "JobOrchestrator":
        return cls(
            store=store,
            quota=quota,
            broadcaster=broadcaster,
            chain_factory=chain_factory or chain_factory_from_config(config),
            upload_root=Path(config.storage.upload_dir),
            output_root=Path(config.storage.output_dir),
            max_upload_bytes=int(config.upload.max_bytes),
            chunk_bytes=int(config.upload.chunk_bytes),
            allowed_extensions=list(config.upload.allowed_extensions),
            allowed_content_types=list(config.upload.allowed_content_types),
            output_suffix=config.conversion.output_suffix,
            s3_bucket=config.s3.bucket or "",
            url_expiration=int(config.s3.url_expiration),
            cleanup_after_download=bool(config.retention.cleanup_after_download),
        )

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def _validate_upload_metadata(self, filename: Optional[str], content_type: Optional[str]) -> None:
        if not filename:
            raise ValidationError("PDF file must have a filename", code="missing_filename")
        suffix = Path(filename).suffix.lower()
        media_type = (content_type or "").split(";")[0].strip().lower()
        if suffix not in self.allowed_extensions or media_type not in self.allowed_content_types:
            raise ValidationError("Only PDF files are allowed", code="unsupported_file_type")

    async def upload(self, filename: Optional[str], content_type: Optional[str], stream: AsyncReadable) -> JobRecord:
        """
        Validate and store an uploaded PDF and register it as a new job.

        The file is streamed to disk in chunks and rejected as soon as it
        exceeds the size ceiling; nothing is registered for a rejected upload.

        Raises:
            ValidationError: Missing filename, wrong extension/content type,
                empty body or missing PDF signature
            FileTooLargeError: Upload exceeds ``max_upload_bytes``
        """
        self._validate_upload_metadata(filename, content_type)

        job_id = uuid4().hex
        upload_dir = ensure_directory(self.upload_root / job_id)
        destination = upload_dir / sanitize_filename(filename, suffix=".pdf")

        size = 0
        head = b""
        try:
            with destination.open("wb") as buffer:
                while chunk := await stream.read(self.chunk_bytes):
                    size += len(chunk)
                    if size > self.max_upload_bytes:
                        raise FileTooLargeError(self.max_upload_bytes)
                    if len(head) < len(PDF_SIGNATURE):
                        head = (head + chunk)[: len(PDF_SIGNATURE)]
                    await asyncio.to_thread(buffer.write, chunk)
            if size == 0:
                raise ValidationError("Uploaded file is empty", code="empty_file")
            if not head.startswith(PDF_SIGNATURE):
                raise ValidationError("Only PDF files are allowed", code="unsupported_file_type")
        except Exception:
            remove_file_quietly(destination)
            remove_empty_parent(destination, self.upload_root)
            raise

        record = JobRecord(
            id=job_id,
            status=JobStatus.UPLOADED,
            original_filename=filename,
            file_size=size,
            input_path=destination,
            message="File uploaded successfully",
        )
        self.store.put(job_id, record)
        logger.info(f"Created job {job_id} for {filename} ({format_bytes(size)})")
        return self.store.require(job_id)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    async def start_conversion(self, job_id: str, user: UserRecord, enhanced: bool = False) -> JobRecord:
        """
        Admit a job and schedule its conversion in the background.

        Returns as soon as the conversion task is scheduled; progress is
        observable through the job's topic or by polling ``get_status``.

        Raises:
            NotFoundError: Unknown job or missing input file
            InvalidTransitionError: The job has already been submitted
            QuotaError: The user's plan does not allow another conversion
        """
        job = self.store.require(job_id)
        if job.status is not JobStatus.UPLOADED:
            raise InvalidTransitionError(job_id, job.status.value, JobStatus.PENDING.value)
        if job.input_path is None or not job.input_path.exists():
            raise NotFoundError(f"Uploaded file for job {job_id} not found", code="input_missing", details={"job_id": job_id})

        decision = await self.quota.admit(user, job, self.in_flight_count)
        if not decision.allowed:
            raise QuotaError(decision.message, decision.reason, decision.plan, decision.conversions_left)

        chain = self.chain_factory(enhanced)
        job = self.store.transition(
            job_id,
            JobStatus.PENDING,
            owner_id=user.id,
            enhanced=enhanced,
            message="Queued for conversion",
        )
        self._publish(job, EventType.STATUS)
        logger.info(f"Job {job_id} queued for user {user.id} with strategies {chain.names}")

        task = asyncio.create_task(self._run_conversion(job_id, user, chain), name=f"convert-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def _run_conversion(self, job_id: str, user: UserRecord, chain: StrategyChain) -> None:
        try:
            job = self.store.transition(job_id, JobStatus.PROCESSING, message="Starting conversion...")
        except NotFoundError:
            logger.warning(f"Job {job_id} disappeared before conversion started")
            return
        self._publish(job, EventType.STATUS)

        output_dir = self.output_root / job_id
        try:
            ensure_directory(output_dir)
            output_path = output_dir / sanitize_filename(job.original_filename, suffix=self.output_suffix)
            result = await chain.run(job.input_path, output_path, self._progress_callback(job_id))
            await self._discard_input(job.input_path)
            await self._complete(job_id, user, result)
            return
        except ConversionError as exc:
            failure = str(exc)
            logger.error(f"Job {job_id} failed: {exc}")
        except Exception as exc:
            failure = f"Unexpected conversion failure: {exc}"
            logger.exception(f"Job {job_id} crashed during conversion")

        # Input is single-use; remove it before any terminal state is visible.
        await self._discard_input(job.input_path)
        if self._fail(job_id, failure):
            await asyncio.to_thread(clear_directory, output_dir, self.output_root)

    async def _discard_input(self, input_path: Optional[Path]) -> None:
        if input_path is None:
            return
        await asyncio.to_thread(remove_file_quietly, input_path)
        remove_empty_parent(input_path, self.upload_root)

    async def _complete(self, job_id: str, user: UserRecord, result: ConversionResult) -> None:
        download_name = result.output_path.name
        download_url = None
        if self.s3_bucket:
            try:
                download_url = await asyncio.to_thread(
                    publish_output, result.output_path, job_id, download_name, self.s3_bucket, self.url_expiration
                )
            except Exception:
                logger.exception(f"Publishing output of job {job_id} to S3 failed; serving it locally")
        download_url = download_url or f"/api/download/{job_id}"

        try:
            remaining = await self.quota.settle(user)
        except Exception:
            logger.exception(f"Failed to settle quota for user {user.id} after job {job_id}")
            remaining = None

        job = self.store.transition(
            job_id,
            JobStatus.COMPLETED,
            input_path=None,
            output_path=result.output_path,
            result={**result.metadata, "file_size": result.file_size},
            download_url=download_url,
            progress=100,
            message="Conversion completed successfully",
        )
        self._publish(job, EventType.COMPLETE)
        logger.info(f"Job {job_id} completed ({format_bytes(result.file_size)}); user {user.id} has {remaining} conversions left")

    def _fail(self, job_id: str, message: str) -> bool:
        """Move a job to ``error``; returns False if it already left the active states."""
        try:
            job = self.store.transition(
                job_id,
                JobStatus.ERROR,
                input_path=None,
                error=message,
                message="Conversion failed",
            )
        except (NotFoundError, InvalidTransitionError) as exc:
            logger.warning(f"Could not mark job {job_id} as failed: {exc}")
            return False
        self._publish(job, EventType.ERROR)
        return True

    def _progress_callback(self, job_id: str) -> Callable[[int, str], None]:
        def on_progress(progress: int, message: str) -> None:
            job = self.store.update(job_id, progress=progress, message=message)
            self._publish(job, EventType.PROGRESS)

        return on_progress

    # ------------------------------------------------------------------
    # Status and progress
    # ------------------------------------------------------------------

    def get_status(self, job_id: str) -> JobView:
        return self.store.require(job_id).to_view()

    def build_event(self, job: JobRecord, event_type: EventType) -> ProgressEvent:
        return ProgressEvent(
            job_id=job.id,
            type=event_type,
            status=job.status,
            progress=job.progress,
            message=job.message,
            timestamp=utcnow(),
            download_url=job.download_url if job.status is JobStatus.COMPLETED else None,
            result=job.result if job.status is JobStatus.COMPLETED else None,
            error=job.error,
        )

    def snapshot_event(self, job: JobRecord) -> ProgressEvent:
        if job.status is JobStatus.COMPLETED:
            return self.build_event(job, EventType.COMPLETE)
        if job.status is JobStatus.ERROR:
            return self.build_event(job, EventType.ERROR)
        return self.build_event(job, EventType.STATUS)

    def _publish(self, job: JobRecord, event_type: EventType) -> None:
        self.broadcaster.publish(job.id, self.build_event(job, event_type))

    def subscribe(self, job_id: str, observer: Observer) -> ProgressEvent:
        """
        Join a job's topic and return its last known state.

        The subscription is registered before the snapshot is read, so no
        event can fall between the two.

        Raises:
            NotFoundError: If the job is unknown
        """
        self.broadcaster.subscribe(job_id, observer)
        job = self.store.get(job_id)
        if job is None:
            self.broadcaster.unsubscribe(job_id, observer)
            raise NotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return self.snapshot_event(job)

    def unsubscribe(self, job_id: str, observer: Observer) -> None:
        self.broadcaster.unsubscribe(job_id, observer)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def resolve_download(self, job_id: str) -> Tuple[Path, str]:
        """
        Locate a completed job's output.

        Raises:
            NotFoundError: Unknown job, job not completed, or output missing
        """
        job = self.store.require(job_id)
        if job.status is not JobStatus.COMPLETED or job.output_path is None:
            raise NotFoundError(f"Job {job_id} has no converted file yet", code="output_not_ready", details={"status": job.status.value})
        if not job.output_path.exists():
            raise NotFoundError(f"Converted file for job {job_id} not found", code="output_missing")
        return job.output_path, job.output_path.name

    def finish_download(self, job_id: str) -> bool:
        """Evict a downloaded job and its output when post-download cleanup is enabled."""
        if not self.cleanup_after_download:
            return False
        job = self.store.pop_if(job_id, lambda current: current.status is JobStatus.COMPLETED)
        if job is None:
            return False
        if job.output_path is not None:
            remove_file_quietly(job.output_path)
            remove_empty_parent(job.output_path, self.output_root)
        logger.info(f"Cleaned up job {job_id} after download")
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def active_job_count(self) -> int:
        return sum(1 for _, job in self.store.entries() if job.status in (JobStatus.PENDING, JobStatus.PROCESSING))

    def in_flight_count(self, user_id: str) -> int:
        """Jobs admitted for ``user_id`` that have not reached a terminal state."""
        return sum(
            1
            for _, job in self.store.entries()
            if job.owner_id == user_id and job.status in (JobStatus.PENDING, JobStatus.PROCESSING)
        )

    async def wait_idle(self) -> None:
        """Wait for every scheduled conversion task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} running conversion(s) to finish")
        await self.wait_idle()
