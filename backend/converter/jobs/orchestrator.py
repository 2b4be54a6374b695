"""Bulk conversion: admit a batch as a job, convert it in the background, zip the results."""
import logging
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from converter.config import (
    ARCHIVE_DIR,
    IMAGE_TIMEOUT_SECONDS,
    MAX_CONCURRENT_JOBS,
    MAX_WORKERS,
    SCRATCH_DIR,
)
from converter.conversion.archiver import ZipArchiver
from converter.conversion.transcoder import PillowTranscoder
from converter.errors import AllImagesFailed, ConverterError, EmptyBatch, InvalidParameters
from converter.jobs.models import (
    CompressionLevel,
    ConversionJob,
    ConversionParameters,
    JobStatus,
    OutputFormat,
    UploadedImage,
)
from converter.jobs.store import JobStore, get_job_store
from converter.jobs.workspace import Scratch, sanitize_stem, scratch_dir

logger = logging.getLogger("converter.orchestrator")


class Transcoder(Protocol):
    def convert(
        self, data: bytes, output_format: OutputFormat, quality: int, compression: CompressionLevel
    ) -> bytes: ...


class Archiver(Protocol):
    def bundle(self, entries: dict[str, Path], destination: Path) -> Path: ...


@dataclass
class BatchOutcome:
    """Result of attempting every image in a batch: converted files by archive name, and failures."""

    successes: dict[str, Path] = field(default_factory=dict)
    failures: list[tuple[str, str]] = field(default_factory=list)

    def record_failure(self, label: str, reason: str) -> None:
        self.failures.append((label, reason))

    @property
    def first_error(self) -> str:
        return self.failures[0][1] if self.failures else ""


class BulkConversionOrchestrator:
    """Admits bulk conversion batches and runs them as detached background jobs.

    Two bounded pools: `max_concurrent_jobs` job runners, and `max_workers` image conversions
    shared by all running jobs. A job runner only waits on its images, so the pools cannot deadlock.
    """

    def __init__(
        self,
        store: JobStore,
        transcoder: Optional[Transcoder] = None,
        archiver: Optional[Archiver] = None,
        *,
        archive_dir: Path = ARCHIVE_DIR,
        scratch_root: Path = SCRATCH_DIR,
        max_workers: int = MAX_WORKERS,
        max_concurrent_jobs: int = MAX_CONCURRENT_JOBS,
        image_timeout: Optional[float] = IMAGE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.transcoder = transcoder or PillowTranscoder()
        self.archiver = archiver or ZipArchiver()
        self.archive_dir = Path(archive_dir)
        self.scratch_root = Path(scratch_root)
        self.image_timeout = image_timeout if image_timeout and image_timeout > 0 else None
        self._poll_interval = min(0.5, self.image_timeout / 4) if self.image_timeout else None
        self.max_workers = max(1, max_workers)
        self._image_executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="convert")
        self._job_executor = ThreadPoolExecutor(
            max_workers=max(1, max_concurrent_jobs), thread_name_prefix="bulk-job"
        )
        self._running: dict[str, Future] = {}
        self._running_lock = threading.Lock()
        logger.info(
            "Orchestrator initialized (max_workers=%s, max_concurrent_jobs=%s, image_timeout=%s)",
            max_workers, max_concurrent_jobs, self.image_timeout,
        )

    def start_bulk_conversion(
        self,
        images: Sequence[Union[UploadedImage, bytes]],
        params: ConversionParameters,
    ) -> str:
        """Validate and register a batch, schedule its conversion, and return the job id without waiting."""
        batch = [UploadedImage(data=bytes(i)) if isinstance(i, (bytes, bytearray)) else i for i in images or []]
        if not batch:
            raise EmptyBatch("No images uploaded")
        if not isinstance(params, ConversionParameters):
            raise InvalidParameters("Conversion parameters are required")

        job_id = self.store.create(params, len(batch))
        try:
            future = self._job_executor.submit(self._run_job, job_id, batch, params)
        except RuntimeError as e:
            # Executor already shut down: the job must not stay in processing
            logger.error("Could not schedule job %s: %s", job_id, e)
            self._fail(job_id, f"Could not schedule conversion: {e}", failed_count=len(batch))
            return job_id
        with self._running_lock:
            self._running[job_id] = future
        future.add_done_callback(lambda _f, jid=job_id: self._forget(jid))
        logger.info("Bulk conversion job %s scheduled (%s images)", job_id, len(batch))
        return job_id

    def _forget(self, job_id: str) -> None:
        with self._running_lock:
            self._running.pop(job_id, None)

    def join(self, job_id: str, timeout: Optional[float] = None) -> ConversionJob:
        """Block until the job's background task has finished, then return its record."""
        with self._running_lock:
            future = self._running.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._job_executor.shutdown(wait=wait)
        self._image_executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("Orchestrator shut down")

    def _run_job(self, job_id: str, images: list[UploadedImage], params: ConversionParameters) -> None:
        """Background task. Every path ends with the job completed or failed."""
        started = time.monotonic()
        outcome: Optional[BatchOutcome] = None
        try:
            with scratch_dir(self.scratch_root, job_id) as scratch:
                outcome = self._convert_all(job_id, images, params, scratch)
                if not outcome.successes:
                    raise AllImagesFailed(len(outcome.failures), outcome.first_error)
                archive = self.archiver.bundle(outcome.successes, self.archive_dir / f"{job_id}.zip")
            self.store.update_status(
                job_id,
                JobStatus.COMPLETED,
                archive_ref=archive.name,
                failed_count=len(outcome.failures),
            )
            logger.info(
                "Bulk conversion job %s completed: %s converted, %s failed in %.2fs",
                job_id, len(outcome.successes), len(outcome.failures), time.monotonic() - started,
            )
        except AllImagesFailed as e:
            logger.warning("Bulk conversion job %s failed: %s", job_id, e)
            self._fail(job_id, str(e), failed_count=e.failed)
        except ConverterError as e:
            logger.error("Bulk conversion job %s failed: %s", job_id, e)
            self._fail(job_id, str(e), failed_count=len(outcome.failures) if outcome else None)
        except Exception as e:
            logger.exception("Bulk conversion job %s crashed: %s", job_id, e)
            self._fail(
                job_id,
                f"Unexpected error: {e}",
                failed_count=len(outcome.failures) if outcome else None,
            )

    def _fail(self, job_id: str, message: str, failed_count: Optional[int] = None) -> None:
        # A failed job never references an archive
        try:
            (self.archive_dir / f"{job_id}.zip").unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove archive for failed job %s: %s", job_id, e)
        try:
            self.store.update_status(job_id, JobStatus.FAILED, error_message=message, failed_count=failed_count)
        except Exception:
            logger.exception("Could not mark job %s as failed", job_id)

    @staticmethod
    def output_name(index: int, image: UploadedImage, output_format: OutputFormat) -> str:
        """Archive entry name, unique per image within the batch."""
        return f"{index + 1:03d}_{sanitize_stem(image.stem)}.{output_format.extension}"

    def _convert_all(
        self,
        job_id: str,
        images: list[UploadedImage],
        params: ConversionParameters,
        scratch: Scratch,
    ) -> BatchOutcome:
        """Convert every image on the shared pool. A failed or timed-out image never stops the others."""
        outcome = BatchOutcome()
        started_at: dict[int, float] = {}
        deadline = self.batch_deadline(len(images))

        def convert_one(index: int, image: UploadedImage) -> Path:
            started_at[index] = time.monotonic()
            data = self.transcoder.convert(image.data, params.output_format, params.quality, params.compression)
            return scratch.write(self.output_name(index, image, params.output_format), data)

        futures = {
            self._image_executor.submit(convert_one, index, image): (index, image)
            for index, image in enumerate(images)
        }
        pending = set(futures)
        while pending:
            done, pending = wait(pending, timeout=self._poll_interval, return_when=FIRST_COMPLETED)
            for future in done:
                index, image = futures[future]
                label = image.filename or f"image #{index + 1}"
                try:
                    path = future.result()
                except Exception as e:
                    logger.warning("Job %s: conversion failed for %s: %s", job_id, label, e)
                    outcome.record_failure(label, str(e) or type(e).__name__)
                else:
                    outcome.successes[path.name] = path
            if self.image_timeout is None:
                continue
            now = time.monotonic()
            expired = now > deadline
            for future in list(pending):
                index, image = futures[future]
                t0 = started_at.get(index)
                if t0 is not None and now - t0 > self.image_timeout:
                    reason = f"timed out after {self.image_timeout}s"
                elif expired:
                    # Still queued behind other jobs' conversions; cancel() drops it from the queue
                    reason = "timed out waiting for a conversion worker"
                else:
                    continue
                # The worker thread cannot be interrupted; its late result is ignored
                pending.discard(future)
                future.cancel()
                label = image.filename or f"image #{index + 1}"
                logger.warning("Job %s: conversion of %s %s", job_id, label, reason)
                outcome.record_failure(label, reason)
        return outcome

    def batch_deadline(self, image_count: int) -> float:
        """Monotonic time by which every image of a batch started now must have finished.

        One timeout per round of `max_workers` images, plus one round of slack for the pool being busy.
        """
        if self.image_timeout is None:
            return math.inf
        rounds = math.ceil(image_count / self.max_workers) + 1
        return time.monotonic() + self.image_timeout * rounds


# Singleton
_orchestrator: Optional[BulkConversionOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> BulkConversionOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = BulkConversionOrchestrator(get_job_store())
        return _orchestrator


def shutdown_orchestrator(wait: bool = False) -> None:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is not None:
            _orchestrator.shutdown(wait=wait)
            _orchestrator = None
