"""Job store: create/read/update of bulk conversion jobs keyed by job id."""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from converter.config import JOB_STORE
from converter.db import JOBS_TABLE, init_db, session
from converter.errors import InvalidTransition, JobNotFound
from converter.jobs.models import (
    CompressionLevel,
    ConversionJob,
    ConversionParameters,
    JobStatus,
    OutputFormat,
)

logger = logging.getLogger("converter.jobs.store")


class JobStore(ABC):
    """Shared job registry. Updates to one job are serialized; reads never block on other jobs."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    @abstractmethod
    def _insert(self, job: ConversionJob) -> bool:
        """Persist a new job. Return False if the id is already taken."""

    @abstractmethod
    def _fetch(self, job_id: str) -> Optional[ConversionJob]:
        ...

    @abstractmethod
    def _save(self, job: ConversionJob) -> None:
        ...

    def create(self, params: ConversionParameters, file_count: int) -> str:
        """Register a new job in `processing` and return its id."""
        while True:
            job = ConversionJob(
                job_id=str(uuid.uuid4()),
                status=JobStatus.PROCESSING,
                output_format=params.output_format,
                quality=params.quality,
                compression=params.compression,
                file_count=file_count,
            )
            if self._insert(job):
                break
            logger.warning("Job id collision on %s, regenerating", job.job_id)
        logger.info(
            "Created job %s (%s files, format=%s, quality=%s, compression=%s)",
            job.job_id, file_count, params.output_format.value, params.quality, params.compression.value,
        )
        return job.job_id

    def get(self, job_id: str) -> ConversionJob:
        job = self._fetch(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
        archive_ref: Optional[str] = None,
        failed_count: Optional[int] = None,
    ) -> ConversionJob:
        """Advance a job's status. error_message is kept only on failure, archive_ref only on completion."""
        status = JobStatus(status)
        # Unknown ids never get a lock
        self.get(job_id)
        settled = False
        try:
            with self._lock_for(job_id):
                current = self.get(job_id)
                settled = current.status.is_terminal
                if settled:
                    raise InvalidTransition(f"Job {job_id} is already {current.status.value}")
                if status.rank < current.status.rank:
                    raise InvalidTransition(
                        f"Job {job_id} cannot move from {current.status.value} to {status.value}"
                    )
                updated = current.transitioned(
                    status,
                    error_message=error_message if status == JobStatus.FAILED else None,
                    archive_ref=archive_ref if status == JobStatus.COMPLETED else None,
                    failed_count=failed_count,
                )
                self._save(updated)
                settled = status.is_terminal
        finally:
            if settled:
                # Terminal jobs are never written again
                with self._locks_guard:
                    self._locks.pop(job_id, None)
        logger.info("Job %s: %s -> %s", job_id, current.status.value, status.value)
        return updated


class InMemoryJobStore(JobStore):
    """Dictionary-backed store. Job state lives for the process lifetime only."""

    def __init__(self):
        super().__init__()
        self._jobs: dict[str, ConversionJob] = {}

    def _insert(self, job: ConversionJob) -> bool:
        with self._locks_guard:
            if job.job_id in self._jobs:
                return False
            self._jobs[job.job_id] = job
            return True

    def _fetch(self, job_id: str) -> Optional[ConversionJob]:
        return self._jobs.get(job_id)

    def _save(self, job: ConversionJob) -> None:
        self._jobs[job.job_id] = job

    def list_jobs(self) -> list[ConversionJob]:
        return list(self._jobs.values())


class SqlJobStore(JobStore):
    """Store backed by the conversion_jobs table (see converter.db)."""

    _COLUMNS = (
        "job_id, status, output_format, quality, compression, file_count, "
        "failed_count, error_message, archive_ref, created_at, updated_at"
    )

    def __init__(self, engine: Engine):
        super().__init__()
        self._engine = engine

    def _insert(self, job: ConversionJob) -> bool:
        params = {
            "job_id": job.job_id,
            "status": job.status.value,
            "output_format": job.output_format.value,
            "quality": job.quality,
            "compression": job.compression.value,
            "file_count": job.file_count,
            "now": job.created_at.isoformat(),
        }
        with session(self._engine) as conn:
            exists = conn.execute(
                text(f"SELECT 1 FROM {JOBS_TABLE} WHERE job_id = :job_id"), {"job_id": job.job_id}
            ).fetchone()
            if exists:
                return False
            conn.execute(
                text(f"""
                    INSERT INTO {JOBS_TABLE} (job_id, status, output_format, quality, compression, file_count, created_at, updated_at)
                    VALUES (:job_id, :status, :output_format, :quality, :compression, :file_count, :now, :now)
                """),
                params,
            )
        return True

    def _fetch(self, job_id: str) -> Optional[ConversionJob]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {self._COLUMNS} FROM {JOBS_TABLE} WHERE job_id = :id"),
                {"id": job_id},
            ).fetchone()
        if not row:
            return None
        return ConversionJob(
            job_id=row[0],
            status=JobStatus(row[1]),
            output_format=OutputFormat(row[2]),
            quality=int(row[3]),
            compression=CompressionLevel(row[4]),
            file_count=int(row[5]),
            failed_count=row[6],
            error_message=row[7],
            archive_ref=row[8],
            created_at=datetime.fromisoformat(row[9]),
            updated_at=datetime.fromisoformat(row[10]),
        )

    def _save(self, job: ConversionJob) -> None:
        params = {
            "job_id": job.job_id,
            "status": job.status.value,
            "failed_count": job.failed_count,
            "error_message": job.error_message,
            "archive_ref": job.archive_ref,
            "now": job.updated_at.isoformat(),
        }
        with session(self._engine) as conn:
            conn.execute(
                text(f"""
                    UPDATE {JOBS_TABLE}
                    SET status = :status, failed_count = :failed_count, error_message = :error_message,
                        archive_ref = :archive_ref, updated_at = :now
                    WHERE job_id = :job_id
                """),
                params,
            )


# Singleton
_job_store: Optional[JobStore] = None
_job_store_lock = threading.Lock()


def get_job_store() -> JobStore:
    """Process-wide store selected by JOB_STORE ("sql" or "memory")."""
    global _job_store
    with _job_store_lock:
        if _job_store is None:
            if JOB_STORE == "memory":
                _job_store = InMemoryJobStore()
            else:
                _job_store = SqlJobStore(init_db())
            logger.info("Job store ready: %s", type(_job_store).__name__)
        return _job_store
