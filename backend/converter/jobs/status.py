"""Read-only job status lookup for client polling."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from converter.config import ARCHIVE_DIR
from converter.errors import ArchiveNotReady
from converter.jobs.models import JobStatus
from converter.jobs.store import JobStore, get_job_store

logger = logging.getLogger("converter.jobs.status")


@dataclass(frozen=True)
class JobStatusView:
    job_id: str
    status: JobStatus
    download_ref: Optional[str] = None  # archive reference, completed jobs only
    error_message: Optional[str] = None  # failed jobs only
    failed_count: Optional[int] = None  # terminal jobs only


class StatusQueryService:
    def __init__(self, store: JobStore, archive_dir: Path = ARCHIVE_DIR):
        self.store = store
        self.archive_dir = Path(archive_dir)

    def get_status(self, job_id: str) -> JobStatusView:
        """Raises JobNotFound for unknown ids."""
        job = self.store.get(job_id)
        if job.status == JobStatus.COMPLETED:
            return JobStatusView(job.job_id, job.status, download_ref=job.archive_ref, failed_count=job.failed_count)
        if job.status == JobStatus.FAILED:
            return JobStatusView(
                job.job_id,
                job.status,
                error_message=job.error_message or "Conversion failed",
                failed_count=job.failed_count,
            )
        return JobStatusView(job.job_id, job.status)

    def archive_path(self, job_id: str) -> Path:
        """Location of a completed job's archive. Raises JobNotFound or ArchiveNotReady."""
        view = self.get_status(job_id)
        if view.status != JobStatus.COMPLETED or not view.download_ref:
            raise ArchiveNotReady(f"Archive for job {job_id} is not ready")
        path = self.archive_dir / Path(view.download_ref).name
        if not path.is_file():
            logger.warning("Archive %s for completed job %s is missing", path, job_id)
            raise ArchiveNotReady(f"Archive for job {job_id} is no longer available")
        return path


def get_status_service() -> StatusQueryService:
    return StatusQueryService(get_job_store())
