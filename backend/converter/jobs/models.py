"""Bulk conversion job and parameter models."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from converter.config import DEFAULT_COMPRESSION, DEFAULT_OUTPUT_FORMAT, DEFAULT_QUALITY
from converter.errors import InvalidParameters


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        # completed and failed share a rank: neither can follow the other
        return {"pending": 0, "processing": 1, "completed": 2, "failed": 2}[self.value]


class OutputFormat(str, Enum):
    WEBP = "webp"
    AVIF = "avif"

    @property
    def extension(self) -> str:
        return self.value


class CompressionLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ConversionParameters:
    """Uniform parameters applied to every image of a batch. Validated on construction."""

    output_format: OutputFormat
    quality: int
    compression: CompressionLevel

    def __post_init__(self):
        try:
            out_format = OutputFormat(str(getattr(self.output_format, "value", self.output_format)).lower())
        except ValueError:
            supported = ", ".join(f.value for f in OutputFormat)
            raise InvalidParameters(
                f"Invalid output format '{self.output_format}'. Supported formats: {supported}"
            ) from None
        if isinstance(self.quality, bool) or not isinstance(self.quality, int):
            raise InvalidParameters("Quality must be an integer between 1 and 100")
        if not 1 <= self.quality <= 100:
            raise InvalidParameters(f"Quality must be between 1 and 100 (got {self.quality})")
        try:
            comp = CompressionLevel(str(getattr(self.compression, "value", self.compression)).lower())
        except ValueError:
            supported = ", ".join(c.value for c in CompressionLevel)
            raise InvalidParameters(
                f"Invalid compression '{self.compression}'. Supported values: {supported}"
            ) from None
        object.__setattr__(self, "output_format", out_format)
        object.__setattr__(self, "compression", comp)

    @classmethod
    def from_raw(
        cls,
        output_format: Optional[str] = None,
        quality: Union[int, str, None] = None,
        compression: Optional[str] = None,
    ) -> "ConversionParameters":
        """Build from request values (form fields are strings). Missing values use the configured defaults."""
        if quality is None or (isinstance(quality, str) and not quality.strip()):
            q = DEFAULT_QUALITY
        elif isinstance(quality, str):
            try:
                q = int(quality.strip())
            except ValueError:
                raise InvalidParameters("Quality must be an integer between 1 and 100") from None
        else:
            q = quality
        return cls(
            output_format=(output_format or DEFAULT_OUTPUT_FORMAT).strip(),
            quality=q,
            compression=(compression or DEFAULT_COMPRESSION).strip(),
        )


@dataclass(frozen=True)
class UploadedImage:
    """One image of a batch as received from the client."""

    data: bytes
    filename: str = ""

    @property
    def stem(self) -> str:
        return Path(self.filename).stem if self.filename else ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConversionJob:
    """Snapshot of a bulk conversion job. Stores hand out copies, never live records."""

    job_id: str
    status: JobStatus
    output_format: OutputFormat
    quality: int
    compression: CompressionLevel
    file_count: int
    error_message: Optional[str] = None
    archive_ref: Optional[str] = None
    failed_count: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def transitioned(
        self,
        status: JobStatus,
        error_message: Optional[str] = None,
        archive_ref: Optional[str] = None,
        failed_count: Optional[int] = None,
    ) -> "ConversionJob":
        return replace(
            self,
            status=status,
            error_message=error_message if error_message is not None else self.error_message,
            archive_ref=archive_ref if archive_ref is not None else self.archive_ref,
            failed_count=failed_count if failed_count is not None else self.failed_count,
            updated_at=_utcnow(),
        )
