"""Domain errors. The API layer maps these to HTTP status codes."""


class ConverterError(Exception):
    """Base class for all converter errors."""


class InvalidParameters(ConverterError):
    """Output format, quality or compression outside the supported sets."""


class EmptyBatch(ConverterError):
    """A bulk conversion was requested without any images."""


class JobNotFound(ConverterError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransition(ConverterError):
    """A status update would move a job backwards or out of a terminal state."""


class TranscodeError(ConverterError):
    """A single image could not be converted."""


class ArchiveCreationError(ConverterError):
    """The archive of converted images could not be written."""


class AllImagesFailed(ConverterError):
    def __init__(self, failed: int, first_error: str = ""):
        message = f"All {failed} image(s) failed to convert"
        if first_error:
            message = f"{message}: {first_error}"
        super().__init__(message)
        self.failed = failed


class ArchiveNotReady(ConverterError):
    """The archive was requested before the job completed."""
