"""
Archive job error taxonomy.

Per-file errors (FetchError) are absorbed by the pipeline and counted as
skips. Every other ArchiveJobError is job-level and decides the single
externally visible outcome; ``status_code`` is the HTTP status used when the
response has not been committed yet.
"""

from typing import Optional


class ArchiveJobError(Exception):
    """Base exception for archive job failures"""

    status_code: int = 500

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class ResolutionError(ArchiveJobError):
    """Listing or metadata resolution failed; the job fails before fetching"""

    pass


class NoFilesFoundError(ResolutionError):
    """Resolution succeeded but produced no entries"""

    status_code = 404


class FetchError(ArchiveJobError):
    """A single file could not be fetched after all retries (non-fatal)"""

    def __init__(self, message: str, file_id: str, attempts: int = 0):
        super().__init__(message)
        self.file_id = file_id
        self.attempts = attempts


class ArchiveEncodeError(ArchiveJobError):
    """ZIP encoding or archive write fault (fatal)"""

    pass


class TransportError(ArchiveJobError):
    """Response stream write failed or the client went away"""

    pass


class JobTimeoutError(ArchiveJobError):
    """The job deadline expired"""

    status_code = 408
