"""
Pipeline Exceptions
===================

Custom exceptions raised across the extraction pipeline.
"""
from typing import Any, Optional


class ArchivistError(Exception):
    """Base exception for all extraction pipeline errors."""
    pass


class AcquisitionExhausted(ArchivistError):
    """Raised when every fetch strategy failed for a source."""

    def __init__(self, failure: Any):
        self.failure = failure
        attempted = ", ".join(a.method.value for a in failure.attempts if not a.skipped) or "none"
        super().__init__(f"All acquisition methods failed for {failure.source_url} (tried: {attempted})")


class FetchAttemptError(ArchivistError):
    """Raised by a single fetch strategy; the cascade moves on to the next one."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class OCRError(ArchivistError):
    """Raised when an OCR back-end fails or is unavailable."""
    pass


class StoreWriteError(ArchivistError):
    """Raised when a store write still fails after the bounded retries."""
    pass


class JobCancelled(ArchivistError):
    """Raised at a stage boundary once the job's cancel flag is set."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"cancelled (observed before {stage})")


class JobNotFound(ArchivistError):
    """Raised when an extraction id does not exist."""
    pass


class InvalidJobState(ArchivistError):
    """Raised when an operation is not allowed in the job's current status."""
    pass
