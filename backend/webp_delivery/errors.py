"""Error taxonomy for conversion, cache and bulk-job failures."""
from pathlib import Path
from typing import Optional, Union


class ConversionError(RuntimeError):
    """Raised when a single source image cannot be turned into a committed WebP artifact."""

    reason = "conversion_failed"

    def __init__(self, message: str, source: Optional[Union[str, Path]] = None):
        self.source = str(source) if source is not None else None
        super().__init__(message)


class InvalidImage(ConversionError):
    reason = "invalid_image"


class NoSizeBenefit(ConversionError):
    reason = "no_size_benefit"


class CommitFailed(ConversionError):
    reason = "commit_failed"


class FileAccessError(RuntimeError):
    """Source file is missing or unreadable."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        self.path = str(path) if path is not None else None
        super().__init__(message)


class JobError(RuntimeError):
    """Job-level failure surfaced to the caller of a bulk operation."""

    status_code = 400

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        out = {"message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NoImagesFound(JobError):
    status_code = 404


class Unauthorized(JobError):
    status_code = 403


class ProgressConflict(JobError):
    """Persisted progress changed between read and write."""

    status_code = 409
