"""
Error taxonomy for post uploads.

Asset-level errors carry the post_id they belong to so the orchestrator can
report them through the per-asset completion callback. Only
AlreadyUploadingError and StorageError reject a whole batch.
"""
from typing import Optional


class PostUploaderError(Exception):
    """Base class for all upload errors."""


class AlreadyUploadingError(PostUploaderError):
    """Raised when a batch is started while another one is active."""

    def __init__(self, message: str = "An upload batch is already in progress"):
        super().__init__(message)


class StorageError(PostUploaderError):
    """Durable record store or temp filesystem failure."""


class AssetError(PostUploaderError):
    """Failure scoped to a single asset of a batch."""

    retryable = False

    def __init__(self, message: str, post_id: Optional[str] = None):
        super().__init__(message)
        self.post_id = post_id


class MalformedPostError(AssetError):
    """Post descriptor is incomplete or its asset cannot be resolved."""


class TranscodeError(AssetError):
    """Video export failed. Terminal for the asset."""


class UploadTransientError(AssetError):
    """Network timeout or server-side error; the chunk may be retried."""

    retryable = True

    def __init__(self, message: str, post_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, post_id)
        self.status_code = status_code


class UploadError(AssetError):
    """Upload failed for good (non-retryable, or retries exhausted)."""

    def __init__(self, message: str, post_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, post_id)
        self.status_code = status_code


class DigestError(AssetError):
    """Post creation call failed after all bytes were uploaded."""
