"""Orchestrator package - coordinates batch upload workflows."""
from .core import UploadManager
from .progress import ProgressAggregator
from .recovery import RecoveryGateway
from .session import BatchSession, SessionState
from .transcode import EXPORT_CONSTRAINTS, TranscodeCoordinator, TranscodeState
from .upload_worker import UploadCancelled, UploadWorker

__all__ = [
    "UploadManager",
    "BatchSession",
    "SessionState",
    "ProgressAggregator",
    "RecoveryGateway",
    "TranscodeCoordinator",
    "TranscodeState",
    "EXPORT_CONSTRAINTS",
    "UploadWorker",
    "UploadCancelled",
]
