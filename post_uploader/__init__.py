"""
Post uploader - batch upload of photo and video assets attached to posts.

Videos are transcoded one at a time, assets are uploaded in resumable
chunks, and every post keeps a durable record until the API acknowledged
it, so an interrupted batch picks up where it stopped.

Usage:
    from post_uploader import UploadManager, UploadConfig
    from post_uploader.services import (
        FFmpegTranscoder, HTTPUploadClient, JSONRecordStore, LocalAssetResolver, TempFileStorage,
    )

    config = UploadConfig.from_env()
    async with HTTPUploadClient(api_url, token=token) as api:
        manager = UploadManager(
            LocalAssetResolver(),
            FFmpegTranscoder(),
            api,
            JSONRecordStore(config.records_dir),
            TempFileStorage(config.temp_dir),
            config,
        )
        manager.on_progress(lambda update: print(f"{update.percent:.1f}%"))

        # Resume whatever a previous run left behind
        session = await manager.check_cached_uploads()
        if session:
            await session.wait()

        session = await manager.start_new_upload(
            [{"post_id": "p1", "key": "k1", "asset": "~/Pictures/IMG_0001.jpg"}],
            gallery_id="g1",
        )
        summary = await session.wait()
"""
from .errors import (
    AlreadyUploadingError,
    AssetError,
    DigestError,
    MalformedPostError,
    PostUploaderError,
    StorageError,
    TranscodeError,
    UploadError,
    UploadTransientError,
)
from .models import (
    AssetInfo,
    AssetResult,
    BatchSummary,
    MediaKind,
    PostDescriptor,
    ProgressUpdate,
    RecordState,
    TranscodeConstraints,
    UploadConfig,
    UploadRecord,
)
from .orchestrator import BatchSession, UploadManager

__version__ = "0.1.0"
__all__ = [
    # Main
    "UploadManager",
    "BatchSession",
    # Models
    "AssetInfo",
    "AssetResult",
    "BatchSummary",
    "MediaKind",
    "PostDescriptor",
    "ProgressUpdate",
    "RecordState",
    "TranscodeConstraints",
    "UploadConfig",
    "UploadRecord",
    # Errors
    "PostUploaderError",
    "AlreadyUploadingError",
    "AssetError",
    "MalformedPostError",
    "TranscodeError",
    "UploadTransientError",
    "UploadError",
    "DigestError",
    "StorageError",
]
