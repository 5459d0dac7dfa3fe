"""Services for post_uploader module."""
from .api_client import HTTPUploadClient
from .assets import LocalAssetResolver, build_digest
from .record_store import JSONRecordStore
from .temp_storage import TempFileStorage, blake3_file
from .transcoder import FFmpegTranscoder

__all__ = [
    "HTTPUploadClient",
    "LocalAssetResolver",
    "build_digest",
    "JSONRecordStore",
    "TempFileStorage",
    "blake3_file",
    "FFmpegTranscoder",
]
