"""
Models for post_uploader.

Immutable dataclasses for inputs and results, one mutable dataclass
(UploadRecord) for the durable per-post upload state.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import os

DEFAULT_CACHE_DIR = Path.home() / ".cache" / "post_uploader"

MB = 1024 * 1024


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MediaKind(Enum):
    """Kind of a local media asset."""
    PHOTO = "photo"
    VIDEO = "video"


class RecordState(Enum):
    """Lifecycle state of an upload record."""
    PENDING = "pending"
    TRANSCODING = "transcoding"
    TRANSCODED = "transcoded"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"  # all bytes sent, digest pending
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"  # cancelled, resumable on next start

    @property
    def is_terminal(self) -> bool:
        return self in (RecordState.SUCCEEDED, RecordState.FAILED)


class Stage(Enum):
    """Pipeline stage a progress sample belongs to."""
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"


@dataclass(frozen=True)
class PostDescriptor:
    """A post to attach an uploaded asset to."""
    post_id: str
    key: str
    asset: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PostDescriptor":
        """Build from the {"post_id", "key", "asset"} mapping form."""
        return cls(
            post_id=str(data.get("post_id") or ""),
            key=str(data.get("key") or ""),
            asset=str(data.get("asset") or ""),
        )

    @property
    def missing_fields(self) -> List[str]:
        return [name for name in ("post_id", "key", "asset") if not getattr(self, name)]


@dataclass(frozen=True)
class AssetInfo:
    """Resolved local asset."""
    asset_id: str
    kind: MediaKind
    size: int
    path: Path
    content_type: str = "application/octet-stream"
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    captured_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def is_video(self) -> bool:
        return self.kind == MediaKind.VIDEO


@dataclass(frozen=True)
class TranscodeConstraints:
    """Output policy for video exports."""
    container: str = "mp4"
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    max_width: int = 1920
    max_height: int = 1080
    video_bitrate: int = 6_500_000
    audio_bitrate: int = 128_000
    audio_sample_rate: int = 44_100

    @property
    def suffix(self) -> str:
        return f".{self.container}"

    @property
    def total_bitrate(self) -> int:
        return self.video_bitrate + self.audio_bitrate

    def estimate_output_size(self, asset: AssetInfo) -> int:
        """
        Estimate the exported size of a video before it is transcoded.

        Uses the target bitrate when the duration is known, never more than
        the raw size.
        """
        if not asset.duration or asset.duration <= 0:
            return asset.size
        estimate = int(asset.duration * self.total_bitrate / 8)
        return max(1, min(asset.size, estimate))


@dataclass
class UploadRecord:
    """Durable upload state of one post."""
    post_id: str
    post_key: str
    asset_ref: str
    kind: MediaKind
    gallery_id: str
    state: RecordState = RecordState.PENDING
    total_bytes: int = 0
    uploaded_bytes: int = 0
    temp_path: Optional[str] = None
    temp_digest: Optional[str] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def is_video(self) -> bool:
        return self.kind == MediaKind.VIDEO

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.total_bytes - self.uploaded_bytes)

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "post_id": self.post_id,
            "post_key": self.post_key,
            "asset_ref": self.asset_ref,
            "kind": self.kind.value,
            "gallery_id": self.gallery_id,
            "state": self.state.value,
            "total_bytes": self.total_bytes,
            "uploaded_bytes": self.uploaded_bytes,
            "temp_path": self.temp_path,
            "temp_digest": self.temp_digest,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UploadRecord":
        return cls(
            post_id=data["post_id"],
            post_key=data["post_key"],
            asset_ref=data["asset_ref"],
            kind=MediaKind(data["kind"]),
            gallery_id=data.get("gallery_id") or "",
            state=RecordState(data.get("state", RecordState.PENDING.value)),
            total_bytes=int(data.get("total_bytes") or 0),
            uploaded_bytes=int(data.get("uploaded_bytes") or 0),
            temp_path=data.get("temp_path"),
            temp_digest=data.get("temp_digest"),
            error=data.get("error"),
            created_at=data.get("created_at") or _now_iso(),
            updated_at=data.get("updated_at") or _now_iso(),
        )


@dataclass(frozen=True)
class ProgressSample:
    """One progress signal from a pipeline stage."""
    stage: Stage
    asset_id: str
    fraction: Optional[float] = None
    bytes_delta: int = 0

    @classmethod
    def transcoding(cls, asset_id: str, fraction: float) -> "ProgressSample":
        return cls(stage=Stage.TRANSCODING, asset_id=asset_id, fraction=fraction)

    @classmethod
    def uploading(cls, asset_id: str, bytes_delta: int) -> "ProgressSample":
        return cls(stage=Stage.UPLOADING, asset_id=asset_id, bytes_delta=bytes_delta)


@dataclass(frozen=True)
class ProgressUpdate:
    """Overall batch progress."""
    fraction: float
    throughput: float  # bytes per second
    uploaded_bytes: int
    total_bytes: int

    @property
    def percent(self) -> float:
        return self.fraction * 100


@dataclass(frozen=True)
class AssetResult:
    """Terminal outcome of one asset: (post metadata, is_video, file_size, error)."""
    post_id: str
    gallery_id: str
    is_video: bool
    file_size: int = 0
    digest: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, record: UploadRecord, digest: Optional[Dict[str, Any]]):
        return cls(
            post_id=record.post_id,
            gallery_id=record.gallery_id,
            is_video=record.is_video,
            file_size=record.total_bytes,
            digest=digest,
        )

    @classmethod
    def fail(cls, post_id: str, gallery_id: str, error: Exception, is_video: bool = False, file_size: int = 0):
        return cls(
            post_id=post_id,
            gallery_id=gallery_id,
            is_video=is_video,
            file_size=file_size,
            error=error,
        )


@dataclass(frozen=True)
class BatchSummary:
    """Result of a batch session."""
    gallery_id: str
    total_assets: int
    completed: int
    failed: int
    abandoned: int = 0
    results: List[AssetResult] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[Exception] = None

    @property
    def all_success(self) -> bool:
        return self.error is None and not self.cancelled and self.failed == 0 and self.abandoned == 0

    @property
    def partial(self) -> bool:
        return self.completed > 0 and not self.all_success


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    return float(value) if value not in (None, "") else default


@dataclass(frozen=True)
class UploadConfig:
    """Immutable configuration for upload operations."""
    chunk_size: int = 1 * MB
    max_chunk_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    chunk_timeout: float = 60.0
    transcode_timeout: float = 1800.0
    max_parallel_uploads: int = 3
    min_progress_delta: float = 0.01
    transcode_weight: float = 0.5
    temp_dir: Path = DEFAULT_CACHE_DIR / "tmp"
    records_dir: Path = DEFAULT_CACHE_DIR / "records"

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.max_chunk_attempts < 1:
            raise ValueError("max_chunk_attempts must be at least 1")
        if self.max_parallel_uploads < 1:
            raise ValueError("max_parallel_uploads must be at least 1")
        if not 0.0 <= self.transcode_weight < 1.0:
            raise ValueError("transcode_weight must be in [0, 1)")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.backoff_max, self.backoff_base * (2 ** attempt))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "UploadConfig":
        """Build config from POST_UPLOADER_* environment variables."""
        env = os.environ if env is None else env
        defaults = cls()
        cache_dir = env.get("POST_UPLOADER_CACHE_DIR")
        base = Path(cache_dir).expanduser() if cache_dir else None
        return cls(
            chunk_size=_env_int(env, "POST_UPLOADER_CHUNK_SIZE", defaults.chunk_size),
            max_chunk_attempts=_env_int(env, "POST_UPLOADER_MAX_ATTEMPTS", defaults.max_chunk_attempts),
            backoff_base=_env_float(env, "POST_UPLOADER_BACKOFF_BASE", defaults.backoff_base),
            backoff_max=_env_float(env, "POST_UPLOADER_BACKOFF_MAX", defaults.backoff_max),
            chunk_timeout=_env_float(env, "POST_UPLOADER_CHUNK_TIMEOUT", defaults.chunk_timeout),
            transcode_timeout=_env_float(env, "POST_UPLOADER_TRANSCODE_TIMEOUT", defaults.transcode_timeout),
            max_parallel_uploads=_env_int(env, "POST_UPLOADER_MAX_PARALLEL", defaults.max_parallel_uploads),
            min_progress_delta=_env_float(env, "POST_UPLOADER_PROGRESS_DELTA", defaults.min_progress_delta),
            transcode_weight=_env_float(env, "POST_UPLOADER_TRANSCODE_WEIGHT", defaults.transcode_weight),
            temp_dir=base / "tmp" if base else defaults.temp_dir,
            records_dir=base / "records" if base else defaults.records_dir,
        )
