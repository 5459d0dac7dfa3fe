"""
Protocols (Interfaces) for the collaborators of the upload engine.

Following Interface Segregation Principle - small, focused interfaces.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Union, runtime_checkable

from .models import AssetInfo, TranscodeConstraints, UploadRecord

# (asset_id, fraction) - may be sync or async
TranscodeProgressCallback = Callable[[str, float], Union[None, Awaitable[None]]]


@runtime_checkable
class IAssetResolver(Protocol):
    """Interface for resolving asset references to local media."""

    async def resolve(self, asset_ref: str) -> AssetInfo:
        """Return size, kind and byte source of an asset. Raises MalformedPostError."""
        ...


@runtime_checkable
class ITranscoder(Protocol):
    """Interface for the video export service."""

    async def transcode(
        self,
        asset: AssetInfo,
        output_path: Path,
        constraints: TranscodeConstraints,
        progress_callback: Optional[TranscodeProgressCallback] = None,
    ) -> Path:
        """Export asset to output_path and return the produced file."""
        ...


@runtime_checkable
class IUploadAPIClient(Protocol):
    """Interface for the remote upload API."""

    supports_resumable_offsets: bool

    async def upload_chunk(self, post_id: str, key: str, data: bytes, offset: int, total: int) -> Dict[str, Any]:
        """Upload one byte range of a post's asset."""
        ...

    async def create_post_digest(self, post_id: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Finalize a post once its asset is fully uploaded."""
        ...


class IRecordStore(ABC):
    """Interface for durable upload records (Repository Pattern)."""

    @abstractmethod
    async def create(self, record: UploadRecord) -> None:
        pass

    @abstractmethod
    async def save(self, record: UploadRecord) -> None:
        """Persist record. Idempotent."""
        pass

    @abstractmethod
    async def fetch(self, post_id: str) -> Optional[UploadRecord]:
        pass

    @abstractmethod
    async def fetch_all(self) -> List[UploadRecord]:
        pass

    @abstractmethod
    async def fetch_incomplete(self) -> List[UploadRecord]:
        """Records not in a terminal state."""
        pass

    @abstractmethod
    async def delete(self, record: UploadRecord) -> None:
        pass

    @abstractmethod
    async def delete_where(self, predicate: Callable[[UploadRecord], bool]) -> int:
        pass


class ITempStorage(ABC):
    """Interface for temporary file placement and cleanup."""

    @abstractmethod
    def new_path(self, name: str, suffix: str = "") -> Path:
        pass

    @abstractmethod
    async def write_temp(self, name: str, data: bytes, suffix: str = "") -> Path:
        pass

    @abstractmethod
    async def delete_temp(self, path: Union[str, Path]) -> bool:
        pass

    @abstractmethod
    async def list_orphaned_temp(self, referenced: Iterable[Union[str, Path]]) -> List[Path]:
        pass
