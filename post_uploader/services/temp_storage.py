"""
Temp Storage Service - Single Responsibility: place and clean temporary files.

All transcoded outputs live in one sandbox directory, so anything in it that
no durable record points to is an orphan.
"""
import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Iterable, List, Optional, Union

from blake3 import blake3

from ..errors import StorageError
from ..models import DEFAULT_CACHE_DIR
from ..protocols import ITempStorage

logger = logging.getLogger(__name__)

DEFAULT_TEMP_DIR = DEFAULT_CACHE_DIR / "tmp"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


async def blake3_file(path: Path) -> str:
    """Calculate BLAKE3 hash of file asynchronously (non-blocking)."""
    def _hash_file():
        hasher = blake3()
        with open(path, 'rb') as f:
            while True:
                chunk = f.read(65536)  # 64KB chunks
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.hexdigest()

    return await asyncio.to_thread(_hash_file)


class TempFileStorage(ITempStorage):
    """
    Sandbox directory for transcoded files.

    Usage:
        temp = TempFileStorage(Path("/tmp/uploads"))
        output = temp.new_path("post123", ".mp4")
        ...
        await temp.delete_temp(output)
    """

    def __init__(self, root: Optional[Path] = None):
        self._root = Path(root or DEFAULT_TEMP_DIR)

    @property
    def root(self) -> Path:
        return self._root

    def contains(self, path: Union[str, Path]) -> bool:
        """True if path is inside the sandbox."""
        try:
            Path(path).resolve().relative_to(self._root.resolve())
            return True
        except ValueError:
            return False

    def new_path(self, name: str, suffix: str = "") -> Path:
        """Unique path in the sandbox; the file is not created."""
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create temp directory {self._root}: {e}") from e
        safe_name = _UNSAFE_CHARS.sub("_", name).strip("_") or "asset"
        return self._root / f"{safe_name}-{uuid.uuid4().hex[:12]}{suffix}"

    async def write_temp(self, name: str, data: bytes, suffix: str = "") -> Path:
        path = self.new_path(name, suffix)
        try:
            await asyncio.to_thread(path.write_bytes, data)
        except OSError as e:
            raise StorageError(f"Cannot write temp file {path}: {e}") from e
        return path

    async def delete_temp(self, path: Union[str, Path]) -> bool:
        """Delete a sandbox file. Returns False if it did not exist."""
        path = Path(path)
        if not self.contains(path):
            logger.warning(f"Refusing to delete file outside temp sandbox: {path}")
            return False
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot delete temp file {path}: {e}") from e
        logger.debug(f"Deleted temp file {path.name}")
        return True

    async def list_orphaned_temp(self, referenced: Iterable[Union[str, Path]]) -> List[Path]:
        """Files in the sandbox not present in `referenced`."""
        keep = {Path(p).resolve() for p in referenced if p}

        def _scan() -> List[Path]:
            if not self._root.exists():
                return []
            return sorted(
                p for p in self._root.iterdir()
                if p.is_file() and p.resolve() not in keep
            )

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise StorageError(f"Cannot list temp directory {self._root}: {e}") from e
