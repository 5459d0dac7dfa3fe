"""
JSONRecordStore - Durable store for upload records.

One JSON document per post in a directory, so saves of different records
never contend. Saves of the same record are serialized by a per-post lock and
written atomically (temp file + rename).
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..errors import StorageError
from ..models import DEFAULT_CACHE_DIR, UploadRecord
from ..protocols import IRecordStore

logger = logging.getLogger(__name__)

DEFAULT_RECORDS_DIR = DEFAULT_CACHE_DIR / "records"
RECORD_SUFFIX = ".json"


class JSONRecordStore(IRecordStore):
    """
    Key-indexed record store backed by JSON files.

    Corrupt documents are skipped with a warning instead of failing the scan.
    """

    def __init__(self, records_dir: Optional[Path] = None):
        self._dir = Path(records_dir or DEFAULT_RECORDS_DIR)
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def directory(self) -> Path:
        return self._dir

    def _lock_for(self, post_id: str) -> asyncio.Lock:
        if post_id not in self._locks:
            self._locks[post_id] = asyncio.Lock()
        return self._locks[post_id]

    def _path_for(self, post_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in post_id)
        return self._dir / f"{safe}{RECORD_SUFFIX}"

    def _write(self, record: UploadRecord) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._path_for(record.post_id)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(tmp, path)

    def _read(self, path: Path) -> Optional[UploadRecord]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return UploadRecord.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("RecordStore: Skipping unreadable record %s: %s", path.name, e)
            return None

    def _read_all(self) -> List[UploadRecord]:
        if not self._dir.exists():
            return []
        records = []
        for path in sorted(self._dir.glob(f"*{RECORD_SUFFIX}")):
            record = self._read(path)
            if record is not None:
                records.append(record)
        return records

    async def create(self, record: UploadRecord) -> None:
        existing = await self.fetch(record.post_id)
        if existing is not None:
            logger.info("RecordStore: Replacing existing record for post %s (%s)", record.post_id, existing.state.value)
        await self.save(record)

    async def save(self, record: UploadRecord) -> None:
        async with self._lock_for(record.post_id):
            record.touch()
            try:
                await asyncio.to_thread(self._write, record)
            except OSError as e:
                raise StorageError(f"Cannot save record {record.post_id}: {e}") from e

    async def fetch(self, post_id: str) -> Optional[UploadRecord]:
        try:
            return await asyncio.to_thread(self._read, self._path_for(post_id))
        except OSError as e:
            raise StorageError(f"Cannot read record {post_id}: {e}") from e

    async def fetch_all(self) -> List[UploadRecord]:
        try:
            return await asyncio.to_thread(self._read_all)
        except OSError as e:
            raise StorageError(f"Cannot read records from {self._dir}: {e}") from e

    async def fetch_incomplete(self) -> List[UploadRecord]:
        records = await self.fetch_all()
        return [r for r in records if not r.state.is_terminal]

    async def delete(self, record: UploadRecord) -> None:
        async with self._lock_for(record.post_id):
            try:
                await asyncio.to_thread(self._path_for(record.post_id).unlink)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(f"Cannot delete record {record.post_id}: {e}") from e
        self._locks.pop(record.post_id, None)

    async def delete_where(self, predicate: Callable[[UploadRecord], bool]) -> int:
        deleted = 0
        for record in await self.fetch_all():
            if predicate(record):
                await self.delete(record)
                deleted += 1
        if deleted:
            logger.info("RecordStore: Deleted %d records", deleted)
        return deleted
