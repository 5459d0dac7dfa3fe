"""
Persistence & recovery for upload records.

The gateway is the only component that writes to the record store or removes
temp files on behalf of a record. Flow on startup:
1. incomplete() → records that never reached a terminal state
2. prepare_for_resume() → validate temp files, fix resumable offsets
3. purge() when nothing is left to resume
"""
import logging
from pathlib import Path
from typing import List

from ..models import RecordState, UploadRecord
from ..protocols import IRecordStore, ITempStorage
from ..services.temp_storage import blake3_file

logger = logging.getLogger(__name__)


class RecoveryGateway:
    """
    Owns durable upload records and their temp files.

    Usage:
        gateway = RecoveryGateway(store, temp_storage)
        records = await gateway.incomplete()
        if not records:
            await gateway.purge()
    """

    def __init__(self, store: IRecordStore, temp_storage: ITempStorage):
        self._store = store  # not owned; lifetime managed by the caller
        self._temp = temp_storage

    async def create(self, record: UploadRecord) -> None:
        await self._store.create(record)

    async def save(self, record: UploadRecord) -> None:
        await self._store.save(record)

    async def discard(self, record: UploadRecord) -> None:
        """Remove a record that never started (batch rejected)."""
        await self._store.delete(record)

    async def complete(self, record: UploadRecord) -> None:
        """Digest acknowledged: drop the record and its temp file."""
        record.state = RecordState.SUCCEEDED
        record.error = None
        await self._store.delete(record)
        await self._release_temp(record)
        logger.debug(f"[recovery] Post {record.post_id} completed, record removed")

    async def mark_failed(self, record: UploadRecord, error: Exception) -> None:
        """Terminal failure: keep the record (and its offset), drop the temp file."""
        record.state = RecordState.FAILED
        record.error = str(error)
        await self._release_temp(record)
        await self._store.save(record)

    async def abandon(self, record: UploadRecord) -> None:
        """Cancelled: keep the record resumable, drop the temp file."""
        digest_pending = self.is_digest_pending(record)
        record.state = RecordState.ABANDONED
        if await self._release_temp(record) and not digest_pending:
            # a new export will differ byte-wise
            record.uploaded_bytes = 0
        await self._store.save(record)

    @staticmethod
    def is_digest_pending(record: UploadRecord) -> bool:
        """All bytes acknowledged, only the post creation is missing."""
        return record.total_bytes > 0 and record.uploaded_bytes >= record.total_bytes

    async def _release_temp(self, record: UploadRecord) -> bool:
        if not record.temp_path:
            return False
        await self._temp.delete_temp(record.temp_path)
        record.temp_path = None
        record.temp_digest = None
        return True

    async def incomplete(self) -> List[UploadRecord]:
        """Non-terminal records, oldest first."""
        records = await self._store.fetch_incomplete()
        return sorted(records, key=lambda r: r.created_at)

    async def failed(self) -> List[UploadRecord]:
        records = await self._store.fetch_all()
        return sorted(
            (r for r in records if r.state == RecordState.FAILED),
            key=lambda r: r.created_at,
        )

    async def has_valid_temp(self, record: UploadRecord) -> bool:
        """True if the record's transcoded file exists and matches its digest."""
        if not record.temp_path or not record.temp_digest:
            return False
        path = Path(record.temp_path)
        if not path.is_file():
            return False
        try:
            digest = await blake3_file(path)
        except OSError as e:
            logger.warning(f"[recovery] Cannot hash {path.name}: {e}")
            return False
        return digest == record.temp_digest

    async def prepare_for_resume(self, record: UploadRecord, resumable: bool) -> UploadRecord:
        """
        Bring a stored record back to a dispatchable state.

        Args:
            record: Record loaded from the store
            resumable: Whether the API accepts uploads from a non-zero offset

        Returns:
            The same record, saved
        """
        if self.is_digest_pending(record):
            # bytes are on the server; never send them again
            record.state = RecordState.UPLOADED
        elif record.is_video and not await self.has_valid_temp(record):
            if record.temp_path:
                logger.info(f"[resume] Temp file for {record.post_id} missing or changed, re-transcoding")
                await self._release_temp(record)
            record.uploaded_bytes = 0
            record.state = RecordState.PENDING

        if not resumable and record.uploaded_bytes and record.state != RecordState.UPLOADED:
            logger.info(f"[resume] API cannot resume, restarting {record.post_id} from zero")
            record.uploaded_bytes = 0

        if record.state in (RecordState.UPLOADING, RecordState.ABANDONED, RecordState.FAILED):
            record.state = RecordState.TRANSCODED if record.is_video else RecordState.PENDING
        record.error = None
        await self._store.save(record)
        return record

    async def referenced_temp_paths(self) -> List[str]:
        records = await self._store.fetch_incomplete()
        return [r.temp_path for r in records if r.temp_path]

    async def purge(self) -> int:
        """
        Delete temp files no live record references and drop terminal records.

        Returns:
            Number of temp files removed
        """
        dropped = await self._store.delete_where(lambda r: r.state.is_terminal)
        orphans = await self._temp.list_orphaned_temp(await self.referenced_temp_paths())
        removed = 0
        for path in orphans:
            if await self._temp.delete_temp(path):
                removed += 1
        if removed or dropped:
            logger.info(f"[recovery] Removed {removed} orphaned temp files, {dropped} finished records")
        return removed
