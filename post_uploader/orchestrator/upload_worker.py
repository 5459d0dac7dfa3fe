"""
Chunked upload of one finalized asset.

Flow:
1. Read the byte source from the resumable offset in chunk_size pieces
2. Send each chunk (bounded retries with exponential backoff)
3. Account progress + persist the offset after every acknowledged chunk
4. Create the post (digest) and release the record
"""
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple
import asyncio
import logging

from ..errors import DigestError, UploadError, UploadTransientError
from ..models import ProgressSample, RecordState, UploadConfig, UploadRecord
from ..protocols import IUploadAPIClient
from .progress import ProgressAggregator
from .recovery import RecoveryGateway

logger = logging.getLogger(__name__)


class UploadCancelled(Exception):
    """Raised at a chunk boundary when the batch was cancelled."""


class UploadWorker:
    """
    Transfers finalized assets to the upload API.

    Usage:
        worker = UploadWorker(api_client, gateway, config)
        digest = await worker.upload(record, source_path, metadata, progress)
    """

    def __init__(
        self,
        api_client: IUploadAPIClient,
        gateway: RecoveryGateway,
        config: Optional[UploadConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._api = api_client
        self._gateway = gateway
        self._config = config or UploadConfig()
        self._sleep = sleep

    @property
    def resumable(self) -> bool:
        return bool(getattr(self._api, "supports_resumable_offsets", False))

    async def upload(
        self,
        record: UploadRecord,
        source: Path,
        metadata: Dict[str, Any],
        progress: ProgressAggregator,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> Dict[str, Any]:
        """
        Upload `source` for `record` and create the post.

        Returns:
            Digest payload returned by the API

        Raises:
            UploadCancelled: batch cancelled at a chunk boundary
            UploadError: non-retryable error or retries exhausted
            DigestError: post creation failed
        """
        source = Path(source)
        try:
            total = source.stat().st_size
        except OSError as e:
            raise UploadError(f"Upload source unavailable: {source}", record.post_id) from e
        record.total_bytes = total
        offset = record.uploaded_bytes if self.resumable else 0
        offset = min(offset, total)
        if offset != record.uploaded_bytes:
            record.uploaded_bytes = offset

        if offset < total:
            record.state = RecordState.UPLOADING
            await self._gateway.save(record)
            if offset:
                logger.info(f"[upload] Resuming {record.post_id} at byte {offset}/{total}")

            async for chunk_offset, chunk in self._read_chunks(source, offset, total):
                if is_cancelled():
                    raise UploadCancelled(record.post_id)
                await self._send_chunk(record, chunk, chunk_offset, total)
                await progress.apply(ProgressSample.uploading(record.post_id, len(chunk)), record=record)
                await self._gateway.save(record)

        if is_cancelled():
            raise UploadCancelled(record.post_id)

        return await self.finalize(record, metadata)

    async def finalize(self, record: UploadRecord, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Create the post for a record whose bytes are all acknowledged."""
        record.state = RecordState.UPLOADED
        await self._gateway.save(record)

        try:
            digest = await self._api.create_post_digest(record.post_id, metadata)
        except DigestError as e:
            if e.post_id is None:
                e.post_id = record.post_id
            raise
        except UploadError as e:
            raise DigestError(f"Post creation failed: {e}", record.post_id) from e

        await self._gateway.complete(record)
        logger.info(f"[upload] Post {record.post_id} created ({record.total_bytes} bytes)")
        return digest or {}

    async def _read_chunks(self, source: Path, offset: int, total: int) -> AsyncIterator[Tuple[int, bytes]]:
        chunk_size = self._config.chunk_size

        def _read(at: int) -> bytes:
            with open(source, "rb") as f:
                f.seek(at)
                return f.read(chunk_size)

        position = offset
        while position < total:
            chunk = await asyncio.to_thread(_read, position)
            if not chunk:
                break
            yield position, chunk
            position += len(chunk)

    async def _send_chunk(self, record: UploadRecord, chunk: bytes, offset: int, total: int) -> None:
        attempts = self._config.max_chunk_attempts
        for attempt in range(attempts):
            try:
                await asyncio.wait_for(
                    self._api.upload_chunk(record.post_id, record.post_key, chunk, offset, total),
                    timeout=self._config.chunk_timeout,
                )
                return
            except (UploadTransientError, asyncio.TimeoutError) as e:
                reason = str(e) or "chunk timed out"
                if attempt == attempts - 1:
                    raise UploadError(
                        f"Chunk at {offset} failed after {attempts} attempts: {reason}", record.post_id
                    ) from e
                delay = self._config.backoff_delay(attempt)
                logger.warning(
                    f"[upload] {record.post_id} chunk at {offset} failed "
                    f"(attempt {attempt + 1}/{attempts}): {reason}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
            except UploadError as e:
                if e.post_id is None:
                    e.post_id = record.post_id
                raise
