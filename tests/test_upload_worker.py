"""Tests for UploadWorker chunking, retries and finalization."""
import asyncio

import pytest

from conftest import CHUNK, FakeUploadClient
from post_uploader.errors import DigestError, UploadError, UploadTransientError
from post_uploader.models import MediaKind, RecordState, UploadConfig, UploadRecord
from post_uploader.orchestrator import ProgressAggregator, RecoveryGateway, UploadCancelled, UploadWorker


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def gateway(store, temp_storage):
    return RecoveryGateway(store, temp_storage)


@pytest.fixture
def api():
    return FakeUploadClient()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def worker(api, gateway, config, sleep):
    return UploadWorker(api, gateway, config, sleep=sleep)


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"\x01" * 600_000)
    return path


async def _prepare(store, path, post_id="p1", uploaded=0):
    record = UploadRecord(
        post_id=post_id,
        post_key="key",
        asset_ref=str(path),
        kind=MediaKind.PHOTO,
        gallery_id="g",
        total_bytes=path.stat().st_size,
        uploaded_bytes=uploaded,
    )
    await store.create(record)
    progress = ProgressAggregator()
    progress.register(post_id, MediaKind.PHOTO, record.total_bytes, sent=uploaded)
    return record, progress


class TestUploadWorker:
    """Test chunked uploads."""

    @pytest.mark.asyncio
    async def test_uploads_all_chunks_and_creates_post(self, worker, api, store, source):
        record, progress = await _prepare(store, source)

        digest = await worker.upload(record, source, {"fileSize": 600_000}, progress)

        assert digest == {"post_id": "p1", "status": "ready"}
        assert api.chunks["p1"] == [0, CHUNK, 2 * CHUNK]
        assert api.digest_calls == [("p1", {"fileSize": 600_000})]
        assert record.state == RecordState.SUCCEEDED
        assert record.uploaded_bytes == 600_000
        assert progress.fraction == 1.0
        assert await store.fetch("p1") is None

    @pytest.mark.asyncio
    async def test_resumes_from_offset(self, worker, api, store, source):
        record, progress = await _prepare(store, source, uploaded=CHUNK)

        await worker.upload(record, source, {}, progress)

        assert api.chunks["p1"] == [CHUNK, 2 * CHUNK]

    @pytest.mark.asyncio
    async def test_non_resumable_api_starts_from_zero(self, worker, api, store, source):
        api.supports_resumable_offsets = False
        record, progress = await _prepare(store, source, uploaded=CHUNK)

        assert worker.resumable is False
        await worker.upload(record, source, {}, progress)

        assert api.chunks["p1"] == [0, CHUNK, 2 * CHUNK]

    @pytest.mark.asyncio
    async def test_offset_persisted_after_each_chunk(self, worker, api, store, source):
        record, progress = await _prepare(store, source)
        api.digest_failures["p1"] = [DigestError("later")]

        with pytest.raises(DigestError):
            await worker.upload(record, source, {}, progress)

        stored = await store.fetch("p1")
        assert stored.state == RecordState.UPLOADED
        assert stored.uploaded_bytes == 600_000

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_with_backoff(self, api, gateway, store, source, sleep, tmp_path):
        config = UploadConfig(chunk_size=CHUNK, backoff_base=0.5, temp_dir=tmp_path / "t", records_dir=tmp_path / "r")
        worker = UploadWorker(api, gateway, config, sleep=sleep)
        api.failures["p1"] = [UploadTransientError("503"), UploadTransientError("502")]
        record, progress = await _prepare(store, source)

        await worker.upload(record, source, {}, progress)

        assert api.attempts["p1"] == [0, 0, 0, CHUNK, 2 * CHUNK]
        assert api.chunks["p1"] == [0, CHUNK, 2 * CHUNK]
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, worker, api, store, source, config):
        api.failures["p1"] = [UploadTransientError("503") for _ in range(config.max_chunk_attempts)]
        record, progress = await _prepare(store, source)

        with pytest.raises(UploadError) as exc_info:
            await worker.upload(record, source, {}, progress)

        assert exc_info.value.post_id == "p1"
        assert len(api.attempts["p1"]) == config.max_chunk_attempts
        assert api.digest_calls == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, worker, api, store, source, sleep):
        api.failures["p1"] = [UploadError("key rejected", status_code=403)]
        record, progress = await _prepare(store, source)

        with pytest.raises(UploadError, match="key rejected"):
            await worker.upload(record, source, {}, progress)

        assert api.attempts["p1"] == [0]
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_chunk_timeout_counts_as_transient(self, api, gateway, store, source, sleep, tmp_path):
        config = UploadConfig(
            chunk_size=CHUNK,
            chunk_timeout=0.01,
            max_chunk_attempts=2,
            temp_dir=tmp_path / "t",
            records_dir=tmp_path / "r",
        )
        worker = UploadWorker(api, gateway, config, sleep=sleep)
        api.release = asyncio.Event()
        record, progress = await _prepare(store, source)

        with pytest.raises(UploadError, match="after 2 attempts"):
            await worker.upload(record, source, {}, progress)

        assert len(sleep.delays) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_first_chunk(self, worker, api, store, source):
        record, progress = await _prepare(store, source)

        with pytest.raises(UploadCancelled):
            await worker.upload(record, source, {}, progress, is_cancelled=lambda: True)

        assert api.attempts == {}

    @pytest.mark.asyncio
    async def test_empty_file_goes_straight_to_digest(self, worker, api, store, tmp_path):
        empty = tmp_path / "empty.jpg"
        empty.write_bytes(b"")
        record, progress = await _prepare(store, empty)

        await worker.upload(record, empty, {}, progress)

        assert api.attempts == {}
        assert [call[0] for call in api.digest_calls] == ["p1"]

    @pytest.mark.asyncio
    async def test_missing_source(self, worker, store, source, tmp_path):
        record, progress = await _prepare(store, source)

        with pytest.raises(UploadError, match="unavailable"):
            await worker.upload(record, tmp_path / "gone.jpg", {}, progress)

    @pytest.mark.asyncio
    async def test_finalize_wraps_upload_errors(self, worker, api, store, source):
        record, _ = await _prepare(store, source, uploaded=600_000)
        api.digest_failures["p1"] = [UploadError("bad gateway")]

        with pytest.raises(DigestError) as exc_info:
            await worker.finalize(record, {})

        assert exc_info.value.post_id == "p1"
        assert (await store.fetch("p1")).state == RecordState.UPLOADED
