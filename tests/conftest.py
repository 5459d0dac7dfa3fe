"""Shared fakes and fixtures for post_uploader tests."""
import asyncio
import dataclasses
import inspect
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from post_uploader.errors import MalformedPostError, TranscodeError
from post_uploader.models import AssetInfo, MediaKind, UploadConfig
from post_uploader.orchestrator import UploadManager
from post_uploader.services import JSONRecordStore, TempFileStorage

CHUNK = 256 * 1024


async def no_sleep(_delay):
    return None


class FakeResolver:
    """Resolves asset ids against a fixed set of AssetInfo."""

    def __init__(self, assets: Iterable[AssetInfo] = ()):
        self.assets: Dict[str, AssetInfo] = {a.asset_id: a for a in assets}
        self.calls: List[str] = []

    async def resolve(self, asset_ref: str) -> AssetInfo:
        self.calls.append(asset_ref)
        if asset_ref not in self.assets:
            raise MalformedPostError(f"Asset not found: {asset_ref}")
        return self.assets[asset_ref]


class FakeTranscoder:
    """Writes an output file of a configured size; tracks concurrency."""

    def __init__(self, output_sizes: Optional[Dict[str, int]] = None, fail: Iterable[str] = (), steps: int = 4):
        self.output_sizes = output_sizes or {}
        self.fail = set(fail)
        self.steps = steps
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self.gate: Optional[asyncio.Event] = None

    async def transcode(self, asset, output_path: Path, constraints, progress_callback=None) -> Path:
        self.calls.append(asset.asset_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for step in range(1, self.steps + 1):
                await asyncio.sleep(0)
                if progress_callback:
                    result = progress_callback(asset.asset_id, step / self.steps)
                    if inspect.isawaitable(result):
                        await result
            if self.gate is not None:
                await self.gate.wait()
            if asset.asset_id in self.fail:
                output_path.write_bytes(b"partial")
                raise TranscodeError(f"encoder crashed on {asset.asset_id}")
            size = self.output_sizes.get(asset.asset_id, max(1, asset.size // 2))
            output_path.write_bytes(b"v" * size)
            return output_path
        finally:
            self.active -= 1


class FakeUploadClient:
    """
    In-memory upload API.

    failures / digest_failures map post_id to a list of exceptions raised, in
    order, by the next calls for that post.
    """

    supports_resumable_offsets = True

    def __init__(self):
        self.attempts: Dict[str, List[int]] = defaultdict(list)
        self.chunks: Dict[str, List[int]] = defaultdict(list)
        self.received: Dict[str, int] = defaultdict(int)
        self.digest_calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.digest_failures: Dict[str, List[Exception]] = {}
        self.entered = asyncio.Event()
        self.release: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    async def upload_chunk(self, post_id, key, data, offset, total):
        self.attempts[post_id].append(offset)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.entered.set()
            if self.release is not None:
                await self.release.wait()
            await asyncio.sleep(0)
            plan = self.failures.get(post_id)
            if plan:
                raise plan.pop(0)
        finally:
            self.active -= 1
        self.chunks[post_id].append(offset)
        self.received[post_id] = offset + len(data)
        return {"received": offset + len(data)}

    async def create_post_digest(self, post_id, metadata):
        self.digest_calls.append((post_id, dict(metadata)))
        plan = self.digest_failures.get(post_id)
        if plan:
            raise plan.pop(0)
        return {"post_id": post_id, "status": "ready"}


@pytest.fixture
def config(tmp_path):
    return UploadConfig(
        chunk_size=CHUNK,
        backoff_base=0.0,
        temp_dir=tmp_path / "tmp",
        records_dir=tmp_path / "records",
    )


@pytest.fixture
def store(config):
    return JSONRecordStore(config.records_dir)


@pytest.fixture
def temp_storage(config):
    return TempFileStorage(config.temp_dir)


@pytest.fixture
def photo_factory(tmp_path):
    """Create a photo file of `size` bytes and its AssetInfo."""
    def _make(asset_id: str, size: int) -> AssetInfo:
        path = tmp_path / "library" / asset_id
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return AssetInfo(
            asset_id=asset_id,
            kind=MediaKind.PHOTO,
            size=size,
            path=path,
            content_type="image/jpeg",
        )
    return _make


@pytest.fixture
def video_factory(tmp_path):
    """AssetInfo of a raw video; the transcoder fake never reads the file."""
    def _make(asset_id: str, size: int, duration: Optional[float] = None) -> AssetInfo:
        return AssetInfo(
            asset_id=asset_id,
            kind=MediaKind.VIDEO,
            size=size,
            path=tmp_path / "library" / asset_id,
            content_type="video/quicktime",
            duration=duration,
        )
    return _make


@pytest.fixture
def build_manager(config, store, temp_storage):
    def _build(resolver, transcoder=None, api=None, record_store=None, **overrides):
        cfg = dataclasses.replace(config, **overrides) if overrides else config
        return UploadManager(
            resolver,
            transcoder or FakeTranscoder(),
            api or FakeUploadClient(),
            record_store or store,
            temp_storage,
            cfg,
            sleep=no_sleep,
        )
    return _build
