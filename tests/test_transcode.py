"""Tests for TranscodeCoordinator."""
import asyncio
from pathlib import Path

import pytest

from conftest import FakeTranscoder
from post_uploader.errors import TranscodeError
from post_uploader.models import MediaKind, RecordState, UploadConfig, UploadRecord
from post_uploader.orchestrator import RecoveryGateway, TranscodeCoordinator, TranscodeState
from post_uploader.services import blake3_file


def _record(post_id="p1", asset_ref="MOV_0001.mov"):
    return UploadRecord(post_id=post_id, post_key="k", asset_ref=asset_ref, kind=MediaKind.VIDEO, gallery_id="g")


@pytest.fixture
def gateway(store, temp_storage):
    return RecoveryGateway(store, temp_storage)


@pytest.fixture
def make_coordinator(temp_storage, gateway, config):
    def _make(transcoder, cfg: UploadConfig = None):
        return TranscodeCoordinator(transcoder, temp_storage, gateway, cfg or config)
    return _make


class TestTranscodeCoordinator:
    """Test export coordination."""

    @pytest.mark.asyncio
    async def test_successful_export_updates_record(self, make_coordinator, video_factory, store, temp_storage):
        video = video_factory("MOV_0001.mov", 5_000_000)
        transcoder = FakeTranscoder(output_sizes={"MOV_0001.mov": 2_000_000})
        coordinator = make_coordinator(transcoder)
        record = _record()
        record.uploaded_bytes = 123
        fractions = []

        async def on_fraction(asset_id, fraction):
            fractions.append(fraction)

        path = await coordinator.transcode(record, video, on_fraction)

        assert path.parent == temp_storage.root
        assert path.suffix == ".mp4"
        assert record.state == RecordState.TRANSCODED
        assert record.total_bytes == 2_000_000
        assert record.uploaded_bytes == 0
        assert record.temp_path == str(path)
        assert record.temp_digest == await blake3_file(path)
        assert fractions == [0.25, 0.5, 0.75, 1.0]
        assert coordinator.state_of("p1") == TranscodeState.TRANSCODED
        assert (await store.fetch("p1")).state == RecordState.TRANSCODED

    @pytest.mark.asyncio
    async def test_valid_export_is_reused(self, make_coordinator, video_factory):
        video = video_factory("MOV_0001.mov", 5_000_000)
        transcoder = FakeTranscoder()
        coordinator = make_coordinator(transcoder)
        record = _record()

        first = await coordinator.transcode(record, video)
        second = await coordinator.transcode(record, video)

        assert first == second
        assert transcoder.calls == ["MOV_0001.mov"]

    @pytest.mark.asyncio
    async def test_failure_removes_partial_output(self, make_coordinator, video_factory, temp_storage):
        video = video_factory("MOV_0001.mov", 5_000_000)
        coordinator = make_coordinator(FakeTranscoder(fail=["MOV_0001.mov"]))
        record = _record()

        with pytest.raises(TranscodeError) as exc_info:
            await coordinator.transcode(record, video)

        assert exc_info.value.post_id == "p1"
        assert exc_info.value.retryable is False
        assert coordinator.state_of("p1") == TranscodeState.TRANSCODE_FAILED
        assert list(temp_storage.root.iterdir()) == []
        assert record.temp_path is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, make_coordinator, video_factory):
        class BrokenTranscoder:
            async def transcode(self, asset, output_path, constraints, progress_callback=None):
                raise RuntimeError("codec exploded")

        coordinator = make_coordinator(BrokenTranscoder())

        with pytest.raises(TranscodeError, match="codec exploded"):
            await coordinator.transcode(_record(), video_factory("MOV_0001.mov", 1000))

    @pytest.mark.asyncio
    async def test_timeout(self, make_coordinator, video_factory, config, temp_storage):
        transcoder = FakeTranscoder()
        transcoder.gate = asyncio.Event()
        cfg = UploadConfig(
            transcode_timeout=0.05,
            temp_dir=config.temp_dir,
            records_dir=config.records_dir,
        )
        coordinator = make_coordinator(transcoder, cfg)

        with pytest.raises(TranscodeError, match="timed out"):
            await coordinator.transcode(_record(), video_factory("MOV_0001.mov", 1000))

        assert list(temp_storage.root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_one_export_at_a_time_in_order(self, make_coordinator, video_factory):
        transcoder = FakeTranscoder()
        coordinator = make_coordinator(transcoder)
        videos = [video_factory(f"MOV_{i}.mov", 1000) for i in range(3)]
        records = [_record(f"p{i}", f"MOV_{i}.mov") for i in range(3)]

        paths = await asyncio.gather(*(
            coordinator.transcode(record, video) for record, video in zip(records, videos)
        ))

        assert transcoder.max_active == 1
        assert transcoder.calls == ["MOV_0.mov", "MOV_1.mov", "MOV_2.mov"]
        assert len({Path(p) for p in paths}) == 3
        assert coordinator.active_count == 0

    @pytest.mark.asyncio
    async def test_should_start_false_skips_export(self, make_coordinator, video_factory):
        transcoder = FakeTranscoder()
        coordinator = make_coordinator(transcoder)

        result = await coordinator.transcode(
            _record(), video_factory("MOV_0001.mov", 1000), should_start=lambda: False
        )

        assert result is None
        assert transcoder.calls == []
        assert coordinator.state_of("p1") is None

    def test_estimate_size(self, make_coordinator, video_factory):
        coordinator = make_coordinator(FakeTranscoder())

        assert coordinator.estimate_size(video_factory("a.mov", 5_000_000)) == 5_000_000
        assert coordinator.estimate_size(video_factory("b.mov", 5_000_000, duration=2.0)) == 1_657_000
        assert coordinator.estimate_size(video_factory("c.mov", 1_000, duration=60.0)) == 1_000
