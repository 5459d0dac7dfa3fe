"""Tests for ProgressAggregator accounting and emission."""
import asyncio

import pytest

from post_uploader.models import MediaKind, ProgressSample, UploadRecord
from post_uploader.orchestrator import ProgressAggregator


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def updates():
    return []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def aggregator(updates, clock):
    async def listener(update):
        updates.append(update)
    return ProgressAggregator(listener=listener, min_delta=0.01, transcode_weight=0.5, clock=clock)


class TestPhotoAccounting:
    """Photos account the bytes sent."""

    @pytest.mark.asyncio
    async def test_bytes_sent(self, aggregator, updates):
        aggregator.register("a", MediaKind.PHOTO, 1000)

        await aggregator.apply(ProgressSample.uploading("a", 250))

        assert aggregator.uploaded_file_size == 250
        assert updates[-1].fraction == 0.25
        assert updates[-1].total_bytes == 1000

    @pytest.mark.asyncio
    async def test_delta_clamped_to_total(self, aggregator, updates):
        aggregator.register("a", MediaKind.PHOTO, 1000, sent=900)

        await aggregator.apply(ProgressSample.uploading("a", 5000))

        assert aggregator.ledger("a").sent == 1000
        assert updates[-1].fraction == 1.0

    @pytest.mark.asyncio
    async def test_updates_record_offset(self, aggregator):
        record = UploadRecord(post_id="a", post_key="k", asset_ref="a.jpg", kind=MediaKind.PHOTO, gallery_id="g")
        aggregator.register("a", MediaKind.PHOTO, 1000)

        await aggregator.apply(ProgressSample.uploading("a", 300), record=record)
        await aggregator.apply(ProgressSample.uploading("a", 300), record=record)

        assert record.uploaded_bytes == 600

    @pytest.mark.asyncio
    async def test_unknown_asset_ignored(self, aggregator, updates):
        aggregator.register("a", MediaKind.PHOTO, 1000)

        await aggregator.apply(ProgressSample.uploading("ghost", 500))

        assert updates == []
        assert aggregator.uploaded_file_size == 0


class TestVideoAccounting:
    """Videos split their weight between export and upload."""

    @pytest.mark.asyncio
    async def test_transcode_then_upload(self, aggregator, updates):
        aggregator.register("v", MediaKind.VIDEO, 1000, estimated=True)

        await aggregator.apply(ProgressSample.transcoding("v", 0.5))
        assert aggregator.uploaded_file_size == 250

        await aggregator.revise_size("v", 400)
        assert aggregator.total_file_size == 400
        assert aggregator.uploaded_file_size == 200
        assert not aggregator.ledger("v").estimated

        await aggregator.apply(ProgressSample.uploading("v", 400))
        assert aggregator.uploaded_file_size == 400
        assert updates[-1].fraction == 1.0

    @pytest.mark.asyncio
    async def test_transcode_fraction_never_regresses(self, aggregator):
        aggregator.register("v", MediaKind.VIDEO, 1000)

        await aggregator.apply(ProgressSample.transcoding("v", 0.6))
        await aggregator.apply(ProgressSample.transcoding("v", 0.2))

        assert aggregator.ledger("v").transcode_fraction == 0.6

    @pytest.mark.asyncio
    async def test_emitted_fraction_is_monotonic_after_downward_revision(self, aggregator, updates):
        aggregator.register("p", MediaKind.PHOTO, 1000)
        aggregator.register("v", MediaKind.VIDEO, 9000, estimated=True)

        await aggregator.apply(ProgressSample.transcoding("v", 1.0))
        assert [u.fraction for u in updates] == [0.45]

        # real export is much smaller than the estimate
        await aggregator.revise_size("v", 1000)
        assert aggregator.fraction == 0.25
        assert aggregator.last_progress == 0.45
        assert len(updates) == 1

        await aggregator.apply(ProgressSample.uploading("p", 1000))
        assert [u.fraction for u in updates] == [0.45, 0.75]

    @pytest.mark.asyncio
    async def test_video_split_totals(self, aggregator):
        aggregator.register("p", MediaKind.PHOTO, 100)
        aggregator.register("v", MediaKind.VIDEO, 300)

        assert aggregator.total_image_size == 100
        assert aggregator.total_video_size == 300
        assert aggregator.total_file_size == 400
        assert len(aggregator) == 2
        assert "v" in aggregator


class TestEmission:
    """Test thresholds, throughput and removal."""

    @pytest.mark.asyncio
    async def test_min_delta(self, clock):
        updates = []

        async def listener(update):
            updates.append(update)

        aggregator = ProgressAggregator(listener=listener, min_delta=0.1, clock=clock)
        aggregator.register("a", MediaKind.PHOTO, 1000)

        await aggregator.apply(ProgressSample.uploading("a", 50))
        assert updates == []

        await aggregator.apply(ProgressSample.uploading("a", 60))
        assert len(updates) == 1
        assert updates[0].fraction == pytest.approx(0.11)

    @pytest.mark.asyncio
    async def test_throughput(self, aggregator, updates, clock):
        aggregator.register("a", MediaKind.PHOTO, 10_000)

        clock.now = 2.0
        await aggregator.apply(ProgressSample.uploading("a", 500))
        assert updates[-1].throughput == 250.0

        clock.now = 3.0
        await aggregator.apply(ProgressSample.uploading("a", 1000))
        assert updates[-1].throughput == 1000.0

    @pytest.mark.asyncio
    async def test_discard_removes_asset(self, aggregator, updates):
        aggregator.register("a", MediaKind.PHOTO, 1000)
        aggregator.register("b", MediaKind.PHOTO, 1000)
        await aggregator.apply(ProgressSample.uploading("a", 1000))

        await aggregator.discard("b")

        assert "b" not in aggregator
        assert aggregator.total_file_size == 1000
        assert updates[-1].fraction == 1.0

    @pytest.mark.asyncio
    async def test_concurrent_samples_arrive_in_order(self, aggregator, updates):
        for name in "abcd":
            aggregator.register(name, MediaKind.PHOTO, 1000)

        await asyncio.gather(*(
            aggregator.apply(ProgressSample.uploading(name, 100))
            for _ in range(10)
            for name in "abcd"
        ))

        fractions = [u.fraction for u in updates]
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0
        assert aggregator.uploaded_file_size == 4000

    @pytest.mark.asyncio
    async def test_listener_may_feed_the_aggregator(self):
        seen = []

        async def listener(update):
            seen.append(update.fraction)
            if len(seen) == 1:
                await aggregator.apply(ProgressSample.uploading("a", 500))

        aggregator = ProgressAggregator(listener=listener, min_delta=0.01)
        aggregator.register("a", MediaKind.PHOTO, 1000)

        await asyncio.wait_for(aggregator.apply(ProgressSample.uploading("a", 100)), timeout=1)

        assert seen == [0.1, 0.6]
