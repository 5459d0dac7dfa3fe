"""
Progress aggregation for a batch session.

Turns per-asset transcode fractions and upload byte deltas into one overall
fraction plus a throughput estimate.

Accounting:
- photo: accounted bytes = bytes sent
- video: accounted bytes = w * total * transcode_fraction + (1 - w) * bytes sent,
  where w is the transcode weight. A fully uploaded video accounts exactly its
  transcoded size.
- a video's total starts as the pre-transcode estimate and is revised to the
  real output size once transcoding finishes.

The emitted fraction only moves forward: a revision that lowers the computed
value holds the last emitted fraction until the computed one passes it.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging
import time

from ..models import MediaKind, ProgressSample, ProgressUpdate, Stage, UploadRecord

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressUpdate], Awaitable[None]]


@dataclass
class AssetLedger:
    """Progress bookkeeping of one asset."""
    kind: MediaKind
    total: int
    sent: int = 0
    transcode_fraction: float = 0.0
    estimated: bool = False

    def accounted(self, transcode_weight: float) -> int:
        if self.kind == MediaKind.PHOTO:
            return min(self.sent, self.total)
        value = (
            transcode_weight * self.total * self.transcode_fraction
            + (1 - transcode_weight) * self.sent
        )
        return min(self.total, int(round(value)))


class ProgressAggregator:
    """
    Serialized progress bookkeeping for one batch.

    Every mutation (samples, size revisions, removals) goes through the same
    asyncio lock, including the owning record's uploaded_bytes field. Updates
    are built under the lock and handed to the listener right after it is
    released, with no suspension point in between, so they arrive in order
    and the listener may feed the aggregator again.
    """

    def __init__(
        self,
        listener: Optional[ProgressListener] = None,
        min_delta: float = 0.01,
        transcode_weight: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._listener = listener
        self._min_delta = min_delta
        self._transcode_weight = transcode_weight
        self._clock = clock
        self._lock = asyncio.Lock()
        self._ledgers: Dict[str, AssetLedger] = {}

        self.last_progress = 0.0
        self.throughput = 0.0
        self._window_bytes = 0
        self._window_start = clock()

    # Accessors

    @property
    def total_file_size(self) -> int:
        return sum(ledger.total for ledger in self._ledgers.values())

    @property
    def total_video_size(self) -> int:
        return sum(l.total for l in self._ledgers.values() if l.kind == MediaKind.VIDEO)

    @property
    def total_image_size(self) -> int:
        return sum(l.total for l in self._ledgers.values() if l.kind == MediaKind.PHOTO)

    @property
    def uploaded_file_size(self) -> int:
        return sum(l.accounted(self._transcode_weight) for l in self._ledgers.values())

    @property
    def fraction(self) -> float:
        """Computed (not emitted) fraction, clamped to [0, 1]."""
        total = self.total_file_size
        if total <= 0:
            return 0.0
        return max(0.0, min(1.0, self.uploaded_file_size / total))

    def ledger(self, asset_id: str) -> Optional[AssetLedger]:
        return self._ledgers.get(asset_id)

    def __contains__(self, asset_id: str) -> bool:
        return asset_id in self._ledgers

    def __len__(self) -> int:
        return len(self._ledgers)

    # Mutations

    def register(
        self,
        asset_id: str,
        kind: MediaKind,
        size: int,
        sent: int = 0,
        transcoded: bool = False,
        estimated: bool = False,
    ) -> None:
        """Add an asset before the session starts running."""
        size = max(0, int(size))
        self._ledgers[asset_id] = AssetLedger(
            kind=kind,
            total=size,
            sent=min(max(0, sent), size),
            transcode_fraction=1.0 if transcoded else 0.0,
            estimated=estimated,
        )

    async def apply(self, sample: ProgressSample, record: Optional[UploadRecord] = None) -> None:
        """Consume one sample; updates record.uploaded_bytes for upload samples."""
        async with self._lock:
            ledger = self._ledgers.get(sample.asset_id)
            if ledger is None:
                return
            if sample.stage == Stage.TRANSCODING:
                fraction = max(0.0, min(1.0, sample.fraction or 0.0))
                ledger.transcode_fraction = max(ledger.transcode_fraction, fraction)
            else:
                delta = max(0, min(sample.bytes_delta, ledger.total - ledger.sent))
                ledger.sent += delta
                self._window_bytes += delta
                if record is not None:
                    record.uploaded_bytes = ledger.sent
            update = self._next_update()
        await self._notify(update)

    async def revise_size(self, asset_id: str, actual_size: int, sent: int = 0) -> None:
        """Replace an asset's estimated size with its real size."""
        async with self._lock:
            ledger = self._ledgers.get(asset_id)
            if ledger is None:
                return
            logger.debug(f"Revising size of {asset_id}: {ledger.total} -> {actual_size}")
            ledger.total = max(0, int(actual_size))
            ledger.sent = min(max(0, sent), ledger.total)
            ledger.estimated = False
            if ledger.kind == MediaKind.VIDEO:
                ledger.transcode_fraction = 1.0
            update = self._next_update()
        await self._notify(update)

    async def discard(self, asset_id: str) -> None:
        """Drop a failed asset from the totals."""
        async with self._lock:
            if self._ledgers.pop(asset_id, None) is None:
                return
            update = self._next_update()
        await self._notify(update)

    # Emission

    def _next_update(self) -> Optional[ProgressUpdate]:
        """Build an update if the fraction moved enough. Caller holds the lock."""
        fraction = self.fraction
        if self.total_file_size <= 0:
            return None
        finished = fraction >= 1.0 and self.last_progress < 1.0
        if not finished and fraction - self.last_progress < self._min_delta:
            return None

        now = self._clock()
        elapsed = now - self._window_start
        if elapsed > 0:
            self.throughput = self._window_bytes / elapsed
        self._window_bytes = 0
        self._window_start = now

        self.last_progress = fraction
        return ProgressUpdate(
            fraction=fraction,
            throughput=self.throughput,
            uploaded_bytes=self.uploaded_file_size,
            total_bytes=self.total_file_size,
        )

    async def _notify(self, update: Optional[ProgressUpdate]) -> None:
        if update is not None and self._listener is not None:
            await self._listener(update)
