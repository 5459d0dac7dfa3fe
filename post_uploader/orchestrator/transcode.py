"""
Transcode coordination.

Per video asset: PENDING -> TRANSCODING -> TRANSCODED | TRANSCODE_FAILED.
A single slot guarantees at most one export runs at a time; waiting assets
queue in dispatch order.
"""
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging

from ..errors import StorageError, TranscodeError
from ..models import AssetInfo, RecordState, TranscodeConstraints, UploadConfig, UploadRecord
from ..protocols import ITempStorage, ITranscoder
from ..services.temp_storage import blake3_file
from .recovery import RecoveryGateway

logger = logging.getLogger(__name__)

# Fixed export policy; not configurable per call.
EXPORT_CONSTRAINTS = TranscodeConstraints()

FractionCallback = Callable[[str, float], Awaitable[None]]


class TranscodeState(Enum):
    PENDING = "pending"
    TRANSCODING = "transcoding"
    TRANSCODED = "transcoded"
    TRANSCODE_FAILED = "transcode_failed"


class TranscodeCoordinator:
    """
    Wraps the export service and serializes exports.

    Usage:
        coordinator = TranscodeCoordinator(transcoder, temp_storage, gateway, config)
        path = await coordinator.transcode(record, asset, on_fraction)
    """

    constraints = EXPORT_CONSTRAINTS

    def __init__(
        self,
        transcoder: ITranscoder,
        temp_storage: ITempStorage,
        gateway: RecoveryGateway,
        config: Optional[UploadConfig] = None,
    ):
        self._transcoder = transcoder
        self._temp = temp_storage
        self._gateway = gateway
        self._config = config or UploadConfig()
        self._slot = asyncio.Lock()
        self._states: Dict[str, TranscodeState] = {}

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._states.values() if s == TranscodeState.TRANSCODING)

    def state_of(self, post_id: str) -> Optional[TranscodeState]:
        return self._states.get(post_id)

    def forget(self, post_id: str) -> None:
        self._states.pop(post_id, None)

    def estimate_size(self, asset: AssetInfo) -> int:
        return self.constraints.estimate_output_size(asset)

    async def transcode(
        self,
        record: UploadRecord,
        asset: AssetInfo,
        on_fraction: Optional[FractionCallback] = None,
        should_start: Callable[[], bool] = lambda: True,
    ) -> Optional[Path]:
        """
        Produce the upload source for a video record.

        Reuses a valid existing export. Returns None when `should_start`
        turns false while waiting for the slot (batch cancelled).

        Raises:
            TranscodeError: export failed or timed out
        """
        if await self._gateway.has_valid_temp(record):
            logger.info(f"[transcode] Reusing existing export for {record.post_id}")
            self._states[record.post_id] = TranscodeState.TRANSCODED
            return Path(record.temp_path)

        self._states[record.post_id] = TranscodeState.PENDING
        async with self._slot:
            if not should_start():
                self.forget(record.post_id)
                return None
            self._states[record.post_id] = TranscodeState.TRANSCODING
            record.state = RecordState.TRANSCODING
            await self._gateway.save(record)

            output = self._temp.new_path(record.post_id, self.constraints.suffix)
            logger.info(f"[transcode] Exporting {asset.path.name} for post {record.post_id}")
            try:
                path = await asyncio.wait_for(
                    self._transcoder.transcode(asset, output, self.constraints, on_fraction),
                    timeout=self._config.transcode_timeout,
                )
            except asyncio.TimeoutError as e:
                await self._fail(record, output)
                raise TranscodeError(
                    f"Export timed out after {self._config.transcode_timeout:.0f}s", record.post_id
                ) from e
            except TranscodeError as e:
                await self._fail(record, output)
                if e.post_id is None:
                    e.post_id = record.post_id
                raise
            except (StorageError, asyncio.CancelledError):
                await self._fail(record, output)
                raise
            except Exception as e:
                # the export service is a black box; any failure is terminal for the asset
                await self._fail(record, output)
                raise TranscodeError(f"Export failed: {e}", record.post_id) from e

        path = Path(path)
        try:
            size = path.stat().st_size
        except OSError as e:
            self._states[record.post_id] = TranscodeState.TRANSCODE_FAILED
            raise TranscodeError(f"Export output missing: {path}", record.post_id) from e

        record.temp_path = str(path)
        record.temp_digest = await blake3_file(path)
        record.total_bytes = size
        record.uploaded_bytes = 0
        record.state = RecordState.TRANSCODED
        await self._gateway.save(record)
        self._states[record.post_id] = TranscodeState.TRANSCODED
        logger.info(f"[transcode] Post {record.post_id} exported ({size} bytes)")
        return path

    async def _fail(self, record: UploadRecord, output: Path) -> None:
        self._states[record.post_id] = TranscodeState.TRANSCODE_FAILED
        await self._temp.delete_temp(output)
