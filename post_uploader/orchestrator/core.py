"""Core orchestrator - coordinates batch uploads, resumption and cleanup."""
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
import asyncio
import inspect
import logging
import time

from ..errors import AlreadyUploadingError, AssetError, MalformedPostError, StorageError
from ..models import (
    AssetInfo,
    AssetResult,
    BatchSummary,
    MediaKind,
    PostDescriptor,
    ProgressSample,
    ProgressUpdate,
    RecordState,
    UploadConfig,
    UploadRecord,
)
from ..protocols import IAssetResolver, IRecordStore, ITempStorage, ITranscoder, IUploadAPIClient
from ..services.assets import build_digest
from ..utils.events import EventEmitter
from .progress import ProgressAggregator
from .recovery import RecoveryGateway
from .session import AssetEntry, BatchSession, SessionState
from .transcode import TranscodeCoordinator
from .upload_worker import UploadCancelled, UploadWorker

logger = logging.getLogger(__name__)

PostInput = Union[PostDescriptor, Mapping[str, Any]]


class UploadManager:
    """
    Orchestrates batch uploads of post assets using injected services.

    One batch runs at a time. Videos are transcoded one at a time, uploads
    run in parallel up to config.max_parallel_uploads. Every post has a
    durable record until its digest succeeds, so an interrupted batch can be
    resumed with check_cached_uploads().

    Usage:
        manager = UploadManager(resolver, transcoder, api_client, store, temp_storage)
        manager.on_progress(lambda update: print(f"{update.percent:.1f}%"))
        manager.on_asset_complete(lambda result: print(result.post_id, result.success))
        manager.on_batch_complete(lambda summary: print("done", summary.completed))

        session = await manager.start_new_upload(posts, gallery_id)
        summary = await session.wait()

        # on the next start
        session = await manager.check_cached_uploads()
    """

    def __init__(
        self,
        resolver: IAssetResolver,
        transcoder: ITranscoder,
        api_client: IUploadAPIClient,
        record_store: IRecordStore,
        temp_storage: ITempStorage,
        config: Optional[UploadConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._resolver = resolver
        self._config = config or UploadConfig()
        self._clock = clock
        self._gateway = RecoveryGateway(record_store, temp_storage)
        self._transcodes = TranscodeCoordinator(transcoder, temp_storage, self._gateway, self._config)
        self._worker = UploadWorker(api_client, self._gateway, self._config, sleep=sleep)
        self._events = EventEmitter()
        self._session: Optional[BatchSession] = None
        self._scanning = False

    # Event subscription methods
    def on_progress(self, callback: Callable[[ProgressUpdate], None]):
        """Called when overall progress moves. Receives ProgressUpdate."""
        self._events.on("progress", callback)

    def on_asset_complete(self, callback: Callable[[AssetResult], None]):
        """Called once per asset, success or failure. Receives AssetResult."""
        self._events.on("asset_complete", callback)

    def on_batch_complete(self, callback: Callable[[BatchSummary], None]):
        """Called once when every asset of the batch finished. Receives BatchSummary."""
        self._events.on("batch_complete", callback)

    def on_batch_cancelled(self, callback: Callable[[BatchSummary], None]):
        """Called when a cancelled batch settled. Receives BatchSummary."""
        self._events.on("batch_cancelled", callback)

    def on_error(self, callback: Callable[[Exception], None]):
        """Called when a batch-level error stops the batch. Receives Exception."""
        self._events.on("error", callback)

    # State

    @property
    def config(self) -> UploadConfig:
        return self._config

    @property
    def current_session(self) -> Optional[BatchSession]:
        return self._session

    @property
    def transcodes(self) -> TranscodeCoordinator:
        return self._transcodes

    def is_uploading(self) -> bool:
        return self._session is not None or self._scanning

    # Public operations

    async def start_new_upload(self, posts: Iterable[PostInput], gallery_id: str) -> BatchSession:
        """
        Start uploading the assets of `posts` for `gallery_id`.

        Malformed posts are reported through asset_complete and skipped.
        Returns as soon as all records are created; the batch runs in the
        background.

        Raises:
            AlreadyUploadingError: a batch or resume scan is active
            StorageError: records could not be created (batch rejected)
        """
        if self.is_uploading():
            raise AlreadyUploadingError()

        session = self._new_session(gallery_id)
        self._session = session
        malformed: List[AssetResult] = []
        created: List[UploadRecord] = []
        seen = set()

        try:
            for item in posts:
                descriptor = self._descriptor(item)
                try:
                    if descriptor.post_id in seen:
                        raise MalformedPostError(f"Duplicate post in batch: {descriptor.post_id}", descriptor.post_id)
                    asset = await self._resolve(descriptor)
                except MalformedPostError as e:
                    logger.warning(f"[batch] Skipping post {descriptor.post_id or '?'}: {e}")
                    malformed.append(AssetResult.fail(descriptor.post_id, gallery_id, e))
                    continue
                seen.add(descriptor.post_id)

                record = UploadRecord(
                    post_id=descriptor.post_id,
                    post_key=descriptor.key,
                    asset_ref=descriptor.asset,
                    kind=asset.kind,
                    gallery_id=gallery_id,
                )
                self._register(session, record, asset)
                await self._gateway.create(record)
                created.append(record)
                session.add(record, asset)
        except BaseException as e:
            logger.error(f"[batch] Gallery {gallery_id} rejected: {e!r}")
            self._session = None
            for record in created:
                try:
                    await self._gateway.discard(record)
                except StorageError as cleanup_error:
                    logger.error(f"[batch] Could not discard record {record.post_id}: {cleanup_error}")
            raise

        logger.info(
            f"[batch] Gallery {gallery_id}: {len(created)} assets queued, {len(malformed)} malformed "
            f"({session.progress.total_file_size} bytes)"
        )
        for result in malformed:
            session.record_result(result)
            await self._events.emit("asset_complete", result)

        session.start(self._run)
        return session

    async def check_cached_uploads(self) -> Optional[BatchSession]:
        """
        Resume records left over from a previous run.

        Returns the resumed session, or None when nothing was left (cached
        temp files are cleared in that case).
        """
        if self.is_uploading():
            raise AlreadyUploadingError()

        self._scanning = True
        try:
            records = await self._gateway.incomplete()
            if not records:
                logger.debug("[resume] No cached uploads")
                await self.clear_cached_uploads()
                return None
            logger.info(f"[resume] Resuming {len(records)} cached uploads")
            return await self._resume(records)
        finally:
            self._scanning = False

    async def retry_failed_uploads(self) -> Optional[BatchSession]:
        """Re-dispatch FAILED records as a new session. None if there are none."""
        if self.is_uploading():
            raise AlreadyUploadingError()

        self._scanning = True
        try:
            records = await self._gateway.failed()
            if not records:
                return None
            logger.info(f"[retry] Retrying {len(records)} failed uploads")
            return await self._resume(records)
        finally:
            self._scanning = False

    async def clear_cached_uploads(self) -> int:
        """Delete unreferenced temp files and finished records. Returns files removed."""
        if self._session is not None:
            raise AlreadyUploadingError("Cannot clear cached uploads while a batch is running")
        return await self._gateway.purge()

    async def cancel(self) -> Optional[BatchSummary]:
        """Cancel the active batch and wait for it to settle."""
        session = self._session
        if session is None:
            return None
        logger.info(f"[batch] Cancelling gallery {session.gallery_id}")
        return await session.cancel()

    async def estimate_upload_size(
        self,
        asset_refs: Iterable[str],
        callback: Optional[Callable[[int, Optional[Exception]], Any]] = None,
    ) -> int:
        """
        Bytes a batch of `asset_refs` would upload (videos at their export estimate).

        With a callback, it is invoked once with (total, None) or (0, error)
        and errors are not raised.
        """
        total = 0
        error: Optional[Exception] = None
        try:
            for ref in asset_refs:
                asset = await self._resolve_ref(ref)
                total += self._transcodes.estimate_size(asset) if asset.is_video else asset.size
        except MalformedPostError as e:
            if callback is None:
                raise
            total, error = 0, e

        if callback is not None:
            result = callback(total, error)
            if inspect.isawaitable(result):
                await result
        return total

    async def digest_for_asset(self, asset_ref: str) -> Dict[str, Any]:
        """Metadata that would be sent when creating a post from `asset_ref`."""
        asset = await self._resolve_ref(asset_ref)
        digest = build_digest(asset)
        if asset.is_video:
            digest["contentType"] = f"video/{self._transcodes.constraints.container}"
            digest["fileSize"] = self._transcodes.estimate_size(asset)
        return digest

    # Batch setup

    def _new_session(self, gallery_id: str) -> BatchSession:
        progress = ProgressAggregator(
            listener=self._emit_progress,
            min_delta=self._config.min_progress_delta,
            transcode_weight=self._config.transcode_weight,
            clock=self._clock,
        )
        return BatchSession(gallery_id, progress)

    async def _emit_progress(self, update: ProgressUpdate) -> None:
        await self._events.emit("progress", update)

    @staticmethod
    def _descriptor(item: PostInput) -> PostDescriptor:
        if isinstance(item, PostDescriptor):
            return item
        if isinstance(item, Mapping):
            return PostDescriptor.from_dict(item)
        return PostDescriptor(post_id="", key="", asset="")

    async def _resolve(self, descriptor: PostDescriptor) -> AssetInfo:
        missing = descriptor.missing_fields
        if missing:
            raise MalformedPostError(f"Post is missing {', '.join(missing)}", descriptor.post_id or None)
        return await self._resolve_ref(descriptor.asset, descriptor.post_id)

    async def _resolve_ref(self, asset_ref: str, post_id: Optional[str] = None) -> AssetInfo:
        try:
            asset = await self._resolver.resolve(asset_ref)
        except MalformedPostError as e:
            if e.post_id is None:
                e.post_id = post_id
            raise
        except OSError as e:
            raise MalformedPostError(f"Cannot read asset {asset_ref}: {e}", post_id) from e
        except StorageError:
            raise
        except Exception as e:
            # resolver bug; scoped to this post
            logger.error(f"[batch] Resolver failed on {asset_ref}: {e}", exc_info=True)
            raise MalformedPostError(f"Cannot resolve asset {asset_ref}: {e}", post_id) from e
        if asset.kind not in (MediaKind.PHOTO, MediaKind.VIDEO):
            raise MalformedPostError(f"Unsupported asset kind: {asset.kind}", post_id)
        return asset

    def _register(self, session: BatchSession, record: UploadRecord, asset: AssetInfo) -> None:
        """Size the record and add it to the session's progress totals."""
        progress = session.progress
        if not record.is_video:
            record.total_bytes = asset.size
            progress.register(record.post_id, MediaKind.PHOTO, asset.size, sent=record.uploaded_bytes)
        elif record.state in (RecordState.TRANSCODED, RecordState.UPLOADED) and record.total_bytes:
            progress.register(
                record.post_id,
                MediaKind.VIDEO,
                record.total_bytes,
                sent=record.uploaded_bytes,
                transcoded=True,
            )
        else:
            record.total_bytes = self._transcodes.estimate_size(asset)
            progress.register(record.post_id, MediaKind.VIDEO, record.total_bytes, estimated=True)

    async def _resume(self, records: List[UploadRecord]) -> BatchSession:
        session = self._new_session(records[0].gallery_id)
        malformed: List[AssetResult] = []

        for record in records:
            try:
                asset = await self._resolve_ref(record.asset_ref, record.post_id)
            except MalformedPostError as e:
                logger.warning(f"[resume] Asset of post {record.post_id} is gone: {e}")
                await self._gateway.mark_failed(record, e)
                malformed.append(
                    AssetResult.fail(record.post_id, record.gallery_id, e, record.is_video, record.total_bytes)
                )
                continue
            await self._gateway.prepare_for_resume(record, self._worker.resumable)
            self._register(session, record, asset)
            await self._gateway.save(record)
            session.add(record, asset)

        self._session = session
        for result in malformed:
            session.record_result(result)
            await self._events.emit("asset_complete", result)

        session.start(self._run)
        return session

    # Batch execution

    async def _run(self, session: BatchSession) -> None:
        uploads = asyncio.Semaphore(self._config.max_parallel_uploads)
        entries = session.entries
        try:
            outcomes = await asyncio.gather(
                *(self._process_asset(session, entry, uploads) for entry in entries),
                return_exceptions=True,
            )
            for entry, outcome in zip(entries, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"[batch] Post {entry.record.post_id} stopped unexpectedly: {outcome!r}")

            if session.error is not None:
                state = SessionState.FAILED
            elif session.is_cancelled:
                state = SessionState.CANCELLED
            else:
                state = SessionState.COMPLETED

            for entry in session.unreported:
                try:
                    await self._gateway.abandon(entry.record)
                except StorageError as e:
                    logger.error(f"[batch] Could not keep record {entry.record.post_id} for resume: {e}")
            summary = session.finish(state)
        finally:
            for entry in entries:
                self._transcodes.forget(entry.record.post_id)
            self._session = None

        logger.info(
            f"[batch] Gallery {session.gallery_id} {state.value}: {summary.completed} completed, "
            f"{summary.failed} failed, {summary.abandoned} abandoned"
        )
        if state == SessionState.FAILED:
            await self._events.emit("error", session.error)
        elif state == SessionState.CANCELLED:
            await self._events.emit("batch_cancelled", summary)
        else:
            await self._events.emit("batch_complete", summary)

    async def _process_asset(self, session: BatchSession, entry: AssetEntry, uploads: asyncio.Semaphore) -> None:
        try:
            await self._dispatch(session, entry, uploads)
        except StorageError as e:
            logger.error(f"[batch] Storage failure on post {entry.record.post_id}: {e}")
            if session.error is None:
                session.error = e
            session.request_cancel()

    async def _dispatch(self, session: BatchSession, entry: AssetEntry, uploads: asyncio.Semaphore) -> None:
        record, asset = entry.record, entry.asset
        post_id = record.post_id
        if session.is_cancelled:
            return

        try:
            if record.state == RecordState.UPLOADED:
                async with uploads:
                    digest = await self._worker.finalize(record, self._post_metadata(record, asset))
            else:
                source = asset.path
                if record.is_video:
                    async def on_fraction(_asset_id: str, fraction: float) -> None:
                        await session.progress.apply(ProgressSample.transcoding(post_id, fraction))

                    source = await self._transcodes.transcode(
                        record, asset, on_fraction, should_start=lambda: not session.is_cancelled
                    )
                    if source is None:
                        return
                    await session.progress.revise_size(post_id, record.total_bytes, sent=record.uploaded_bytes)

                async with uploads:
                    if session.is_cancelled:
                        return
                    digest = await self._worker.upload(
                        record,
                        source,
                        self._post_metadata(record, asset),
                        session.progress,
                        is_cancelled=lambda: session.is_cancelled,
                    )
        except UploadCancelled:
            logger.info(f"[batch] Post {post_id} stopped at {record.uploaded_bytes}/{record.total_bytes} bytes")
            return
        except StorageError:
            raise
        except AssetError as e:
            if e.post_id is None:
                e.post_id = post_id
            await self._fail(session, entry, e)
            return
        except Exception as e:
            # collaborator bug; scoped to this asset
            logger.error(f"[batch] Unexpected error on post {post_id}: {e}", exc_info=True)
            await self._fail(session, entry, e)
            return

        await self._report(session, entry, AssetResult.ok(record, digest))

    def _post_metadata(self, record: UploadRecord, asset: AssetInfo) -> Dict[str, Any]:
        metadata = build_digest(asset)
        metadata["fileSize"] = record.total_bytes
        metadata["gallery_id"] = record.gallery_id
        if asset.is_video:
            metadata["contentType"] = f"video/{self._transcodes.constraints.container}"
        return metadata

    async def _fail(self, session: BatchSession, entry: AssetEntry, error: Exception) -> None:
        record = entry.record
        logger.error(f"[batch] Post {record.post_id} failed: {error}")
        await self._gateway.mark_failed(record, error)
        await session.progress.discard(record.post_id)
        result = AssetResult.fail(record.post_id, record.gallery_id, error, record.is_video, record.total_bytes)
        await self._report(session, entry, result)

    async def _report(self, session: BatchSession, entry: AssetEntry, result: AssetResult) -> None:
        session.record_result(result, entry)
        await self._events.emit("asset_complete", result)
