"""Batch session - in-memory state of one upload batch."""
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Coroutine, Dict, List, Optional
import asyncio
import logging

from ..models import AssetInfo, AssetResult, BatchSummary, UploadRecord
from .progress import ProgressAggregator

logger = logging.getLogger(__name__)

# Session whose runner (or one of its asset tasks) owns the current context
_RUNNING_SESSION: ContextVar[Optional["BatchSession"]] = ContextVar("running_session", default=None)


class SessionState(Enum):
    """State of a batch session."""
    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AssetEntry:
    """One asset of the batch: its durable record and resolved asset."""
    record: UploadRecord
    asset: AssetInfo
    reported: bool = False


class BatchSession:
    """
    Handle for a running batch.

    Usage:
        session = await manager.start_new_upload(posts, gallery_id)
        summary = await session.wait()

        # or stop it; unfinished records stay resumable
        await session.cancel()
    """

    def __init__(self, gallery_id: str, progress: ProgressAggregator):
        self.gallery_id = gallery_id
        self.progress = progress
        self._entries: Dict[str, AssetEntry] = {}
        self._order: List[str] = []
        self._results: List[AssetResult] = []
        self._state = SessionState.PENDING
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None
        self._summary: Optional[BatchSummary] = None
        self.error: Optional[Exception] = None

        self.to_complete = 0
        self.completed = 0
        self.failed = 0
        self.malformed = 0

    # Entries (arena keyed by post_id)

    def add(self, record: UploadRecord, asset: AssetInfo) -> AssetEntry:
        entry = AssetEntry(record=record, asset=asset)
        if record.post_id not in self._entries:
            self._order.append(record.post_id)
            self.to_complete += 1
        self._entries[record.post_id] = entry
        return entry

    def entry(self, post_id: str) -> Optional[AssetEntry]:
        return self._entries.get(post_id)

    @property
    def entries(self) -> List[AssetEntry]:
        return [self._entries[post_id] for post_id in self._order]

    @property
    def unreported(self) -> List[AssetEntry]:
        return [e for e in self.entries if not e.reported]

    @property
    def results(self) -> List[AssetResult]:
        return list(self._results)

    def record_result(self, result: AssetResult, entry: Optional[AssetEntry] = None) -> None:
        """Count a terminal asset outcome. Each entry is counted once."""
        if entry is not None:
            if entry.reported:
                return
            entry.reported = True
            self.to_complete -= 1
            if result.success:
                self.completed += 1
            else:
                self.failed += 1
        else:
            # malformed post that never became an entry
            self.malformed += 1
            self.failed += 1
        self._results.append(result)

    # Lifecycle

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_running(self) -> bool:
        return self._state == SessionState.RUNNING

    def start(self, runner: Callable[["BatchSession"], Coroutine]) -> None:
        if self._state != SessionState.PENDING:
            raise RuntimeError(f"Cannot start session in state: {self._state}")
        self._state = SessionState.RUNNING
        self._task = asyncio.create_task(self._drive(runner))

    async def _drive(self, runner: Callable[["BatchSession"], Coroutine]) -> None:
        _RUNNING_SESSION.set(self)
        await runner(self)

    @property
    def in_own_task(self) -> bool:
        """True when called from the batch runner or its listeners."""
        return _RUNNING_SESSION.get() is self

    def finish(self, state: SessionState) -> BatchSummary:
        """Move to a final state and freeze the summary."""
        self._state = state
        self._summary = self.summary()
        return self._summary

    def request_cancel(self) -> None:
        if self._state in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED):
            return
        self._cancelled = True

    async def cancel(self) -> BatchSummary:
        """
        Stop dispatching, let in-flight chunks finish, wait for the batch to settle.

        Called from one of the batch's own listeners, it only flags the
        cancellation and returns the current summary.
        """
        self.request_cancel()
        if self.in_own_task:
            return self.summary()
        return await self.wait()

    async def wait(self) -> BatchSummary:
        """Wait for the batch to settle and return its summary."""
        if self.in_own_task:
            raise RuntimeError("Cannot wait for a batch from inside its own listeners")
        if self._task:
            await asyncio.shield(self._task)
        return self.summary()

    def summary(self) -> BatchSummary:
        if self._summary is not None:
            return self._summary
        abandoned = len(self.unreported) if self._state in (SessionState.CANCELLED, SessionState.FAILED) else 0
        return BatchSummary(
            gallery_id=self.gallery_id,
            total_assets=len(self._order) + self.malformed,
            completed=self.completed,
            failed=self.failed,
            abandoned=abandoned,
            results=list(self._results),
            cancelled=self._state == SessionState.CANCELLED,
            error=self.error,
        )
