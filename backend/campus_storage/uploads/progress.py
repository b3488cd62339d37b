"""Observable per-item progress of an upload batch.

The SagaCoordinator is the only writer. Readers either register a callback
with ``subscribe()`` or drain an async stream from ``events()``; the stream
ends when the coordinator closes the batch.

Thread Safety:
    Designed for a single event loop. Writes never interleave across items
    because the coordinator processes one item at a time.
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, List, Optional

from .schemas import ProgressSnapshot, UploadItem, UploadStatus

logger = logging.getLogger(__name__)

Subscriber = Callable[[ProgressSnapshot], None]

_CLOSED = object()


class ProgressStore:
    """Last-write-wins snapshot per item index plus change notifications."""

    def __init__(self) -> None:
        self._snapshots: Dict[int, ProgressSnapshot] = {}
        self._subscribers: List[Subscriber] = []
        self._queues: List[asyncio.Queue] = []
        self._active = False

    # ------------------------------------------------------------------
    # Writer side (coordinator only)
    # ------------------------------------------------------------------

    def open_batch(self, items: List[UploadItem]) -> None:
        """Reset state for a new batch and seed one snapshot per item."""
        self._active = True
        self._snapshots = {i: ProgressSnapshot.of(i, item) for i, item in enumerate(items)}

    def publish(self, index: int, item: UploadItem) -> ProgressSnapshot:
        snapshot = ProgressSnapshot.of(index, item)
        previous = self._snapshots.get(index)
        if (
            previous is not None
            and previous.status == UploadStatus.UPLOADING
            and snapshot.status == UploadStatus.UPLOADING
            and snapshot.progress_percent < previous.progress_percent
        ):
            snapshot.progress_percent = previous.progress_percent
        self._snapshots[index] = snapshot

        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as exc:
                logger.warning("Progress subscriber failed: %s", exc)
        for queue in self._queues:
            queue.put_nowait(snapshot)
        return snapshot

    def close_batch(self) -> None:
        """Signal end of batch to every open event stream."""
        self._active = False
        queues, self._queues = self._queues, []
        for queue in queues:
            queue.put_nowait(_CLOSED)

    # ------------------------------------------------------------------
    # Reader side
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._active

    def get(self, index: int) -> Optional[ProgressSnapshot]:
        return self._snapshots.get(index)

    def snapshots(self) -> List[ProgressSnapshot]:
        return [self._snapshots[i] for i in sorted(self._snapshots)]

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def events(self) -> AsyncIterator[ProgressSnapshot]:
        """Stream of snapshots published from now until the running (or next)
        batch closes.

        The stream is registered immediately, so events published before the
        first ``async for`` step are not lost.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[ProgressSnapshot]:
        try:
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    return
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)
