"""
Serial ingestion queue.

Documents are ingested one path per tick. Every submitted batch gets an
`IngestTask` handle owning its own progress, which the caller can poll,
cancel or await. Batches never overlap, so only one writer touches the
store file at a time.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

from config import settings
from monitoring.metrics import error_counter
from transport.http import deliver

logger = logging.getLogger(__name__)

IngestFn = Callable[[str], Union[bool, Awaitable[bool]]]


class IngestTask:
    """
    Handle of one ingestion batch.

    Attributes:
        paths: Paths in ingestion order.
        done: Number of paths ingested successfully.
        failed: Paths whose ingestion failed.
        current: Path being ingested, if any.
        cancelled: Whether the batch was cancelled before finishing.
    """

    def __init__(self, paths: Iterable[str]) -> None:
        self.paths: List[str] = list(paths)
        self.done: int = 0
        self.failed: List[str] = []
        self.current: Optional[str] = None
        self.cancelled: bool = False
        self._task: Optional[asyncio.Task] = None

    @property
    def total(self) -> int:
        return len(self.paths)

    @property
    def processed(self) -> int:
        return self.done + len(self.failed)

    @property
    def progress(self) -> float:
        """Fraction of paths processed, 1.0 for an empty batch."""
        return self.processed / self.total if self.total else 1.0

    @property
    def succeeded(self) -> bool:
        return self.finished() and not self.cancelled and not self.failed

    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        """Stop after the path currently being ingested."""
        if self._task is not None:
            self._task.get_loop().call_soon(self._task.cancel)

    def __await__(self):
        if self._task is None:
            raise RuntimeError("IngestTask has not been scheduled")
        return self._task.__await__()

    def __repr__(self) -> str:
        return (
            f"IngestTask(total={self.total}, done={self.done}, "
            f"failed={len(self.failed)}, current={self.current!r})"
        )


class IngestQueue:
    """
    Runs ingestion batches one path at a time.

    Attributes:
        ingest: Ingests one path, returning success (sync or async).
        tick_ms: Pause between paths.
    """

    def __init__(self, ingest: IngestFn, tick_ms: Optional[int] = None) -> None:
        self.ingest = ingest
        self.tick_ms: int = tick_ms if tick_ms is not None else settings.INGEST_TICK_MS
        self._lock: Optional[asyncio.Lock] = None

    def submit(
        self,
        paths: Iterable[str],
        on_done: Optional[Callable[[IngestTask], Any]] = None,
    ) -> IngestTask:
        """
        Queue a batch and return its handle immediately.

        Must be called from a running event loop. `on_done(task)` fires
        exactly once, after the last path or on cancellation.
        """
        handle = IngestTask(paths)
        handle._task = asyncio.ensure_future(self._run(handle, on_done))
        return handle

    async def _run(self, handle: IngestTask, on_done: Optional[Callable[[IngestTask], Any]]) -> IngestTask:
        if self._lock is None:
            self._lock = asyncio.Lock()

        try:
            async with self._lock:
                logger.info(f"Ingesting {handle.total} document(s)")
                for path in handle.paths:
                    handle.current = path
                    if await self._ingest_one(path):
                        handle.done += 1
                    else:
                        handle.failed.append(path)
                    handle.current = None
                    await asyncio.sleep(self.tick_ms / 1000)
        except asyncio.CancelledError:
            handle.cancelled = True
            handle.current = None
            logger.warning(f"Ingestion cancelled after {handle.processed}/{handle.total} document(s)")

        logger.info(f"Ingestion finished: {handle.done} ok, {len(handle.failed)} failed")
        deliver(on_done, handle)
        return handle

    async def _ingest_one(self, path: str) -> bool:
        try:
            result = self.ingest(path)
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        except Exception as e:
            error_counter.labels(type=type(e).__name__).inc()
            logger.error(f"Ingestion of {path} failed: {e}", exc_info=True)
            return False
