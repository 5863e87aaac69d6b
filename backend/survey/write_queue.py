# backend/survey/write_queue.py
"""
Serialized write queue
======================
Accepts survey records from any number of concurrent requests and hands them
to a single persistence operation one at a time, in arrival order.

The workbook session on the remote side is not safe for concurrent writes, so
at most one persistence call is ever in flight.

Concurrency model: everything here runs on one asyncio event loop. The
"is draining" gate and the stats counters rely on there being no suspension
point between checking and setting them. `submit()` must therefore be called
from the loop thread; calling it from another thread needs a lock around the
gate and the counters.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 100
DEFAULT_MAX_WAIT_SECONDS = 60.0

PersistFn = Callable[[dict], Awaitable[Any]]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_request_id() -> str:
    return secrets.token_hex(5)[:9]


class WriteQueueError(Exception):
    pass


class QueueFull(WriteQueueError):
    def __init__(self, capacity: int):
        super().__init__("Queue is full, please try again later")
        self.capacity = capacity


class QueueTimeout(WriteQueueError):
    def __init__(self, request_id: str, waited_seconds: float):
        super().__init__(f"Queue timeout: request {request_id} waited {waited_seconds:.1f}s")
        self.request_id = request_id
        self.waited_seconds = waited_seconds


@dataclass
class QueueRecord:
    payload: dict
    enqueued_at: float
    request_id: str
    future: asyncio.Future

    def resolve(self) -> None:
        if not self.future.done():
            self.future.set_result(None)

    def fail(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)

    def cancel(self) -> None:
        if not self.future.done():
            self.future.cancel()


@dataclass
class WorkerStats:
    total_processed: int = 0
    total_errors: int = 0
    last_processed_at: Optional[str] = None
    max_queue_size_observed: int = 0

    @property
    def success_rate_percent(self) -> float:
        attempted = self.total_processed + self.total_errors
        if attempted == 0:
            return 100.0
        return round(self.total_processed / attempted * 100.0, 2)


class WriteQueue:
    """Single-slot FIFO in front of a persistence operation."""

    def __init__(
        self,
        persist: PersistFn,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._persist = persist
        self.max_size = int(max_size)
        self.max_wait_seconds = float(max_wait_seconds)
        self._clock = clock
        self._records: deque[QueueRecord] = deque()
        self._draining = False
        self._drain_task: asyncio.Task | None = None
        self._stats = WorkerStats()

    def __len__(self) -> int:
        return len(self._records)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def submit(self, payload: dict) -> asyncio.Future:
        """Queue a record and return the future that settles once it was attempted."""
        if len(self._records) >= self.max_size:
            logger.warning(f"Write queue full ({self.max_size} pending); rejecting record")
            raise QueueFull(self.max_size)

        loop = asyncio.get_running_loop()
        record = QueueRecord(
            payload=payload,
            enqueued_at=self._clock(),
            request_id=_new_request_id(),
            future=loop.create_future(),
        )
        # Append before signalling: a drain that is about to exit re-checks
        # the queue, and a drain that already exited is restarted below.
        self._records.append(record)
        self._stats.max_queue_size_observed = max(self._stats.max_queue_size_observed, len(self._records))
        logger.debug(f"Queued request {record.request_id} (queue length {len(self._records)})")
        self._start_drain()
        return record.future

    async def enqueue(self, payload: dict) -> None:
        future = self.submit(payload)
        # A cancelled awaiter must not cancel the record; it still gets attempted.
        await asyncio.shield(future)

    def _start_drain(self) -> None:
        if self._draining or not self._records:
            return
        self._draining = True
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        self._stats.max_queue_size_observed = max(self._stats.max_queue_size_observed, len(self._records))
        logger.debug(f"Drain started with {len(self._records)} pending records")
        try:
            while self._records:
                record = self._records.popleft()
                waited = self._clock() - record.enqueued_at

                if waited > self.max_wait_seconds:
                    logger.warning(f"Request {record.request_id} timed out after {waited:.1f}s in queue")
                    self._stats.total_errors += 1
                    record.fail(QueueTimeout(record.request_id, waited))
                    continue

                try:
                    await self._persist(record.payload)
                except asyncio.CancelledError:
                    # Only happens when the loop itself is shutting down.
                    record.cancel()
                    self._cancel_pending()
                    raise
                except Exception as e:
                    logger.error(f"Request {record.request_id} failed: {e}")
                    self._stats.total_errors += 1
                    record.fail(e)
                    continue

                self._stats.total_processed += 1
                self._stats.last_processed_at = _utc_now_iso()
                record.resolve()
                logger.debug(f"Request {record.request_id} persisted after {waited:.3f}s")
        finally:
            self._draining = False
            self._drain_task = None

    def _cancel_pending(self) -> None:
        if self._records:
            logger.warning(f"Drain cancelled; dropping {len(self._records)} pending records")
        while self._records:
            self._records.popleft().cancel()

    async def join(self) -> None:
        """Wait until the active drain (if any) has emptied the queue."""
        while self._drain_task is not None:
            await asyncio.shield(self._drain_task)

    def snapshot(self) -> dict:
        stats = self._stats
        return {
            "current_length": len(self._records),
            "is_draining": self._draining,
            "total_processed": stats.total_processed,
            "total_errors": stats.total_errors,
            "last_processed_at": stats.last_processed_at,
            "max_queue_size_observed": stats.max_queue_size_observed,
            "success_rate_percent": stats.success_rate_percent,
        }
