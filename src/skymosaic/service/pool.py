"""
Bounded worker pool for query and tile computations.

Executes engine calls with:
- A fixed number of worker threads
- A bounded backlog; submissions beyond it are rejected, never queued
- Timeout enforcement
- Unexpected failures wrapped into InternalError

A timed-out computation keeps its worker until it finishes; its result
is discarded.
"""

import asyncio
import concurrent.futures
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from ..errors import EngineBusyError, EngineTimeoutError, InternalError, SkyMosaicError

logger = logging.getLogger(__name__)


class WorkerPool:
    """Thread pool with backpressure and per-task timeouts."""

    def __init__(
        self,
        worker_count: int = 4,
        queue_size: int = 64,
        timeout_seconds: Optional[float] = 30.0,
    ):
        """
        Initialize pool.

        Args:
            worker_count: Number of worker threads
            queue_size: Tasks allowed to wait for a free worker
            timeout_seconds: Per-task time budget, None for no limit
        """
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if queue_size < 0:
            raise ValueError("queue_size must not be negative")
        self.worker_count = worker_count
        self.queue_size = queue_size
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=worker_count, thread_name_prefix="skymosaic-worker"
        )
        self._slots = threading.BoundedSemaphore(worker_count + queue_size)

    @property
    def capacity(self) -> int:
        return self.worker_count + self.queue_size

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Schedule ``fn``; EngineBusyError if the backlog is full."""
        if not self._slots.acquire(blocking=False):
            raise EngineBusyError(
                f"Engine busy: {self.capacity} tasks already in flight"
            )
        try:
            future = self._executor.submit(self._call, fn, *args, **kwargs)
        except RuntimeError as e:
            self._slots.release()
            raise InternalError(f"Worker pool is shut down: {e}") from e
        # A task cancelled before it started never reaches _call
        future.add_done_callback(self._release_if_cancelled)
        return future

    def _release_if_cancelled(self, future: Future):
        if future.cancelled():
            self._slots.release()

    def run(self, fn: Callable, *args, **kwargs):
        """Run ``fn`` on a worker and wait for its result."""
        future = self.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise self._timeout_error(fn) from None

    async def run_async(self, fn: Callable, *args, **kwargs):
        """Awaitable variant of ``run`` for event-loop callers."""
        future = self.submit(fn, *args, **kwargs)
        try:
            return await asyncio.wait_for(
                asyncio.wrap_future(future), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise self._timeout_error(fn) from None

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _timeout_error(self, fn: Callable) -> EngineTimeoutError:
        name = getattr(fn, "__qualname__", repr(fn))
        message = f"{name} timed out after {self.timeout_seconds} seconds"
        logger.error(message)
        return EngineTimeoutError(message)

    def _call(self, fn: Callable, *args, **kwargs):
        start_time = time.time()
        try:
            return fn(*args, **kwargs)
        except SkyMosaicError:
            raise
        except Exception as e:
            logger.exception("Task %s failed", getattr(fn, "__qualname__", fn))
            raise InternalError(f"{type(e).__name__}: {e}") from e
        finally:
            duration_ms = int((time.time() - start_time) * 1000)
            logger.debug("Task %s finished in %dms", getattr(fn, "__qualname__", fn), duration_ms)
            self._slots.release()
