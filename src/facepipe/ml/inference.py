"""Forward-pass concurrency layer.

Architecture:
    pipeline stage (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> session.run

ONNX Runtime sessions block, so every forward pass is pushed off the event
loop. A forward pass that cannot get a slot within the queue timeout raises
TimeoutError, which the API turns into a 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from facepipe.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounds the number of forward passes running at once."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="facepipe-forward",
        )
        self._queue_timeout = settings.queue_timeout
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        If the caller is cancelled, this waits for the worker to finish before
        re-raising, so the arguments stay valid for the whole forward pass.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            logger.warning("Forward pass queue timed out after %.1fs", self._queue_timeout)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._executor, func, *args)
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                # The worker thread reads ``args`` until it returns.
                await asyncio.gather(future, return_exceptions=True)
                raise
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of forward passes currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of forward passes waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


async def run_inference(pool: InferencePool | None, func: Callable[..., T], *args: object) -> T:
    """Run a blocking forward pass in the pool, or inline when there is none."""
    if pool is None:
        return func(*args)
    return await pool.run(func, *args)
