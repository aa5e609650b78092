"""Run blocking decode + classify work off the event loop.

Each upload holds one slot while its image is decoded and classified on a
worker thread; the request handler awaits the result. An upload that can't
get a slot within ``Settings.queue_timeout`` seconds fails with
``TimeoutError`` (mapped to 503 by the API).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from photoclassify.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounded worker pool shared by all classification requests."""

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="photoclassify-worker",
        )
        self._queue_timeout = settings.queue_timeout
        self._lock = threading.Lock()
        self._waiting = 0
        self._running = 0

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        with self._lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            logger.warning("No worker slot free after %.2fs (%d running)", self._queue_timeout, self.active_count)
            raise
        finally:
            with self._lock:
                self._waiting -= 1

        with self._lock:
            self._running += 1
        try:
            yield
        finally:
            with self._lock:
                self._running -= 1
            self._slots.release()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Exceptions raised by ``func`` propagate unchanged.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)

    @property
    def active_count(self) -> int:
        """Uploads currently being decoded or classified."""
        with self._lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        """Uploads waiting for a slot."""
        with self._lock:
            return self._waiting

    def shutdown(self) -> None:
        """Wait for running work and stop the worker threads."""
        self._executor.shutdown(wait=True)
