"""Bounded worker pool for tool execution."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

_log = logging.getLogger("codeagent.tools.pool")

T = TypeVar("T")

_Job = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class WorkerPool:
    """A fixed number of worker tasks fed from a bounded queue.

    ``submit`` waits while the queue is full, which is how backpressure
    reaches the caller. Cancelling the future returned by ``submit``
    cancels the job, whether it is still queued or already running.
    """

    def __init__(self, max_workers: int = 10, queue_size: int = 32) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._queue: asyncio.Queue[_Job] = asyncio.Queue(maxsize=max(queue_size, 1))
        self._workers: list[asyncio.Task[None]] = []
        self._active = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def active(self) -> int:
        """Jobs currently executing."""
        return self._active

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"tool-worker-{i}")
            for i in range(self.max_workers)
        ]

    async def submit(self, job: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue ``job`` and return a future for its result."""
        self.start()
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await self._queue.put((job, future))
        return future

    async def close(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()

    async def _worker(self) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                if future.done():
                    continue
                await self._run(job, future)
            finally:
                self._queue.task_done()

    async def _run(self, job: Callable[[], Awaitable[Any]], future: asyncio.Future[Any]) -> None:
        task = asyncio.ensure_future(job())

        def _propagate_cancel(f: asyncio.Future[Any]) -> None:
            if f.cancelled():
                task.cancel()

        future.add_done_callback(_propagate_cancel)
        self._active += 1
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            if not future.done():
                future.cancel()
            raise
        finally:
            self._active -= 1

        if future.done():
            return
        if task.cancelled():
            future.cancel()
        elif task.exception() is not None:
            future.set_exception(task.exception())
        else:
            future.set_result(task.result())
