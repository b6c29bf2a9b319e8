# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Bounded task queue drained by a fixed pool of worker threads.

The queue capacity equals the number of workers.  ``submit`` blocks while
the queue is full, so producers (webhook requests, update-all) are held
back instead of spawning unbounded concurrent git operations.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast


if TYPE_CHECKING:
    from pullmirror.git import Repository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Task:
    """One fetch+push unit of work.

    Attributes:
        request_id: Identifier of the request that triggered the task.
        repository: Handle shared with the registry it was taken from.
    """

    request_id: str
    repository: Repository


class WaitGroup:
    """Counter of outstanding work that can be waited on until zero."""

    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self, delta: int = 1) -> None:
        """Adjust the counter.

        Raises:
            ValueError: If the counter would become negative.
        """
        with self._cond:
            if self._count + delta < 0:
                raise ValueError("negative WaitGroup counter")
            self._count += delta
            if self._count == 0:
                self._cond.notify_all()

    def done(self) -> None:
        """Mark one unit of work as finished."""
        self.add(-1)

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the counter reaches zero.

        Args:
            timeout: Seconds to wait, or None to wait forever.

        Returns:
            True if the counter reached zero, False on timeout.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)


_STOP = object()


class WorkerPool:
    """Fixed number of threads consuming tasks from a bounded queue.

    The pool is started once and closed once.  Tasks submitted before
    ``close()`` are all handled; ``close()`` queues one stop marker per
    worker behind them.

    Args:
        concurrency: Number of workers and queue capacity.
        handler: Called with each task on a worker thread.  Exceptions are
            logged and do not stop the worker.
        name: Thread name prefix.
    """

    def __init__(
        self,
        concurrency: int,
        handler: Callable[[Task], None],
        name: str = "MirrorWorker",
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1: {concurrency}")
        self.concurrency = concurrency
        self._handler = handler
        self._name = name
        self._queue: queue.Queue[object] = queue.Queue(maxsize=concurrency)
        self._threads: list[threading.Thread] = []
        self._closed = False
        self._lock = threading.Lock()

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._threads:
                return
            for i in range(self.concurrency):
                thread = threading.Thread(
                    target=self._worker,
                    daemon=True,
                    name=f"{self._name}-{i}",
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Started worker pool with %d workers", self.concurrency)

    def submit(self, task: Task) -> None:
        """Queue a task, blocking while the queue is full.

        Raises:
            RuntimeError: If the pool has been closed.
        """
        if self._closed:
            raise RuntimeError("worker pool is closed")
        self._queue.put(task)

    def close(self) -> None:
        """Stop accepting tasks and let workers exit once drained."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            started = len(self._threads)
        for _ in range(started):
            self._queue.put(_STOP)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the worker threads to exit after ``close()``."""
        for thread in self._threads:
            thread.join(timeout)

    @property
    def pending(self) -> int:
        """Approximate number of queued, not yet started tasks."""
        return self._queue.qsize()

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            task = cast(Task, item)
            try:
                self._handler(task)
            except Exception:
                logger.exception(
                    "Unhandled error in task %s for %s",
                    task.request_id,
                    task.repository,
                )
