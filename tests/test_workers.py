# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for the worker pool and wait-group."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from pullmirror.workers import Task, WaitGroup, WorkerPool


def _task(request_id: str = "req") -> Task:
    return Task(request_id=request_id, repository=MagicMock())


class TestWaitGroup:
    """Tests for WaitGroup."""

    def test_wait_on_zero_returns_immediately(self) -> None:
        """An idle wait-group does not block."""
        assert WaitGroup().wait(timeout=0) is True

    def test_wait_times_out(self) -> None:
        """Outstanding work makes wait time out."""
        wg = WaitGroup()
        wg.add(1)

        assert wg.wait(timeout=0.05) is False
        assert wg.count == 1

    def test_wait_released_by_done(self) -> None:
        """wait returns once every unit is done."""
        wg = WaitGroup()
        wg.add(2)

        def finish() -> None:
            time.sleep(0.05)
            wg.done()
            wg.done()

        thread = threading.Thread(target=finish)
        thread.start()

        assert wg.wait(timeout=5) is True
        thread.join()
        assert wg.count == 0

    def test_negative_counter(self) -> None:
        """Going below zero is an error."""
        wg = WaitGroup()

        with pytest.raises(ValueError, match="negative"):
            wg.done()


class TestWorkerPool:
    """Tests for WorkerPool."""

    def test_invalid_concurrency(self) -> None:
        """At least one worker is required."""
        with pytest.raises(ValueError):
            WorkerPool(0, MagicMock())

    def test_runs_all_tasks(self) -> None:
        """Every submitted task is handled exactly once."""
        handled: list[str] = []
        lock = threading.Lock()

        def handler(task: Task) -> None:
            with lock:
                handled.append(task.request_id)

        pool = WorkerPool(2, handler)
        pool.start()
        for i in range(10):
            pool.submit(_task(f"req-{i}"))
        pool.close()
        pool.join(timeout=5)

        assert sorted(handled) == sorted(f"req-{i}" for i in range(10))

    def test_concurrency_bound(self) -> None:
        """No more than `concurrency` handlers run at once."""
        active = 0
        peak = 0
        lock = threading.Lock()

        def handler(task: Task) -> None:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1

        pool = WorkerPool(3, handler)
        pool.start()
        for i in range(12):
            pool.submit(_task(f"req-{i}"))
        pool.close()
        pool.join(timeout=5)

        assert 1 <= peak <= 3

    def test_backpressure(self) -> None:
        """submit blocks while the queue is full."""
        release = threading.Event()
        started = threading.Event()

        def handler(task: Task) -> None:
            started.set()
            release.wait(timeout=5)

        pool = WorkerPool(1, handler)
        pool.start()

        # First task occupies the worker, second fills the queue
        pool.submit(_task("running"))
        assert started.wait(timeout=5)
        pool.submit(_task("queued"))

        submitted = threading.Event()

        def submit_third() -> None:
            pool.submit(_task("blocked"))
            submitted.set()

        producer = threading.Thread(target=submit_third)
        producer.start()

        assert not submitted.wait(timeout=0.2)

        release.set()
        assert submitted.wait(timeout=5)
        producer.join(timeout=5)
        pool.close()
        pool.join(timeout=5)

    def test_handler_exception_does_not_kill_worker(self) -> None:
        """A failing task is logged and the worker keeps going."""
        handled: list[str] = []

        def handler(task: Task) -> None:
            if task.request_id == "boom":
                raise RuntimeError("boom")
            handled.append(task.request_id)

        pool = WorkerPool(1, handler)
        pool.start()
        pool.submit(_task("boom"))
        pool.submit(_task("after"))
        pool.close()
        pool.join(timeout=5)

        assert handled == ["after"]

    def test_submit_after_close(self) -> None:
        """A closed pool rejects new tasks."""
        pool = WorkerPool(1, MagicMock())
        pool.start()
        pool.close()

        with pytest.raises(RuntimeError, match="closed"):
            pool.submit(_task())
        pool.join(timeout=5)

    def test_close_is_idempotent(self) -> None:
        """Closing twice is harmless."""
        pool = WorkerPool(2, MagicMock())
        pool.start()

        pool.close()
        pool.close()
        pool.join(timeout=5)

    def test_start_is_idempotent(self) -> None:
        """Starting twice does not add workers."""
        pool = WorkerPool(2, MagicMock())
        pool.start()
        pool.start()

        pool.close()
        pool.join(timeout=5)

        assert len(pool._threads) == 2
