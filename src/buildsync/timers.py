"""Background timer pool for periodic and deferred work.

The TimerPool runs three kinds of short-lived work for Build Sync, none of
which may run on the CI engine's own callback threads:

- the periodic poll sweep over tracked runs (fixed rate)
- the deferred cleanup after a run is finalized (one shot)
- the host readiness polling before watchers start (one shot)

A single dispatcher thread keeps due tasks in a heap and hands them to a
small ``ThreadPoolExecutor``. Task exceptions are logged and never kill the
pool or cancel a periodic task.

Fixed-rate semantics:
    A periodic task never overlaps itself. When a tick comes due while the
    previous execution is still running, that tick is skipped. Ticks missed
    while the pool was busy are not replayed in a burst; the next tick is
    the first period boundary after the current time.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from buildsync.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POOL_SIZE = 2


class ScheduledTask:
    """Handle for a task scheduled on a TimerPool."""

    def __init__(
        self,
        fn: Callable[[], object],
        name: str,
        period: float | None = None,
    ) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "task")
        self.period = period
        self._cancelled = threading.Event()
        self._running = threading.Event()
        self._done = threading.Event()
        self.run_count = 0

    @property
    def periodic(self) -> bool:
        return self.period is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def cancel(self) -> None:
        """Prevent future executions. An execution in progress is not interrupted."""
        self._cancelled.set()
        if not self._running.is_set():
            self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until a one-shot task has run or any task was cancelled.

        Returns:
            True if the task finished (or was cancelled) within the timeout.
        """
        return self._done.wait(timeout)

    def _execute(self) -> None:
        # _running is set by the dispatcher before submission
        try:
            self._fn()
        except Exception:
            # Timer tasks must never take the pool down
            logger.exception("Timer task %s failed", self.name)
        finally:
            self.run_count += 1
            self._running.clear()
            if not self.periodic or self.cancelled:
                self._done.set()


class TimerPool:
    """Small fixed-size pool executing delayed and fixed-rate tasks.

    Thread Safety:
        All public methods may be called from any thread.
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_POOL_SIZE,
        name: str = "buildsync-timer",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the timer pool.

        Args:
            max_workers: Number of worker threads executing tasks.
            name: Thread name prefix.
            clock: Monotonic clock in seconds.
        """
        self._max_workers = max_workers
        self._name = name
        self._clock = clock
        self._heap: list[tuple[float, int, ScheduledTask]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._executor: ThreadPoolExecutor | None = None
        self._dispatcher: threading.Thread | None = None
        self._stopping = False

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def start(self) -> None:
        """Start the dispatcher thread and worker pool."""
        with self._cond:
            if self._executor is not None:
                logger.warning("Timer pool already started")
                return
            self._stopping = False
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix=f"{self._name}-",
            )
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop,
                name=f"{self._name}-dispatcher",
                daemon=True,
            )
            self._dispatcher.start()
        logger.info("Started timer pool with %d workers", self._max_workers)

    def shutdown(self, wait: bool = True) -> None:
        """Stop dispatching and shut down the worker pool.

        Pending tasks are dropped; tasks already executing finish when
        ``wait`` is True.
        """
        with self._cond:
            if self._executor is None:
                return
            self._stopping = True
            executor = self._executor
            dispatcher = self._dispatcher
            pending = [task for _, _, task in self._heap]
            self._heap.clear()
            self._executor = None
            self._dispatcher = None
            self._cond.notify_all()

        for task in pending:
            task.cancel()
        if dispatcher is not None and dispatcher is not threading.current_thread():
            dispatcher.join(timeout=5.0)
        executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Timer pool shutdown complete")

    def is_running(self) -> bool:
        return self._executor is not None

    def schedule(self, fn: Callable[[], object], delay: float, name: str = "") -> ScheduledTask:
        """Run ``fn`` once after ``delay`` seconds.

        Raises:
            RuntimeError: If the pool is not running.
        """
        task = ScheduledTask(fn, name)
        self._push(task, self._clock() + max(delay, 0.0))
        return task

    def schedule_at_fixed_rate(
        self,
        fn: Callable[[], object],
        initial_delay: float,
        period: float,
        name: str = "",
    ) -> ScheduledTask:
        """Run ``fn`` every ``period`` seconds, first after ``initial_delay``.

        Raises:
            ValueError: If period is not positive.
            RuntimeError: If the pool is not running.
        """
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        task = ScheduledTask(fn, name, period=period)
        self._push(task, self._clock() + max(initial_delay, 0.0))
        return task

    def pending_count(self) -> int:
        """Number of scheduled, not yet dispatched task entries."""
        with self._cond:
            return sum(1 for _, _, task in self._heap if not task.cancelled)

    def _push(self, task: ScheduledTask, due: float) -> None:
        with self._cond:
            if self._executor is None or self._stopping:
                raise RuntimeError(f"Cannot schedule {task.name}: timer pool not running")
            heapq.heappush(self._heap, (due, next(self._seq), task))
            self._cond.notify_all()

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                while not self._stopping:
                    if not self._heap:
                        self._cond.wait()
                        continue
                    due, _, _ = self._heap[0]
                    remaining = due - self._clock()
                    if remaining <= 0:
                        break
                    self._cond.wait(timeout=remaining)
                if self._stopping:
                    return
                due, _, task = heapq.heappop(self._heap)
                executor = self._executor
                if task.cancelled:
                    continue
                if task.periodic:
                    assert task.period is not None
                    next_due = due + task.period
                    now = self._clock()
                    if next_due <= now:
                        missed = int((now - next_due) // task.period) + 1
                        next_due += missed * task.period
                    heapq.heappush(self._heap, (next_due, next(self._seq), task))

            if task.periodic and task.running:
                logger.debug(
                    "Skipping tick of %s: previous execution still running",
                    task.name,
                    extra={"diagnostic_tag": "polling"},
                )
                continue
            if executor is None:
                return
            task._running.set()
            try:
                executor.submit(task._execute)
            except RuntimeError:
                # Executor shut down between pop and submit
                task._running.clear()
                return
