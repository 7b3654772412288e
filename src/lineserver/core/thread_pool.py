"""
=============================================================================
THREAD POOL FOR LINE DISPATCH
=============================================================================

By default every handler runs on the event loop thread. That keeps
things simple, but one slow handler stalls EVERY connection:

    loop thread:  [read A][handle A ......... slow ........][read B][handle B]
                                                             ▲
                                      B waited for A's handler the whole time

With `workers > 0` the loop hands framed lines to this pool instead, and
goes straight back to waiting for readiness:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   LOOP THREAD                        WORKERS                         │
    │   ─────────────                      ────────                        │
    │   read + frame A  ──► submit(drain A) ──► Worker-0: A.on_line(...)   │
    │   read + frame B  ──► submit(drain B) ──► Worker-1: B.on_line(...)   │
    │   wait for readiness                                                 │
    │         ▲                                   │                        │
    │         └────── completion queue + waker ◄──┘                        │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The loop still owns the registry and the selector. Workers only ever
touch one connection's context, and only one worker drains a given
connection at a time, so each client's lines stay in order.

=============================================================================
WORKER LIFECYCLE
=============================================================================

    def run(self):
        while not shutdown:
            task = queue.get()      ← BLOCKS until task available
            if task is None:        ← "Poison pill" signals shutdown
                break
            execute(task)
            queue.task_done()

=============================================================================
SCALING
=============================================================================

    MIN_WORKERS:  started with the pool, always running
    MAX_WORKERS:  hard limit; one more worker is added whenever every
                  worker is busy and tasks are still queued

The task queue is bounded too. When it is full, submit() waits at most
queue_timeout and then reports failure, which the loop treats as a
connection-scoped error.

=============================================================================
"""

import threading
import queue
import time
import logging
from typing import Callable, Optional, Any
from dataclasses import dataclass, field
from enum import Enum


logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """What a worker thread is doing right now."""
    IDLE = "idle"
    BUSY = "busy"
    STOPPED = "stopped"


@dataclass
class Task:
    """
    One queued call.

    Attributes:
        func: Callable run on a worker thread.
        args: Positional arguments.
        kwargs: Keyword arguments.
        name: Label for log records (the loop passes the connection id).
        submitted_at: When it entered the queue.
    """
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    name: str = ""
    submitted_at: float = field(default_factory=time.time)

    @property
    def label(self) -> str:
        return self.name or getattr(self.func, "__name__", "task")


class Worker(threading.Thread):
    """
    Pulls tasks off the shared queue until it gets a poison pill.

    An exception from a task is logged with its traceback and counted.
    It never ends the thread.
    """

    def __init__(self, task_queue: queue.Queue, worker_id: int, idle_timeout: float = 1.0):
        # Daemon, so a handler stuck in a blocking call can't hold the
        # process open after shutdown gives up on it
        super().__init__(name=f"LineWorker-{worker_id}", daemon=True)

        self.task_queue = task_queue
        self.worker_id = worker_id
        self.idle_timeout = idle_timeout

        self.state = WorkerState.IDLE
        self.tasks_completed = 0
        self.tasks_failed = 0
        self._stop_event = threading.Event()

    def run(self):
        logger.debug(f"{self.name} started")

        while not self._stop_event.is_set():
            try:
                task = self.task_queue.get(timeout=self.idle_timeout)
            except queue.Empty:
                continue

            try:
                if task is None:
                    break
                self._run_task(task)
            finally:
                self.task_queue.task_done()

        self.state = WorkerState.STOPPED
        logger.debug(f"{self.name} stopped ({self.tasks_completed} done, {self.tasks_failed} failed)")

    def _run_task(self, task: Task):
        self.state = WorkerState.BUSY
        started = time.time()

        queued_for = started - task.submitted_at
        if queued_for > 1.0:
            logger.debug(f"[{task.label}] Waited {queued_for:.2f}s for {self.name}")

        try:
            task.func(*task.args, **task.kwargs)
        except Exception as e:
            self.tasks_failed += 1
            logger.exception(
                f"[{task.label}] Task failed on {self.name} after {time.time() - started:.3f}s: {e}"
            )
        else:
            self.tasks_completed += 1
        finally:
            self.state = WorkerState.IDLE

    def stop(self):
        """Exit after the current task (or the next idle timeout)."""
        self._stop_event.set()


class ThreadPool:
    """
    Bounded, growable set of workers sharing one bounded queue.

    Usage:
        pool = ThreadPool(min_workers=4, max_workers=8, queue_size=100)
        pool.start()

        if not pool.submit(drain, args=(conn,), name=conn.id, queue_timeout=5.0):
            ...  # Queue stayed full, drop the connection

        pool.shutdown(wait=True, timeout=5.0)
    """

    def __init__(
        self,
        min_workers: int = 4,
        max_workers: int = 16,
        queue_size: int = 100,
        idle_timeout: float = 1.0
    ):
        """
        Args:
            min_workers: Workers started by start().
            max_workers: Ceiling when scaling up.
            queue_size: Tasks that may wait for a worker.
            idle_timeout: How often an idle worker re-checks for stop().
        """
        if min_workers < 1:
            raise ValueError("min_workers must be >= 1")
        if max_workers < min_workers:
            raise ValueError("max_workers must be >= min_workers")

        self.min_workers = min_workers
        self.max_workers = max_workers
        self.queue_size = queue_size
        self.idle_timeout = idle_timeout

        self._queue: queue.Queue[Optional[Task]] = queue.Queue(maxsize=queue_size)
        self._workers: list[Worker] = []
        self._lock = threading.Lock()
        self._next_id = 0
        self._started = False
        self._closing = False
        self._rejected = 0

    @property
    def is_running(self) -> bool:
        return self._started and not self._closing

    def start(self):
        if self._started:
            return

        with self._lock:
            for _ in range(self.min_workers):
                self._spawn()

        self._started = True
        self._closing = False
        logger.info(f"Thread pool started ({self.min_workers}-{self.max_workers} workers, queue {self.queue_size})")

    def _spawn(self) -> Worker:
        """Start one more worker. Caller holds the lock."""
        worker = Worker(self._queue, self._next_id, self.idle_timeout)
        self._next_id += 1
        self._workers.append(worker)
        worker.start()
        return worker

    def submit(
        self,
        func: Callable[..., Any],
        args: tuple = (),
        kwargs: Optional[dict] = None,
        name: str = "",
        block: bool = True,
        queue_timeout: Optional[float] = None
    ) -> bool:
        """
        Queue func(*args, **kwargs) for a worker.

        Returns:
            True once queued. False if the queue was still full after
            queue_timeout (or at once with block=False).

        Raises:
            RuntimeError: If the pool is not running.
        """
        if not self._started:
            raise RuntimeError("Thread pool not started")
        if self._closing:
            raise RuntimeError("Thread pool is shutting down")

        task = Task(func=func, args=args, kwargs=kwargs or {}, name=name)

        try:
            self._queue.put(task, block=block, timeout=queue_timeout)
        except queue.Full:
            self._rejected += 1
            logger.warning(f"[{task.label}] Thread pool queue full ({self.queue_size} tasks)")
            return False

        self._grow_if_saturated()
        return True

    def _grow_if_saturated(self):
        """Add a worker when every worker is busy and work is still waiting."""
        with self._lock:
            if len(self._workers) >= self.max_workers or self._queue.empty():
                return
            if any(w.state is not WorkerState.BUSY for w in self._workers):
                return

            worker = self._spawn()
            logger.debug(f"All workers busy, added {worker.name} ({len(self._workers)} total)")

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Stop every worker.

        Args:
            wait: Let queued tasks finish first.
            timeout: Longest wait for the queue to drain. Tasks still
                     queued after it are abandoned.
        """
        if not self._started:
            return

        logger.info("Shutting down thread pool...")
        self._closing = True

        if wait:
            deadline = None if timeout is None else time.time() + timeout
            while self._queue.unfinished_tasks:
                if deadline is not None and time.time() > deadline:
                    logger.warning(
                        f"Thread pool shutdown timed out with {self._queue.qsize()} task(s) queued"
                    )
                    break
                time.sleep(0.05)

        with self._lock:
            workers = list(self._workers)

        # One poison pill per worker; a full queue just means the worker
        # notices stop() at its next idle timeout instead
        for worker in workers:
            worker.stop()
            try:
                self._queue.put_nowait(None)
            except queue.Full:
                pass

        for worker in workers:
            worker.join(timeout=2.0)
            if worker.is_alive():
                logger.warning(f"{worker.name} did not stop in time")

        with self._lock:
            self._workers.clear()
        self._started = False

        logger.info("Thread pool stopped")

    @property
    def stats(self) -> dict:
        """Worker and task counters (for LineServer.stats)."""
        workers = list(self._workers)
        return {
            "workers": {
                "total": len(workers),
                "busy": sum(1 for w in workers if w.state is WorkerState.BUSY),
            },
            "tasks": {
                "queued": self._queue.qsize(),
                "completed": sum(w.tasks_completed for w in workers),
                "failed": sum(w.tasks_failed for w in workers),
                "rejected": self._rejected,
            },
        }
