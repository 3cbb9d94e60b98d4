from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from loguru import logger

from ..config import Settings
from ..domain.models import TaskStatus
from ..errors import InvalidTransition, NotFound, OrchestratorError
from .retry import call_with_retry
from .state_machine import TaskStateMachine


class OrchestratorService:
    """Background worker that starts pending tasks and polls running ones.

    One loop thread decides what to do. Starts and polls run on separate
    pools: a start blocked on a slow backend never delays polling of tasks
    that are already running. A task never has two jobs in flight at
    once, and in-flight starts count against ``concurrency``.
    """

    def __init__(self, machine: TaskStateMachine, settings: Settings) -> None:
        self.machine = machine
        self.settings = settings
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._start_pool: ThreadPoolExecutor | None = None
        self._poll_pool: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future] = {}
        self._starting: set[str] = set()
        self._futures_lock = threading.Lock()
        # Tasks whose start failed with a non-retryable error, by id.
        self._parked: dict[str, str] = {}

    def _get_start_pool(self) -> ThreadPoolExecutor:
        if self._start_pool is None:
            self._start_pool = ThreadPoolExecutor(max_workers=self.settings.concurrency, thread_name_prefix="taskyou-start")
        return self._start_pool

    def _get_poll_pool(self) -> ThreadPoolExecutor:
        if self._poll_pool is None:
            self._poll_pool = ThreadPoolExecutor(max_workers=self.settings.concurrency, thread_name_prefix="taskyou-poll")
        return self._poll_pool

    def status(self) -> dict[str, Any]:
        tasks = self.machine.container.tasks.list()
        counts = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1
        with self._futures_lock:
            active_workers = len(self._futures)
        return {
            "running": bool(self._thread and self._thread.is_alive()),
            "concurrency": self.settings.concurrency,
            "active_workers": active_workers,
            "tasks": counts,
            "parked": dict(self._parked),
        }

    def ensure_worker(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="taskyou-orchestrator")
            self._thread.start()
            logger.info("Orchestrator worker started (concurrency {})", self.settings.concurrency)

    def shutdown(self, *, timeout: float = 10.0) -> None:
        with self._lock:
            self._stop.set()
            thread = self._thread

        if thread and thread.is_alive():
            thread.join(timeout=max(timeout, 0.0))

        self.drain(timeout=timeout)

        for pool in (self._start_pool, self._poll_pool):
            if pool is not None:
                pool.shutdown(wait=False, cancel_futures=True)
        self._start_pool = None
        self._poll_pool = None

        with self._futures_lock:
            self._futures.clear()
            self._starting.clear()
        self._thread = None

    def drain(self, *, timeout: Optional[float] = None) -> None:
        with self._futures_lock:
            inflight = list(self._futures.values())
        if inflight:
            wait(inflight, timeout=timeout)
        self._sweep_futures()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick_once()
            except Exception:
                logger.opt(exception=True).error("Orchestrator tick failed")
            self._stop.wait(self.settings.poll_interval_seconds)

    def _sweep_futures(self) -> None:
        """Remove completed futures and log any unexpected errors."""
        with self._futures_lock:
            done_ids = [tid for tid, f in self._futures.items() if f.done()]
            for tid in done_ids:
                fut = self._futures.pop(tid)
                self._starting.discard(tid)
                exc = fut.exception()
                if exc:
                    logger.opt(exception=exc).error("Task {} raised unexpected error: {}", tid, exc)

    def _dispatch(self, task_id: str, job: Callable[[str], None], *, start: bool = False) -> bool:
        with self._futures_lock:
            if task_id in self._futures:
                return False
            pool = self._get_start_pool() if start else self._get_poll_pool()
            self._futures[task_id] = pool.submit(job, task_id)
            if start:
                self._starting.add(task_id)
        return True

    def tick_once(self) -> int:
        """Expire overdue inputs, poll running tasks and start pending ones.

        Returns the number of jobs dispatched.
        """
        self._sweep_futures()
        call_with_retry(self.machine.expire_inputs, self.settings.retry, describe="expire inputs")

        tasks = self.machine.container.tasks.list(status=[TaskStatus.RUNNING, TaskStatus.PENDING])
        running = [task for task in tasks if task.status == TaskStatus.RUNNING]
        pending = sorted(
            (task for task in tasks if task.status == TaskStatus.PENDING and task.id not in self._parked),
            key=lambda task: task.created_at,
        )

        dispatched = 0
        for task in running:
            if self._dispatch(task.id, self._poll_job):
                dispatched += 1

        with self._futures_lock:
            starting = len(self._starting)
        capacity = self.settings.concurrency - len(running) - starting
        for task in pending:
            if capacity <= 0:
                break
            if self._dispatch(task.id, self._start_job, start=True):
                dispatched += 1
                capacity -= 1
        return dispatched

    def _start_job(self, task_id: str) -> None:
        try:
            call_with_retry(lambda: self.machine.start(task_id), self.settings.retry, describe=f"start {task_id}")
        except (InvalidTransition, NotFound) as exc:
            logger.debug("Skipped start of {}: {}", task_id, exc)
        except OrchestratorError as exc:
            if exc.retryable:
                logger.warning("Start of {} failed, will retry next tick: {}", task_id, exc)
                return
            self._parked[task_id] = str(exc)
            logger.error("Task {} cannot start: {}", task_id, exc)

    def _poll_job(self, task_id: str) -> None:
        try:
            call_with_retry(lambda: self.machine.poll(task_id), self.settings.retry, describe=f"poll {task_id}")
        except (InvalidTransition, NotFound) as exc:
            logger.debug("Skipped poll of {}: {}", task_id, exc)
        except OrchestratorError as exc:
            logger.warning("Poll of {} failed: {}", task_id, exc)
