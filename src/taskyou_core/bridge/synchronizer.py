from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional

from loguru import logger

from ..config import BridgeSettings
from ..domain.models import UNMIRRORED, Task, TaskStatus
from .ports import BridgeError, BridgePort, CliBridgePort

TRACKER_STATUS = {
    TaskStatus.PENDING: "backlog",
    TaskStatus.RUNNING: "processing",
    TaskStatus.NEEDS_INPUT: "blocked",
    TaskStatus.FAILED: "blocked",
}
CLOSING_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.CANCELLED})


class BridgeSynchronizer:
    """Best-effort mirror of task lifecycle onto the external tracker.

    Availability is decided once here. Scheduled calls run in order on a
    single background worker after the triggering transition has committed;
    every failure is logged and swallowed so the tracker can never fail or
    block a task operation.
    """

    def __init__(self, settings: BridgeSettings, port: Optional[BridgePort] = None) -> None:
        self.port: BridgePort = port or CliBridgePort(settings.command, timeout_seconds=settings.timeout_seconds)
        self.available = bool(settings.enabled) and self._port_available()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: set[Future] = set()
        self._lock = threading.Lock()
        if self.available:
            logger.info("Bridge enabled via {}", settings.command)
        else:
            logger.info("Bridge disabled; task lifecycle will not be mirrored")

    def _port_available(self) -> bool:
        try:
            return bool(self.port.is_available())
        except Exception as exc:
            logger.warning("Bridge availability check failed: {}", exc)
            return False

    def mirror_create(self, task: Task, project: Optional[str] = None) -> Optional[int]:
        if not self.available:
            return UNMIRRORED
        try:
            external_id = self.port.create(task.title, body=task.body, project=project)
        except BridgeError as exc:
            logger.warning("Bridge create failed for task {}: {}", task.id, exc)
            return UNMIRRORED
        logger.debug("Mirrored task {} as external #{}", task.id, external_id)
        return external_id

    def mirror_status(self, external_id: Optional[int], status: str) -> None:
        if not self.available or external_id is None:
            return
        try:
            self.port.status(external_id, status)
        except BridgeError as exc:
            logger.warning("Bridge status failed for #{}: {}", external_id, exc)

    def mirror_close(self, external_id: Optional[int]) -> None:
        if not self.available or external_id is None:
            return
        try:
            self.port.close(external_id)
        except BridgeError as exc:
            logger.warning("Bridge close failed for #{}: {}", external_id, exc)

    def mirror_transition(self, external_id: Optional[int], status: TaskStatus) -> None:
        if status in CLOSING_STATUSES:
            self.mirror_close(external_id)
        elif status in TRACKER_STATUS:
            self.mirror_status(external_id, TRACKER_STATUS[status])

    def _submit(self, fn: Callable[[], None]) -> None:
        if not self.available:
            return
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bridge")
            future = self._pool.submit(fn)
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Bridge job raised unexpectedly")

    def schedule_create(
        self,
        task: Task,
        project: Optional[str],
        on_mirrored: Callable[[str, int], None],
    ) -> None:
        def _job() -> None:
            external_id = self.mirror_create(task, project)
            if external_id is not UNMIRRORED:
                on_mirrored(task.id, external_id)

        self._submit(_job)

    # The external id is read when the job runs so an earlier queued create
    # has had the chance to record it.

    def schedule_status(self, task_id: str, status: str, lookup: Callable[[str], Optional[int]]) -> None:
        self._submit(lambda: self.mirror_status(lookup(task_id), status))

    def schedule_close(self, task_id: str, lookup: Callable[[str], Optional[int]]) -> None:
        self._submit(lambda: self.mirror_close(lookup(task_id)))

    def schedule_transition(
        self,
        task_id: str,
        status: TaskStatus,
        lookup: Callable[[str], Optional[int]],
    ) -> None:
        if status in CLOSING_STATUSES:
            self.schedule_close(task_id, lookup)
        elif status in TRACKER_STATUS:
            self.schedule_status(task_id, TRACKER_STATUS[status], lookup)

    def flush(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, timeout: float = 5.0) -> None:
        self.flush(timeout)
        with self._lock:
            pool = self._pool
            self._pool = None
        if pool is not None:
            pool.shutdown(wait=False)
