from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Set

from ..errors import WorkerCrashError, WorkerTimeoutError
from .executor import WorkerExecutor

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESTARTS = 2


class WorkerSupervisor:
    """Keeps at most one live worker, bound to one environment id.

    Crashes and timeouts on an environment are counted until a request
    succeeds. The first ``max_restarts`` failures restart the worker at once.
    The next failure leaves it down; one more worker is started lazily for
    the following request. A failure of that worker is terminal and the
    environment is refused until ``reset`` is called.
    """

    def __init__(
        self,
        max_restarts: int = DEFAULT_MAX_RESTARTS,
        timeout_seconds: float = 30.0,
        executor_factory: Optional[Callable[[], WorkerExecutor]] = None,
    ) -> None:
        self.max_restarts = max_restarts
        self.timeout_seconds = timeout_seconds
        self.executor_factory = executor_factory or WorkerExecutor
        self.env_id: Optional[str] = None
        self.restart_count = 0
        self._executor: Optional[WorkerExecutor] = None
        self._site_dir: Optional[Path] = None
        self._crashes: Dict[str, int] = {}
        self._terminal: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def worker_pid(self) -> Optional[int]:
        return self._executor.pid if self._executor is not None else None

    def crash_count(self, env_id: str) -> int:
        return self._crashes.get(env_id, 0)

    def execute(
        self,
        env_id: str,
        site_dir: Optional[Path],
        payload: Mapping[str, Any],
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            if env_id in self._terminal:
                raise WorkerCrashError(
                    f"worker restart budget exhausted for environment {env_id[:12]}",
                    metadata=self._failure_metadata(env_id, terminal=True),
                    stage="execution",
                )
            self._ensure_executor(env_id, site_dir)
            assert self._executor is not None
            try:
                response = self._executor.execute(payload, timeout_seconds or self.timeout_seconds)
            except (WorkerTimeoutError, WorkerCrashError) as exc:
                self._after_failure(env_id, exc)
                raise
            self._crashes.pop(env_id, None)
            response["worker_pid"] = self._executor.pid
            response["worker_restart_count"] = self.restart_count
            return response

    def _ensure_executor(self, env_id: str, site_dir: Optional[Path]) -> None:
        if self._executor is not None and self.env_id == env_id and self._executor.alive():
            return
        if self._executor is not None:
            logger.info("switching worker from env %s to %s", (self.env_id or "")[:12], env_id[:12])
            self._executor.shutdown()
        if self.env_id != env_id:
            self.restart_count = 0
        self._executor = self.executor_factory()
        self._executor.start(site_dir)
        self.env_id = env_id
        self._site_dir = site_dir

    def _after_failure(self, env_id: str, error: WorkerCrashError) -> None:
        crashes = self._crashes.get(env_id, 0) + 1
        self._crashes[env_id] = crashes
        if self._executor is not None:
            self._executor.shutdown()
            self._executor = None
        terminal = crashes > self.max_restarts + 1
        if terminal:
            self._terminal.add(env_id)
            logger.warning("worker for env %s exhausted its restart budget", env_id[:12])
        elif crashes <= self.max_restarts:
            self.restart_count += 1
            logger.info(
                "restarting worker for env %s (restart %d)", env_id[:12], self.restart_count
            )
            self._executor = self.executor_factory()
            self._executor.start(self._site_dir)
        error.metadata.update(self._failure_metadata(env_id, terminal=terminal))

    def _failure_metadata(self, env_id: str, terminal: bool) -> Dict[str, Any]:
        return {
            "env_id": env_id,
            "worker_crash_count": self._crashes.get(env_id, 0),
            "worker_restart_count": self.restart_count,
            "worker_pid": self.worker_pid,
            "terminal": terminal,
        }

    def reset(self, env_id: str) -> None:
        with self._lock:
            self._terminal.discard(env_id)
            self._crashes.pop(env_id, None)

    def shutdown(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown()
            self._executor = None
            self.env_id = None
