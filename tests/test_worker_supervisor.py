from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest

from callforge.errors import WorkerCrashError, WorkerTimeoutError
from callforge.worker import WorkerExecutor, WorkerSupervisor, default_worker_command


class CrashingExecutor:
    def __init__(self, log: List[str], fail_with: Optional[Exception] = None) -> None:
        self._log = log
        self._fail_with = fail_with
        self._alive = False

    @property
    def pid(self) -> Optional[int]:
        return 1000 + len(self._log) if self._alive else None

    def alive(self) -> bool:
        return self._alive

    def start(self, site_dir: Optional[Path] = None) -> None:
        self._alive = True
        self._log.append("start")

    def execute(self, payload: Mapping[str, Any], timeout_seconds: float) -> Dict[str, Any]:
        if self._fail_with is not None:
            self._alive = False
            raise self._fail_with
        return {"status": "ok", "value": payload.get("code")}

    def shutdown(self) -> None:
        self._alive = False


def _supervisor(log: List[str], error: Optional[Exception], max_restarts: int):
    def factory() -> CrashingExecutor:
        fail_with = None
        if error is not None:
            fail_with = type(error)(str(error), stage="execution")
        return CrashingExecutor(log, fail_with)

    return WorkerSupervisor(max_restarts=max_restarts, executor_factory=factory)


@pytest.mark.parametrize("max_restarts", [0, 1, 2])
def test_restart_budget_turns_terminal_on_restarts_plus_two(max_restarts: int) -> None:
    log: List[str] = []
    supervisor = _supervisor(log, WorkerCrashError("worker exited"), max_restarts)

    errors = []
    for _ in range(max_restarts + 2):
        with pytest.raises(WorkerCrashError) as excinfo:
            supervisor.execute("env-a", None, {"code": "return 1"})
        errors.append(excinfo.value)

    assert all(error.retriable for error in errors[:-1])
    final = errors[-1]
    assert final.retriable is False
    assert final.metadata["terminal"] is True
    assert final.metadata["worker_crash_count"] == max_restarts + 2
    assert supervisor.restart_count == max_restarts
    starts_before_refusal = len(log)

    with pytest.raises(WorkerCrashError) as refused:
        supervisor.execute("env-a", None, {"code": "return 1"})
    assert refused.value.retriable is False
    assert len(log) == starts_before_refusal


def test_timeout_counts_against_the_same_budget() -> None:
    log: List[str] = []
    supervisor = _supervisor(log, WorkerTimeoutError("worker timed out"), max_restarts=0)

    with pytest.raises(WorkerTimeoutError) as first:
        supervisor.execute("env-a", None, {})
    with pytest.raises(WorkerTimeoutError) as second:
        supervisor.execute("env-a", None, {})

    assert first.value.error_type == "timeout"
    assert first.value.metadata["terminal"] is False
    assert second.value.metadata["terminal"] is True


def test_reset_clears_terminal_environment() -> None:
    log: List[str] = []
    supervisor = _supervisor(log, WorkerCrashError("boom"), max_restarts=0)
    for _ in range(2):
        with pytest.raises(WorkerCrashError):
            supervisor.execute("env-a", None, {})

    supervisor.reset("env-a")

    assert supervisor.crash_count("env-a") == 0
    with pytest.raises(WorkerCrashError) as excinfo:
        supervisor.execute("env-a", None, {})
    assert excinfo.value.metadata["terminal"] is False


def test_switching_environment_replaces_the_worker() -> None:
    log: List[str] = []
    supervisor = _supervisor(log, None, max_restarts=2)

    first = supervisor.execute("env-a", None, {"code": "a"})
    again = supervisor.execute("env-a", None, {"code": "b"})
    other = supervisor.execute("env-b", None, {"code": "c"})

    assert first["value"] == "a" and again["value"] == "b" and other["value"] == "c"
    assert log == ["start", "start"]
    assert supervisor.env_id == "env-b"
    assert other["worker_restart_count"] == 0


@pytest.mark.slow
def test_real_worker_round_trip_and_timeout_kill() -> None:
    executor = WorkerExecutor(default_worker_command())
    executor.start()
    try:
        response = executor.execute(
            {
                "role": "calc",
                "code": 'print("noise")\nreturn args[0] * 2',
                "call": {},
                "args": [21],
                "kwargs": {},
                "context_snapshot": {},
            },
            timeout_seconds=20,
        )
        assert response["status"] == "ok"
        assert response["value"] == 42
        assert response["worker_pid"] == executor.pid

        with pytest.raises(WorkerTimeoutError):
            executor.execute(
                {
                    "role": "calc",
                    "code": "import time\ntime.sleep(30)",
                    "call": {},
                    "args": [],
                    "kwargs": {},
                    "context_snapshot": {},
                },
                timeout_seconds=0.5,
            )
        assert not executor.alive()
    finally:
        executor.shutdown()
