from __future__ import annotations

import logging
import os
import queue
import secrets
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..errors import WorkerCrashError, WorkerTimeoutError
from .protocol import IPC_VERSION, decode_message, encode_message

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 1.0
_PACKAGE_ROOT = Path(__file__).resolve().parents[2]


def _worker_env(site_dir: Optional[Path]) -> Dict[str, str]:
    env = dict(os.environ)
    paths: List[str] = []
    if site_dir is not None:
        paths.append(str(site_dir))
    paths.append(str(_PACKAGE_ROOT))
    existing = env.get("PYTHONPATH")
    if existing:
        paths.append(existing)
    env["PYTHONPATH"] = os.pathsep.join(paths)
    env["PYTHONUNBUFFERED"] = "1"
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONNOUSERSITE"] = "1"
    return env


def default_worker_command(memory_mb: int = 0) -> List[str]:
    return [sys.executable, "-m", "callforge.worker.entrypoint", "--memory-mb", str(memory_mb)]


class WorkerExecutor:
    def __init__(self, command: Optional[List[str]] = None) -> None:
        self.command = list(command) if command else default_worker_command()
        self._process: Optional[subprocess.Popen[bytes]] = None
        self._lines: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self, site_dir: Optional[Path] = None) -> None:
        if self.alive():
            return
        self._lines = queue.Queue()
        self._process = subprocess.Popen(
            self.command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            env=_worker_env(site_dir),
        )
        self._reader = threading.Thread(
            target=self._read_lines, args=(self._process, self._lines), daemon=True
        )
        self._reader.start()
        logger.debug("worker started pid=%s", self._process.pid)

    @staticmethod
    def _read_lines(
        process: "subprocess.Popen[bytes]", lines: "queue.Queue[Optional[bytes]]"
    ) -> None:
        assert process.stdout is not None
        for line in process.stdout:
            lines.put(line)
        lines.put(None)

    def execute(self, payload: Mapping[str, Any], timeout_seconds: float) -> Dict[str, Any]:
        if not self.alive() or self._process is None or self._process.stdin is None:
            raise WorkerCrashError("worker is not running", stage="execution")
        call_id = secrets.token_hex(8)
        request = dict(payload)
        request["ipc_version"] = IPC_VERSION
        request["call_id"] = call_id
        try:
            self._process.stdin.write(encode_message(request))
            self._process.stdin.flush()
        except (BrokenPipeError, OSError) as exc:
            raise WorkerCrashError(
                f"worker exited before request: {exc}", stage="execution"
            ) from exc
        try:
            line = self._lines.get(timeout=timeout_seconds)
        except queue.Empty as exc:
            self._kill()
            raise WorkerTimeoutError(
                f"worker timed out after {timeout_seconds}s", stage="execution"
            ) from exc
        if line is None:
            code = self._process.wait()
            raise WorkerCrashError(f"worker exited with status {code}", stage="execution")
        try:
            response = decode_message(line)
        except ValueError as exc:
            self._kill()
            raise WorkerCrashError(
                f"worker sent a malformed response: {exc}", stage="execution"
            ) from exc
        if response.get("call_id") != call_id:
            self._kill()
            raise WorkerCrashError("worker response call_id mismatch", stage="execution")
        return response

    def _kill(self) -> None:
        if self._process is None:
            return
        if self._process.poll() is None:
            self._process.kill()
        self._process.wait()

    def shutdown(self) -> None:
        process = self._process
        if process is None:
            return
        if process.poll() is None:
            if process.stdin is not None:
                try:
                    process.stdin.close()
                except OSError:
                    pass
            process.terminate()
            try:
                process.wait(timeout=SHUTDOWN_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        self._process = None
        logger.debug("worker pid=%s shut down", process.pid)
