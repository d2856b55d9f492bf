from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .utils import truncate_message, utc_timestamp

MAX_ATTEMPT_FAILURES_RECORDED = 8
MAX_FAILURE_MESSAGE_LENGTH = 400

STAGE_GUARDRAIL = "guardrail"
STAGE_VALIDATION = "validation"
STAGE_EXECUTION = "execution"
STAGE_OUTCOME_POLICY = "outcome_policy"
STAGE_CONTRACT = "contract"


@dataclass
class AttemptRecord:
    max_failures: int = MAX_ATTEMPT_FAILURES_RECORDED
    max_message_length: int = MAX_FAILURE_MESSAGE_LENGTH
    attempt_id: int = 1
    stage: str = "started"
    generation_attempts: int = 0
    guardrail_recovery_attempts: int = 0
    execution_repair_attempts: int = 0
    outcome_repair_attempts: int = 0
    failure_count: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def record_failure(
        self,
        stage: str,
        error_type: str,
        message: str,
        *,
        error_class: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "attempt_id": self.attempt_id,
            "stage": stage,
            "error_type": error_type,
            "error_class": error_class or error_type,
            "error_message": truncate_message(str(message or ""), self.max_message_length),
            "timestamp": utc_timestamp(),
        }
        if details:
            entry.update(details)
        self.failure_count += 1
        self.failures.append(entry)
        if len(self.failures) > self.max_failures:
            del self.failures[0 : len(self.failures) - self.max_failures]
        return entry

    @property
    def latest_failure(self) -> Optional[Dict[str, Any]]:
        return self.failures[-1] if self.failures else None

    def next_attempt(self) -> None:
        self.attempt_id += 1
        self.stage = "rolled_back"

    def to_record(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "attempt_stage": self.stage,
            "generation_attempts": self.generation_attempts,
            "guardrail_recovery_attempts": self.guardrail_recovery_attempts,
            "execution_repair_attempts": self.execution_repair_attempts,
            "outcome_repair_attempts": self.outcome_repair_attempts,
            "attempt_failure_count": self.failure_count,
            "attempt_failures": [dict(entry) for entry in self.failures],
            "attempt_failures_truncated": self.failure_count > len(self.failures),
        }


@dataclass(frozen=True)
class FileSnapshot:
    path: Optional[Path]
    content: Optional[bytes]


class AttemptIsolation:
    """Buffers shared call state so failed attempts leave no trace.

    Each attempt runs against a deep copy of the last committed state; only
    the final attempt's copy is committed. Files written during an attempt
    are restored byte-for-byte before the next one starts.
    """

    def __init__(self, committed: Dict[str, Any], tracked_file: Optional[Path] = None) -> None:
        self.committed = committed
        self.tracked_file = tracked_file
        self._file_snapshot = self._snapshot_file()

    def _snapshot_file(self) -> FileSnapshot:
        path = self.tracked_file
        if path is None or not path.exists():
            return FileSnapshot(path=path, content=None)
        return FileSnapshot(path=path, content=path.read_bytes())

    def begin(self) -> Dict[str, Any]:
        return copy.deepcopy(self.committed)

    def rollback(self) -> None:
        snapshot = self._file_snapshot
        if snapshot.path is None:
            return
        if snapshot.content is None:
            if snapshot.path.exists():
                os.remove(snapshot.path)
            return
        if not snapshot.path.exists() or snapshot.path.read_bytes() != snapshot.content:
            snapshot.path.write_bytes(snapshot.content)

    def commit(self, working: Dict[str, Any]) -> None:
        self.committed.clear()
        self.committed.update(working)
