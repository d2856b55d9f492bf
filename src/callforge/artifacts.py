from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from . import promotion
from .dependencies import manifest_from_records
from .errors import InvalidDependencyManifestError
from .program import ORIGIN_PERSISTED, GeneratedProgram, checksum_matches
from .utils import atomic_write_json, quarantine_file, read_json, truncate_message, utc_timestamp

logger = logging.getLogger(__name__)

ARTIFACT_SCHEMA_VERSION = 2
MAX_HISTORY = 3
TRIGGER_INITIAL = "initial_forge"
TRIGGER_REGENERATE = "regenerate:new_code"
REPAIR_TRIGGERS = {
    "adaptive": "repair:adaptive_failure",
    "intrinsic": "repair:intrinsic_failure",
}

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


def repair_trigger_for(failure_class: str) -> str:
    return REPAIR_TRIGGERS.get(failure_class, "repair:unknown_failure")


def is_repair_trigger(trigger: str) -> bool:
    return trigger.startswith("repair:")


def legacy_degraded(artifact: Mapping[str, Any]) -> bool:
    failures = int(artifact.get("failure_count", 0))
    successes = int(artifact.get("success_count", 0))
    rate = float(artifact.get("recent_failure_rate", 0.0))
    return failures >= 3 and rate > 0.6 and failures > successes


@dataclass(frozen=True)
class ArtifactSelection:
    artifact: Dict[str, Any]
    program: GeneratedProgram
    checksum: str
    lifecycle_state: str


class ArtifactStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, role: str, method_name: str) -> Path:
        return self.root / _SAFE_NAME.sub("_", role) / f"{_SAFE_NAME.sub('_', method_name)}.json"

    def load(self, role: str, method_name: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(role, method_name)
        if not path.exists():
            return None
        try:
            data = read_json(path)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            quarantined = quarantine_file(path)
            logger.warning(
                "quarantined corrupt artifact %s.%s to %s", role, method_name, quarantined
            )
            return None
        return data

    def save(self, artifact: Mapping[str, Any]) -> Path:
        path = self.path_for(str(artifact["role"]), str(artifact["method_name"]))
        atomic_write_json(path, dict(artifact))
        return path

    def list_artifacts(self) -> List[Dict[str, Any]]:
        if not self.root.exists():
            return []
        artifacts: List[Dict[str, Any]] = []
        for path in sorted(self.root.glob("*/*.json")):
            try:
                data = read_json(path)
            except ValueError:
                continue
            if isinstance(data, dict):
                artifacts.append(data)
        return artifacts

    def select(
        self,
        role: str,
        method_name: str,
        *,
        runtime_version: str,
        contract_fingerprint: Optional[str],
        enforcement: bool = False,
    ) -> Optional[ArtifactSelection]:
        artifact = self.load(role, method_name)
        if artifact is None:
            return None
        if not artifact.get("cacheable", False):
            logger.debug("artifact %s.%s is not cacheable", role, method_name)
            return None
        if artifact.get("runtime_version") != runtime_version:
            logger.debug("artifact %s.%s runtime version mismatch", role, method_name)
            return None
        if artifact.get("contract_fingerprint") != contract_fingerprint:
            logger.debug("artifact %s.%s contract fingerprint mismatch", role, method_name)
            return None
        lifecycle = artifact.get("lifecycle")
        if not isinstance(lifecycle, Mapping) and legacy_degraded(artifact):
            logger.debug("artifact %s.%s is degraded", role, method_name)
            return None
        candidates: List[str] = []
        if enforcement and isinstance(lifecycle, Mapping):
            candidates = promotion.rank_versions(artifact)
        else:
            current = artifact.get("code_checksum")
            if isinstance(current, str):
                candidates = [current]
        versions = artifact.get("versions") or {}
        for checksum in candidates:
            if checksum == artifact.get("code_checksum"):
                code = artifact.get("code")
                dependencies = artifact.get("dependencies")
            else:
                version = versions.get(checksum) or {}
                code = version.get("code")
                dependencies = version.get("dependencies")
            if not checksum_matches(code, checksum):
                logger.debug("artifact %s.%s checksum mismatch for %s", role, method_name, checksum)
                continue
            state = promotion.CANDIDATE
            if isinstance(lifecycle, Mapping):
                state = promotion.version_state(lifecycle, checksum)
            if enforcement and state == promotion.DEGRADED:
                continue
            try:
                manifest = manifest_from_records(dependencies)
            except InvalidDependencyManifestError:
                continue
            program = GeneratedProgram(
                code=str(code), dependencies=tuple(manifest), origin=ORIGIN_PERSISTED
            )
            return ArtifactSelection(
                artifact=artifact, program=program, checksum=checksum, lifecycle_state=state
            )
        return None

    def record_generation(
        self,
        existing: Optional[Dict[str, Any]],
        *,
        role: str,
        method_name: str,
        program: GeneratedProgram,
        trigger: str,
        model: str,
        prompt_version: str,
        runtime_version: str,
        contract_fingerprint: Optional[str],
        cacheable: bool,
        cacheability_reason: str,
        input_sensitive: bool,
        failure: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        timestamp = utc_timestamp()
        if existing:
            artifact: Dict[str, Any] = dict(existing)
        else:
            artifact = _new_artifact(role, method_name, timestamp)
        checksum = program.checksum
        history = list(artifact.get("history") or [])
        parent_id = history[0]["id"] if history else None
        entry: Dict[str, Any] = {
            "id": f"gen-{secrets.token_hex(6)}",
            "parent_id": parent_id,
            "trigger": trigger,
            "created_at": timestamp,
            "code_checksum": checksum,
        }
        if failure:
            entry["trigger_stage"] = failure.get("stage")
            entry["trigger_error_class"] = failure.get("error_class") or failure.get("error_type")
            message = str(failure.get("error_message", ""))
            entry["trigger_error_message"] = truncate_message(message, 400)
            entry["trigger_attempt_id"] = failure.get("attempt_id")
        history.insert(0, entry)
        artifact["history"] = history[:MAX_HISTORY]
        artifact.update(
            schema_version=ARTIFACT_SCHEMA_VERSION,
            model=model,
            prompt_version=prompt_version,
            runtime_version=runtime_version,
            contract_fingerprint=contract_fingerprint,
            cacheable=cacheable,
            cacheability_reason=cacheability_reason,
            input_sensitive=input_sensitive,
            code=program.code,
            code_checksum=checksum,
            dependencies=program.dependency_records(),
        )
        versions = dict(artifact.get("versions") or {})
        versions[checksum] = {"code": program.code, "dependencies": program.dependency_records()}
        live = {item["code_checksum"] for item in artifact["history"]}
        lifecycle = artifact.get("lifecycle")
        if isinstance(lifecycle, Mapping) and lifecycle.get("incumbent_checksum"):
            live.add(str(lifecycle["incumbent_checksum"]))
        artifact["versions"] = {key: value for key, value in versions.items() if key in live}
        promotion.prune_versions(artifact, live)
        if is_repair_trigger(trigger):
            repairs = int(artifact.get("repair_count_since_regen", 0))
            artifact["repair_count_since_regen"] = repairs + 1
            artifact["last_repaired_at"] = timestamp
        else:
            artifact["repair_count_since_regen"] = 0
        return artifact

    def record_execution(
        self,
        artifact: Dict[str, Any],
        *,
        ok: bool,
        failure_class: Optional[str] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[float] = None,
    ) -> Dict[str, Any]:
        if ok:
            artifact["success_count"] = int(artifact.get("success_count", 0)) + 1
        else:
            artifact["failure_count"] = int(artifact.get("failure_count", 0)) + 1
            key = f"{failure_class or 'intrinsic'}_failure_count"
            artifact[key] = int(artifact.get(key, 0)) + 1
            artifact["last_failure_reason"] = truncate_message(str(error_message or ""), 400)
            artifact["last_failure_class"] = failure_class
        recent = list(artifact.get("recent_outcomes") or [])
        recent.append(1 if ok else 0)
        recent = recent[-10:]
        artifact["recent_outcomes"] = recent
        artifact["recent_failure_rate"] = round(recent.count(0) / len(recent), 6)
        artifact["last_used_at"] = utc_timestamp()
        if duration_ms is not None:
            artifact["last_duration_ms"] = duration_ms
        return artifact


def _new_artifact(role: str, method_name: str, timestamp: str) -> Dict[str, Any]:
    return {
        "schema_version": ARTIFACT_SCHEMA_VERSION,
        "role": role,
        "method_name": method_name,
        "success_count": 0,
        "failure_count": 0,
        "intrinsic_failure_count": 0,
        "adaptive_failure_count": 0,
        "extrinsic_failure_count": 0,
        "recent_failure_rate": 0.0,
        "recent_outcomes": [],
        "last_failure_reason": None,
        "last_failure_class": None,
        "repair_count_since_regen": 0,
        "created_at": timestamp,
        "last_used_at": None,
        "last_repaired_at": None,
        "last_duration_ms": None,
        "history": [],
        "versions": {},
        "scorecards": {},
        "lifecycle": None,
    }
