from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import orjson

from .errors import CallForgeError, GenerationTimeoutError, ProviderError
from .program import ORIGIN_FRESH, GeneratedProgram
from .utils import canonical_dumps, read_json, to_jsonable

logger = logging.getLogger(__name__)

PROGRAM_SCHEMA: Dict[str, Any] = {
    "name": "execute_code",
    "description": "Python source implementing the requested method, plus optional dependencies.",
    "input_schema": {
        "type": "object",
        "properties": {
            "code": {"type": "string"},
            "dependencies": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"name": {"type": "string"}, "version": {"type": "string"}},
                    "required": ["name"],
                },
            },
        },
        "required": ["code"],
    },
}


@dataclass(frozen=True)
class CodeGenerationRequest:
    role: str
    method_name: str
    model: str
    system_prompt: str
    user_prompt: str
    timeout_seconds: float
    args: List[Any] = field(default_factory=list)
    kwargs: Dict[str, Any] = field(default_factory=dict)
    schema: Dict[str, Any] = field(default_factory=lambda: PROGRAM_SCHEMA)
    feedback: Dict[str, Any] = field(default_factory=dict)
    existing_code: Optional[str] = None
    contract: Optional[Dict[str, Any]] = None
    depth: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return to_jsonable(
            {
                "role": self.role,
                "method_name": self.method_name,
                "model": self.model,
                "system_prompt": self.system_prompt,
                "user_prompt": self.user_prompt,
                "timeout_seconds": self.timeout_seconds,
                "args": self.args,
                "kwargs": self.kwargs,
                "schema": self.schema,
                "feedback": self.feedback,
                "existing_code": self.existing_code,
                "contract": self.contract,
                "depth": self.depth,
            }
        )


def build_prompts(
    role: str,
    method_name: str,
    args: List[Any],
    kwargs: Dict[str, Any],
    *,
    feedback: Optional[Dict[str, Any]] = None,
    existing_code: Optional[str] = None,
    contract: Optional[Dict[str, Any]] = None,
) -> Tuple[str, str]:
    system_prompt = (
        f"You implement `{role}.{method_name}` as the body of a Python function. "
        "Available names: agent, context, call, args, kwargs, Outcome. "
        "Assign `result` or use `return`."
    )
    sections = [
        f"method: {method_name}",
        f"args: {canonical_dumps(to_jsonable(args)).decode('utf-8')}",
        f"kwargs: {canonical_dumps(to_jsonable(kwargs)).decode('utf-8')}",
    ]
    if contract:
        sections.append(f"deliverable: {canonical_dumps(to_jsonable(contract)).decode('utf-8')}")
    if existing_code:
        sections.append("existing_code:\n" + existing_code)
    for kind in sorted(feedback or {}):
        sections.append(
            f"{kind}_feedback: {canonical_dumps(to_jsonable(feedback[kind])).decode('utf-8')}"
        )
    return system_prompt, "\n".join(sections)


class CodeGenerator(Protocol):
    def generate(self, request: CodeGenerationRequest) -> Dict[str, Any]:
        ...


class StaticGenerator:
    def __init__(self, payloads: List[Any]) -> None:
        if not payloads:
            raise ValueError("StaticGenerator needs at least one payload")
        self.payloads = list(payloads)
        self.requests: List[CodeGenerationRequest] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def generate(self, request: CodeGenerationRequest) -> Dict[str, Any]:
        index = min(len(self.requests), len(self.payloads) - 1)
        self.requests.append(request)
        payload = self.payloads[index]
        if isinstance(payload, BaseException):
            raise payload
        if isinstance(payload, str):
            return {"code": payload}
        return payload


class ReplayGenerator:
    def __init__(self, replay_path: Path) -> None:
        self.replay_path = Path(replay_path)
        self.records = self._load_records(self.replay_path)
        self._served: Dict[Tuple[str, str], int] = {}

    def _load_records(self, path: Path) -> Dict[Tuple[str, str], List[Dict[str, Any]]]:
        if not path.exists():
            return {}
        records: List[Dict[str, Any]] = []
        if path.suffix == ".jsonl":
            for line in path.read_bytes().splitlines():
                if not line:
                    continue
                try:
                    record = orjson.loads(line)
                except orjson.JSONDecodeError:
                    continue
                if isinstance(record, dict):
                    records.append(record)
        else:
            data = read_json(path)
            if isinstance(data, list):
                records = [item for item in data if isinstance(item, dict)]
            elif isinstance(data, dict) and isinstance(data.get("programs"), list):
                records = [item for item in data["programs"] if isinstance(item, dict)]
        indexed: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        for record in records:
            role = record.get("role")
            method_name = record.get("method_name")
            if isinstance(role, str) and isinstance(method_name, str):
                indexed.setdefault((role, method_name), []).append(record)
        return indexed

    def generate(self, request: CodeGenerationRequest) -> Dict[str, Any]:
        key = (request.role, request.method_name)
        candidates = self.records.get(key)
        if not candidates:
            raise ProviderError(f"no replay record for {request.role}.{request.method_name}")
        served = self._served.get(key, 0)
        self._served[key] = served + 1
        record = candidates[min(served, len(candidates) - 1)]
        return {"code": record.get("code"), "dependencies": record.get("dependencies")}


class SubprocessGenerator:
    def __init__(self, command: List[str], timeout_s: Optional[float] = None) -> None:
        self.command = list(command)
        self.timeout_s = timeout_s

    def generate(self, request: CodeGenerationRequest) -> Dict[str, Any]:
        timeout = self.timeout_s or request.timeout_seconds
        try:
            result = subprocess.run(
                self.command,
                input=canonical_dumps(request.to_payload()),
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise GenerationTimeoutError(f"code generator timed out after {timeout}s") from exc
        except OSError as exc:
            raise ProviderError(f"code generator could not start: {exc}") from exc
        if result.returncode != 0:
            raise ProviderError(f"code generator exited with status {result.returncode}")
        try:
            output = orjson.loads(result.stdout or b"{}")
        except orjson.JSONDecodeError as exc:
            raise ProviderError("code generator returned invalid JSON") from exc
        if not isinstance(output, dict):
            raise ProviderError("code generator returned a non-object payload")
        return output


def generate_program_with_retry(
    generator: CodeGenerator,
    request: CodeGenerationRequest,
    max_attempts: int,
    origin: str = ORIGIN_FRESH,
) -> Tuple[GeneratedProgram, int]:
    last_error: Optional[CallForgeError] = None
    for attempt in range(1, max(max_attempts, 1) + 1):
        try:
            payload = generator.generate(request)
            return GeneratedProgram.from_provider_payload(payload, origin=origin), attempt
        except CallForgeError as exc:
            if not exc.retriable:
                exc.metadata.setdefault("generation_attempts", attempt)
                raise
            last_error = exc
        except Exception as exc:  # noqa: BLE001
            last_error = ProviderError(f"{exc.__class__.__name__}: {exc}")
        logger.debug(
            "generation attempt %d/%d for %s.%s failed: %s",
            attempt,
            max_attempts,
            request.role,
            request.method_name,
            last_error.error_type,
        )
    assert last_error is not None
    last_error.metadata.setdefault("generation_attempts", max(max_attempts, 1))
    raise last_error
