from __future__ import annotations

import ast
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from .dependencies import DependencySpec, manifest_to_records, normalize_dependencies
from .errors import InvalidCodeError
from .utils import hash_bytes

CHECKSUM_PREFIX = "blake3:"
ENTRY_FUNCTION = "__callforge_program__"
PROGRAM_FILENAME = "<callforge>"
ORIGIN_FRESH = "fresh"
ORIGIN_PERSISTED = "persisted"
ORIGIN_REPAIRED = "repaired"

_UNSET_NAME = "__callforge_unset__"


def canonical_source(code: str) -> str:
    normalized = code.replace("\r\n", "\n").replace("\r", "\n")
    normalized = normalized.rstrip("\n")
    return normalized + "\n"


def compute_code_checksum(code: str) -> str:
    return CHECKSUM_PREFIX + hash_bytes(canonical_source(code).encode("utf-8"))


def checksum_matches(code: Any, checksum: Any) -> bool:
    if not isinstance(code, str) or not code.strip():
        return False
    if not isinstance(checksum, str) or not checksum:
        return False
    return compute_code_checksum(code) == checksum


_WRAPPER_TEMPLATE = (
    f"def {ENTRY_FUNCTION}(agent, context, call, args, kwargs, Outcome, {_UNSET_NAME}):\n"
    f"    result = {_UNSET_NAME}\n"
    f"    return result\n"
)


def wrap_program(code: str) -> ast.Module:
    # Top-level `return` parses fine; it only fails once compiled outside a function.
    user_tree = ast.parse(canonical_source(code), filename=PROGRAM_FILENAME)
    wrapper = ast.parse(_WRAPPER_TEMPLATE, filename=PROGRAM_FILENAME)
    function = wrapper.body[0]
    assert isinstance(function, ast.FunctionDef)
    function.body[1:1] = user_tree.body
    return ast.fix_missing_locations(wrapper)


def compile_program(code: str) -> Any:
    try:
        return compile(wrap_program(code), PROGRAM_FILENAME, "exec")
    except SyntaxError as exc:
        raise InvalidCodeError(
            f"generated code does not compile: {exc.msg} (line {exc.lineno})",
            metadata={"lineno": exc.lineno},
        ) from exc
    except ValueError as exc:
        raise InvalidCodeError(f"generated code is not valid source: {exc}") from exc


def reads_call_inputs(code: str) -> bool:
    try:
        tree = ast.parse(canonical_source(code))
    except (SyntaxError, ValueError):
        return True
    return any(
        isinstance(node, ast.Name) and node.id in {"args", "kwargs"} for node in ast.walk(tree)
    )


@dataclass(frozen=True)
class GeneratedProgram:
    code: str
    dependencies: Tuple[DependencySpec, ...] = ()
    origin: str = ORIGIN_FRESH
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider_payload(cls, payload: Any, origin: str = ORIGIN_FRESH) -> "GeneratedProgram":
        if not isinstance(payload, Mapping):
            raise InvalidCodeError("provider payload must be an object with `code`")
        code = payload.get("code")
        if not isinstance(code, str) or not code.strip():
            raise InvalidCodeError("provider returned nil or blank code")
        dependencies = normalize_dependencies(payload.get("dependencies"))
        program = cls(code=canonical_source(code), dependencies=tuple(dependencies), origin=origin)
        program.validate()
        return program

    def validate(self) -> None:
        compile_program(self.code)

    @property
    def checksum(self) -> str:
        return compute_code_checksum(self.code)

    @property
    def has_dependencies(self) -> bool:
        return bool(self.dependencies)

    def dependency_records(self) -> List[Dict[str, str]]:
        return manifest_to_records(self.dependencies)

    def to_json(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "dependencies": self.dependency_records(),
            "origin": self.origin,
            "code_checksum": self.checksum,
        }
