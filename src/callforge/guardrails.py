from __future__ import annotations

import ast
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import GuardrailViolationError, ToolRegistryViolationError
from .outcome import Outcome
from .program import PROGRAM_FILENAME, canonical_source

RECOVERABLE = "recoverable_guardrail"
TERMINAL = "terminal_guardrail"

TERMINAL_GUARDRAIL_MESSAGE_PATTERNS = (
    re.compile(r"missing credential", re.IGNORECASE),
    re.compile(r"api key", re.IGNORECASE),
    re.compile(r"unsupported runtime capability", re.IGNORECASE),
    re.compile(r"external service unavailable", re.IGNORECASE),
)

NORMALIZATION_POLICY = "guardrail_exhaustion_boundary_v1"
BOUNDARY_USER_MESSAGE = "This request couldn't be completed after multiple attempts."

EXTERNAL_RETRIEVAL_MODES = ("live", "cached", "fixture")
EXTERNAL_FETCH_MODULES = frozenset(
    {"urllib", "requests", "httpx", "http", "aiohttp", "socket", "urllib3"}
)
LIST_ONLY_METHODS = frozenset({"append", "extend", "insert", "sort", "reverse", "index", "count"})
DELEGATE_FACTORIES = frozenset({"delegate", "tool"})

REQUIRED_CORRECTIONS = {
    "singleton_method_mutation": (
        "Obtain tools with agent.delegate(\"name\", ...) and call methods through tool.call(...); "
        "do not assign attributes or methods onto delegated objects."
    ),
    "context_tools_shape_misuse": (
        "context['tools'] is a dict keyed by tool name: use `\"name\" in context['tools']` or "
        "iterate `context['tools'].items()`."
    ),
    "hardcoded_external_fallback_success": (
        "Do not return hardcoded fallback payloads as success. "
        "Return Outcome.error('low_utility', ...) unless the value is derived from "
        "fetched data."
    ),
    "missing_external_provenance": (
        "For external-data success return a value with provenance={'sources': [...]} "
        "where each source has uri, fetched_at, retrieval_tool and retrieval_mode "
        "(live|cached|fixture)."
    ),
    "executable_registry_mutation": (
        "Store only plain metadata (strings, numbers, lists, dicts) in context['tools']; "
        "never functions or agents."
    ),
    "state_key_continuity_violation": (
        "Keep returning the state keys produced by earlier successful calls of this method."
    ),
    "unknown_guardrail_violation": (
        "Rewrite using policy-compliant delegate invocation paths and avoid executable "
        "metadata mutation."
    ),
}


def guardrail_class_for(message: str) -> str:
    if any(pattern.search(message or "") for pattern in TERMINAL_GUARDRAIL_MESSAGE_PATTERNS):
        return TERMINAL
    return RECOVERABLE


@dataclass(frozen=True)
class GuardrailViolation:
    check: str
    subtype: str
    message: str
    violation_type: str = "guardrail_violation"
    guardrail_class: str = RECOVERABLE
    required_correction: str = ""
    location: Optional[str] = None
    phase: str = "code"

    @property
    def recoverable(self) -> bool:
        return self.guardrail_class == RECOVERABLE

    def to_record(self) -> Dict[str, Any]:
        return {
            "check": self.check,
            "guardrail_class": self.guardrail_class,
            "violation_type": self.violation_type,
            "violation_subtype": self.subtype,
            "violation_message": self.message,
            "violation_location": self.location,
            "required_correction": self.required_correction,
            "phase": self.phase,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "GuardrailViolation":
        return cls(
            check=str(record.get("check") or "guardrail"),
            subtype=str(record.get("violation_subtype") or "unknown_guardrail_violation"),
            message=str(record.get("violation_message") or ""),
            violation_type=str(record.get("violation_type") or "guardrail_violation"),
            guardrail_class=str(record.get("guardrail_class") or RECOVERABLE),
            required_correction=str(record.get("required_correction") or ""),
            location=record.get("violation_location"),
            phase=str(record.get("phase") or "execution"),
        )

    def to_error(self) -> GuardrailViolationError:
        if self.violation_type == ToolRegistryViolationError.error_type:
            return ToolRegistryViolationError(self)
        return GuardrailViolationError(self)


def make_violation(
    check: str,
    subtype: str,
    message: str,
    *,
    violation_type: str = "guardrail_violation",
    location: Optional[str] = None,
    phase: str = "code",
) -> GuardrailViolation:
    return GuardrailViolation(
        check=check,
        subtype=subtype if subtype in REQUIRED_CORRECTIONS else "unknown_guardrail_violation",
        message=message,
        violation_type=violation_type,
        guardrail_class=guardrail_class_for(message),
        required_correction=REQUIRED_CORRECTIONS.get(
            subtype, REQUIRED_CORRECTIONS["unknown_guardrail_violation"]
        ),
        location=location,
        phase=phase,
    )


def _line(node: ast.AST) -> str:
    return f"line {getattr(node, 'lineno', '?')}"


def parse_source(code: str) -> Optional[ast.Module]:
    try:
        return ast.parse(canonical_source(code), filename=PROGRAM_FILENAME)
    except (SyntaxError, ValueError):
        return None


def uses_external_fetch(tree: Optional[ast.Module]) -> bool:
    if tree is None:
        return False
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            if any(alias.name.split(".")[0] in EXTERNAL_FETCH_MODULES for alias in node.names):
                return True
        elif isinstance(node, ast.ImportFrom):
            if (node.module or "").split(".")[0] in EXTERNAL_FETCH_MODULES:
                return True
    return False


class GuardrailCheck:
    name = "guardrail"

    def check_code(self, tree: ast.Module) -> Optional[GuardrailViolation]:
        return None

    def check_state(self, context: Mapping[str, Any]) -> Optional[GuardrailViolation]:
        return None

    def check_outcome(
        self, tree: Optional[ast.Module], outcome: Outcome
    ) -> Optional[GuardrailViolation]:
        return None


def _is_delegate_call(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Attribute)
        and node.func.attr in DELEGATE_FACTORIES
    )


class DelegatedObjectMutationCheck(GuardrailCheck):
    name = "delegated_object_mutation"

    def _delegated_names(self, tree: ast.Module) -> set[str]:
        names: set[str] = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Assign) and _is_delegate_call(node.value):
                names.update(t.id for t in node.targets if isinstance(t, ast.Name))
            elif isinstance(node, ast.AnnAssign) and node.value is not None:
                if _is_delegate_call(node.value) and isinstance(node.target, ast.Name):
                    names.add(node.target.id)
        return names

    def _is_delegated(self, node: ast.AST, names: set[str]) -> bool:
        return (isinstance(node, ast.Name) and node.id in names) or _is_delegate_call(node)

    def check_code(self, tree: ast.Module) -> Optional[GuardrailViolation]:
        names = self._delegated_names(tree)
        for node in ast.walk(tree):
            targets: List[ast.AST] = []
            if isinstance(node, ast.Assign):
                targets = list(node.targets)
            elif isinstance(node, (ast.AugAssign, ast.AnnAssign)):
                targets = [node.target]
            for target in targets:
                if isinstance(target, ast.Attribute) and self._is_delegated(target.value, names):
                    return self._violation(node, target.attr)
            if isinstance(node, ast.Call) and node.args:
                func = node.func
                func_name = func.id if isinstance(func, ast.Name) else getattr(func, "attr", "")
                if func_name in {"setattr", "__setattr__"}:
                    if self._is_delegated(node.args[0], names):
                        return self._violation(node, "setattr")
                if func_name == "MethodType" and len(node.args) > 1:
                    if self._is_delegated(node.args[1], names):
                        return self._violation(node, "MethodType")
        return None

    def _violation(self, node: ast.AST, attr: str) -> GuardrailViolation:
        return make_violation(
            self.name,
            "singleton_method_mutation",
            f"Generated code must not define methods on delegated objects ({attr}, {_line(node)})",
            location=_line(node),
        )


def _is_tools_expr(node: ast.AST) -> bool:
    if isinstance(node, ast.Subscript):
        key = node.slice
        return (
            isinstance(node.value, ast.Name)
            and node.value.id == "context"
            and isinstance(key, ast.Constant)
            and key.value == "tools"
        )
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
        return (
            node.func.attr in {"get", "setdefault"}
            and isinstance(node.func.value, ast.Name)
            and node.func.value.id == "context"
            and bool(node.args)
            and isinstance(node.args[0], ast.Constant)
            and node.args[0].value == "tools"
        )
    return False


class ContextToolsShapeCheck(GuardrailCheck):
    name = "context_tools_shape"

    def check_code(self, tree: ast.Module) -> Optional[GuardrailViolation]:
        for node in ast.walk(tree):
            if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
                if node.func.attr in LIST_ONLY_METHODS and _is_tools_expr(node.func.value):
                    return self._violation(node, f"list method .{node.func.attr}()")
            if isinstance(node, ast.Assign) and any(_is_tools_expr(t) for t in node.targets):
                if isinstance(node.value, (ast.List, ast.ListComp, ast.Tuple)):
                    return self._violation(node, "list assignment")
            if isinstance(node, ast.Subscript) and _is_tools_expr(node.value):
                key = node.slice
                if isinstance(key, ast.Constant) and isinstance(key.value, int):
                    return self._violation(node, "positional index")
        return None

    def _violation(self, node: ast.AST, usage: str) -> GuardrailViolation:
        return make_violation(
            self.name,
            "context_tools_shape_misuse",
            f"context['tools'] is a dict keyed by tool name; found {usage} ({_line(node)})",
            location=_line(node),
        )


def _is_literal_payload(node: Optional[ast.AST]) -> bool:
    if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
        return bool(node.elts) and all(
            isinstance(elt, ast.Constant) or _is_literal_payload(elt) for elt in node.elts
        )
    if isinstance(node, ast.Dict):
        return bool(node.keys) and all(
            isinstance(value, ast.Constant) or _is_literal_payload(value) for value in node.values
        )
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
        if node.func.attr == "ok" and isinstance(node.func.value, ast.Name):
            if node.func.value.id == "Outcome" and node.args:
                return _is_literal_payload(node.args[0])
    return False


class HardcodedExternalFallbackCheck(GuardrailCheck):
    name = "hardcoded_external_fallback"

    def check_code(self, tree: ast.Module) -> Optional[GuardrailViolation]:
        if not uses_external_fetch(tree):
            return None
        for handler in ast.walk(tree):
            if not isinstance(handler, ast.ExceptHandler):
                continue
            for node in ast.walk(handler):
                payload: Optional[ast.AST] = None
                if isinstance(node, ast.Return):
                    payload = node.value
                elif isinstance(node, ast.Assign) and any(
                    isinstance(t, ast.Name) and t.id == "result" for t in node.targets
                ):
                    payload = node.value
                if _is_literal_payload(payload):
                    return make_violation(
                        self.name,
                        "hardcoded_external_fallback_success",
                        "Hardcoded fallback payloads for external-fetch flows are not allowed "
                        f"({_line(node)})",
                        location=_line(node),
                    )
        return None


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def valid_provenance_source(entry: Any) -> bool:
    if not isinstance(entry, Mapping):
        return False
    if any(_blank(entry.get(key)) for key in ("uri", "fetched_at", "retrieval_tool")):
        return False
    return str(entry.get("retrieval_mode", "")).strip().lower() in EXTERNAL_RETRIEVAL_MODES


def has_external_provenance(value: Any) -> bool:
    if not isinstance(value, Mapping):
        return False
    provenance = value.get("provenance")
    if not isinstance(provenance, Mapping):
        return False
    sources = provenance.get("sources")
    if not isinstance(sources, list) or not sources:
        return False
    return all(valid_provenance_source(entry) for entry in sources)


class ExternalProvenanceCheck(GuardrailCheck):
    name = "external_provenance"

    def check_outcome(
        self, tree: Optional[ast.Module], outcome: Outcome
    ) -> Optional[GuardrailViolation]:
        if not outcome.is_ok or not uses_external_fetch(tree):
            return None
        if has_external_provenance(outcome.value):
            return None
        return make_violation(
            self.name,
            "missing_external_provenance",
            "External-data success must include `provenance.sources[]` with uri, fetched_at, "
            "retrieval_tool and retrieval_mode",
            phase="outcome",
        )


def executable_paths(value: Any, path: str) -> List[str]:
    if callable(value):
        return [path]
    if isinstance(value, (list, tuple)):
        found: List[str] = []
        for index, entry in enumerate(value):
            found.extend(executable_paths(entry, f"{path}[{index}]"))
        return found
    if isinstance(value, Mapping):
        found = []
        for key, entry in value.items():
            found.extend(executable_paths(entry, f"{path}[{key!r}]"))
        return found
    return []


class ToolRegistryIntegrityCheck(GuardrailCheck):
    name = "tool_registry_integrity"

    def check_state(self, context: Mapping[str, Any]) -> Optional[GuardrailViolation]:
        registry = context.get("tools")
        if registry is None:
            return None
        if not isinstance(registry, Mapping):
            message = "context['tools'] must be a dict keyed by tool name"
            subtype = "context_tools_shape_misuse"
        else:
            paths = executable_paths(registry, "context['tools']")
            if not paths:
                return None
            message = f"Tool registry metadata cannot store executable objects: {', '.join(paths)}"
            subtype = "executable_registry_mutation"
        return make_violation(
            self.name,
            subtype,
            message,
            violation_type=ToolRegistryViolationError.error_type,
            phase="state",
        )


def default_checks() -> List[GuardrailCheck]:
    return [
        DelegatedObjectMutationCheck(),
        ContextToolsShapeCheck(),
        HardcodedExternalFallbackCheck(),
        ToolRegistryIntegrityCheck(),
        ExternalProvenanceCheck(),
    ]


class GuardrailPolicy:
    def __init__(self, checks: Optional[Sequence[GuardrailCheck]] = None) -> None:
        self.checks: List[GuardrailCheck] = list(checks) if checks is not None else default_checks()

    def register(self, check: GuardrailCheck) -> None:
        self.checks.append(check)

    def evaluate_code(self, code: str) -> Optional[GuardrailViolation]:
        tree = parse_source(code)
        if tree is None:
            return None
        return _first(check.check_code(tree) for check in self.checks)

    def evaluate_state(self, context: Mapping[str, Any]) -> Optional[GuardrailViolation]:
        return _first(check.check_state(context) for check in self.checks)

    def evaluate_outcome(self, code: str, outcome: Outcome) -> Optional[GuardrailViolation]:
        tree = parse_source(code)
        return _first(check.check_outcome(tree, outcome) for check in self.checks)


def _first(results: Iterable[Optional[GuardrailViolation]]) -> Optional[GuardrailViolation]:
    for result in results:
        if result is not None:
            return result
    return None


def continuity_violation(missing_keys: Sequence[str]) -> GuardrailViolation:
    return make_violation(
        "state_key_continuity",
        "state_key_continuity_violation",
        f"Result dropped state keys produced by earlier calls: {', '.join(missing_keys)}",
        phase="outcome",
    )


def exhaustion_metadata(violation: GuardrailViolation, attempts: int) -> Dict[str, Any]:
    return {
        "guardrail_recovery_attempts": attempts,
        "guardrail_class": violation.guardrail_class,
        "last_violation_type": violation.violation_type,
        "last_violation_subtype": violation.subtype,
        "last_violation_message": violation.message,
    }


def normalize_boundary_outcome(outcome: Outcome, depth: int) -> Outcome:
    if depth != 0 or not outcome.is_error:
        return outcome
    if outcome.error_type != "guardrail_retry_exhausted" or outcome.metadata.get("normalized"):
        return outcome
    metadata = dict(outcome.metadata)
    metadata.update(
        normalized=True,
        normalization_policy=NORMALIZATION_POLICY,
        guardrail_class=metadata.get("guardrail_class", RECOVERABLE),
        guardrail_subtype=metadata.get("last_violation_subtype"),
        raw_error_message=outcome.error_message,
    )
    return Outcome.error(
        "guardrail_retry_exhausted",
        BOUNDARY_USER_MESSAGE,
        retriable=False,
        metadata=metadata,
        tool_role=outcome.tool_role,
        method_name=outcome.method_name,
    )
