from __future__ import annotations

import builtins
import logging
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import CallForgeError, ExecutionError, GuardrailViolationError, InvalidCodeError
from .guardrails import make_violation
from .outcome import Outcome
from .program import ENTRY_FUNCTION, PROGRAM_FILENAME, GeneratedProgram, compile_program

logger = logging.getLogger(__name__)

DENIED_BUILTINS = {"breakpoint", "exit", "quit", "input", "help", "copyright", "credits", "license"}
SAFE_BUILTINS = {
    name: value for name, value in vars(builtins).items() if name not in DENIED_BUILTINS
}

Dispatch = Callable[[str, str, List[Any], Dict[str, Any]], Outcome]
Delegator = Callable[
    [str, Optional[str], Optional[List[str]], Optional[Dict[str, Any]]], Dispatch
]

_UNSET = object()


class DelegatedTool:
    __slots__ = ("_role", "_dispatch")

    def __init__(self, role: str, dispatch: Dispatch) -> None:
        object.__setattr__(self, "_role", role)
        object.__setattr__(self, "_dispatch", dispatch)

    @property
    def role(self) -> str:
        return self._role

    def call(self, method_name: str, *args: Any, **kwargs: Any) -> Outcome:
        return self._dispatch(self._role, method_name, list(args), dict(kwargs))

    def __setattr__(self, name: str, value: Any) -> None:
        raise GuardrailViolationError(
            make_violation(
                "delegated_object_mutation",
                "singleton_method_mutation",
                f"Generated code must not define methods on delegated objects ({name})",
                phase="execution",
            )
        )

    def __delattr__(self, name: str) -> None:
        self.__setattr__(name, None)

    def __repr__(self) -> str:
        return f"DelegatedTool({self._role!r})"


class AttemptReceiver:
    """Short-lived object handed to a generated program as `agent`.

    A new receiver is built for every attempt and discarded afterwards, so
    attributes a program sets on it never outlive that attempt.
    """

    def __init__(
        self,
        role: str,
        context: Dict[str, Any],
        delegator: Optional[Delegator] = None,
    ) -> None:
        self.role = role
        self._context = context
        self._delegator = delegator

    def delegate(
        self,
        role: str,
        purpose: Optional[str] = None,
        methods: Optional[List[str]] = None,
        deliverable: Optional[Dict[str, Any]] = None,
    ) -> DelegatedTool:
        if self._delegator is None:
            raise ExecutionError(
                "delegation is unavailable in this execution mode", stage="execution"
            )
        return DelegatedTool(role, self._delegator(role, purpose, methods, deliverable))

    def tool(self, role: str) -> DelegatedTool:
        return self.delegate(role)

    def remember(self, key: str, value: Any) -> Any:
        self._context[key] = value
        return value

    def recall(self, key: str, default: Any = None) -> Any:
        return self._context.get(key, default)

    @property
    def tools(self) -> Mapping[str, Any]:
        registry = self._context.get("tools")
        return registry if isinstance(registry, Mapping) else {}

    def violation(self, message: str) -> None:
        raise GuardrailViolationError(
            make_violation(
                "program_declared", "unknown_guardrail_violation", message, phase="execution"
            )
        )


def _failure_location(exc: BaseException) -> Optional[str]:
    frames = [
        frame
        for frame in traceback.extract_tb(exc.__traceback__)
        if frame.filename == PROGRAM_FILENAME
    ]
    if not frames:
        return None
    return f"line {frames[-1].lineno}"


def run_program(
    code: str,
    receiver: AttemptReceiver,
    context: Dict[str, Any],
    call: Mapping[str, Any],
    args: List[Any],
    kwargs: Dict[str, Any],
) -> Any:
    namespace: Dict[str, Any] = {"__builtins__": SAFE_BUILTINS, "__name__": "callforge_program"}
    try:
        compiled = compile_program(code)
    except InvalidCodeError as exc:
        lineno = exc.metadata.get("lineno")
        cause = exc.__cause__
        raise ExecutionError(
            exc.message,
            metadata={"failure_location": f"line {lineno}" if lineno else None},
            stage="validation",
            root_error_class=cause.__class__.__name__ if cause is not None else None,
        ) from exc
    exec(compiled, namespace, namespace)
    entry = namespace[ENTRY_FUNCTION]
    try:
        value = entry(receiver, context, dict(call), list(args), dict(kwargs), Outcome, _UNSET)
    except CallForgeError:
        raise
    except (Exception, SystemExit) as exc:  # noqa: BLE001
        location = _failure_location(exc)
        raise ExecutionError(
            f"{exc.__class__.__name__}: {exc}",
            metadata={"failure_location": location},
            stage="execution",
            root_error_class=exc.__class__.__name__,
        ) from exc
    return None if value is _UNSET else value


@dataclass
class SandboxResult:
    value: Any
    context: Dict[str, Any]


class ExecutionSandbox:
    def execute(
        self,
        program: GeneratedProgram,
        *,
        role: str,
        context: Dict[str, Any],
        call: Mapping[str, Any],
        args: List[Any],
        kwargs: Dict[str, Any],
        delegator: Optional[Delegator] = None,
    ) -> SandboxResult:
        receiver = AttemptReceiver(role, context, delegator)
        value = run_program(program.code, receiver, context, call, args, kwargs)
        logger.debug("sandbox executed %s.%s", role, call.get("method_name"))
        return SandboxResult(value=value, context=context)
