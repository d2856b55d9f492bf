from typing import Any, Dict, List

import pytest

from callforge.errors import ExecutionError, GuardrailViolationError
from callforge.outcome import Outcome
from callforge.program import GeneratedProgram
from callforge.sandbox import AttemptReceiver, DelegatedTool, ExecutionSandbox, run_program


def _run(code: str, context=None, args=None, delegator=None) -> Any:
    context = {} if context is None else context
    receiver = AttemptReceiver("calc", context, delegator)
    return run_program(code, receiver, context, {"method_name": "run"}, args or [], {})


def test_program_sees_inputs_and_mutates_context() -> None:
    context: Dict[str, Any] = {"count": 1}
    value = _run('context["count"] += args[0]\nreturn call["method_name"]', context, [4])
    assert value == "run"
    assert context["count"] == 5


def test_unset_result_becomes_none_and_outcome_is_available() -> None:
    assert _run("x = 1") is None
    outcome = _run('return Outcome.error("low_utility", "nothing found")')
    assert isinstance(outcome, Outcome) and outcome.error_type == "low_utility"


def test_runtime_errors_carry_location_and_class() -> None:
    with pytest.raises(ExecutionError) as excinfo:
        _run("x = 1\nreturn x / 0")
    error = excinfo.value
    assert error.root_error_class == "ZeroDivisionError"
    assert error.metadata["failure_location"] == "line 2"
    assert error.stage == "execution"


def test_source_that_does_not_compile_is_a_validation_error() -> None:
    with pytest.raises(ExecutionError) as excinfo:
        _run("return (")
    error = excinfo.value
    assert error.error_type == "execution"
    assert error.stage == "validation"
    assert error.root_error_class == "SyntaxError"
    assert "does not compile" in error.message


def test_interactive_builtins_are_denied() -> None:
    with pytest.raises(ExecutionError) as excinfo:
        _run('return input("?")')
    assert excinfo.value.root_error_class == "NameError"


def test_receiver_attributes_do_not_outlive_the_attempt() -> None:
    context: Dict[str, Any] = {}
    _run("agent.cache = {}\nagent.remember('seen', True)", context)
    receiver = AttemptReceiver("calc", context)
    assert not hasattr(receiver, "cache")
    assert receiver.recall("seen") is True


def test_delegated_tools_dispatch_and_refuse_mutation() -> None:
    calls: List[Any] = []

    def delegator(role, purpose, methods, deliverable):
        def dispatch(tool_role, method_name, args, kwargs):
            calls.append((tool_role, method_name, args, kwargs))
            return Outcome.ok(sum(args))

        return dispatch

    assert _run('return agent.delegate("adder").call("add", 2, 3).value', delegator=delegator) == 5
    assert calls == [("adder", "add", [2, 3], {})]

    tool = DelegatedTool("adder", lambda *parts: Outcome.ok(None))
    with pytest.raises(GuardrailViolationError) as excinfo:
        tool.total = 1
    assert excinfo.value.violation.subtype == "singleton_method_mutation"


def test_delegation_requires_a_delegator() -> None:
    with pytest.raises(ExecutionError, match="delegation is unavailable"):
        _run('return agent.delegate("adder")')


def test_execution_sandbox_returns_value_and_context() -> None:
    program = GeneratedProgram(code='context["n"] = 2\nreturn context["n"] * 3\n')
    context: Dict[str, Any] = {}
    result = ExecutionSandbox().execute(
        program, role="calc", context=context, call={}, args=[], kwargs={}
    )
    assert result.value == 6
    assert result.context is context and context == {"n": 2}
