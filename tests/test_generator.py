import sys
from pathlib import Path

import orjson
import pytest

from callforge.errors import (
    GenerationTimeoutError,
    InvalidCodeError,
    InvalidDependencyManifestError,
    ProviderError,
)
from callforge.generator import (
    CodeGenerationRequest,
    ReplayGenerator,
    StaticGenerator,
    SubprocessGenerator,
    build_prompts,
    generate_program_with_retry,
)


def _request(method_name: str = "add", args=None) -> CodeGenerationRequest:
    system_prompt, user_prompt = build_prompts("calc", method_name, args or [], {})
    return CodeGenerationRequest(
        role="calc",
        method_name=method_name,
        model="test-model",
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        timeout_seconds=5.0,
        args=list(args or []),
    )


def _generator_cmd() -> list[str]:
    fixture = Path(__file__).resolve().parent / "fixtures" / "generator_echo.py"
    return [sys.executable, str(fixture)]


def test_prompts_include_inputs_contract_and_feedback() -> None:
    _, user_prompt = build_prompts(
        "calc",
        "add",
        [1, 2],
        {"round": True},
        feedback={"guardrail": {"violation_subtype": "context_tools_shape_misuse"}},
        existing_code="return 0",
        contract={"type": "number"},
    )
    assert "args: [1,2]" in user_prompt
    assert 'kwargs: {"round":true}' in user_prompt
    assert 'deliverable: {"type":"number"}' in user_prompt
    assert "existing_code:\nreturn 0" in user_prompt
    assert "guardrail_feedback:" in user_prompt


def test_retry_recovers_from_retriable_failures() -> None:
    generator = StaticGenerator([ProviderError("flaky"), {"code": "return 1"}])
    program, attempts = generate_program_with_retry(generator, _request(), max_attempts=2)
    assert program.code == "return 1\n"
    assert attempts == 2
    assert generator.call_count == 2


def test_retry_exhaustion_reports_attempts() -> None:
    generator = StaticGenerator([{"code": "   "}])
    with pytest.raises(InvalidCodeError) as excinfo:
        generate_program_with_retry(generator, _request(), max_attempts=3)
    assert excinfo.value.metadata["generation_attempts"] == 3
    assert generator.call_count == 3


def test_non_retriable_failures_stop_immediately() -> None:
    generator = StaticGenerator([{"code": "return 1", "dependencies": "rich"}])
    with pytest.raises(InvalidDependencyManifestError) as excinfo:
        generate_program_with_retry(generator, _request(), max_attempts=3)
    assert excinfo.value.metadata["generation_attempts"] == 1
    assert generator.call_count == 1


def test_unexpected_exceptions_become_provider_errors() -> None:
    generator = StaticGenerator([RuntimeError("socket closed")])
    with pytest.raises(ProviderError, match="RuntimeError: socket closed"):
        generate_program_with_retry(generator, _request(), max_attempts=1)


def test_replay_generator_serves_records_in_order(tmp_path: Path) -> None:
    replay = tmp_path / "programs.jsonl"
    lines = [
        {"role": "calc", "method_name": "add", "code": "return 1"},
        {"role": "calc", "method_name": "add", "code": "return 2"},
    ]
    replay.write_bytes(b"\n".join(orjson.dumps(line) for line in lines) + b"\nnot json\n")
    generator = ReplayGenerator(replay)

    assert generator.generate(_request())["code"] == "return 1"
    assert generator.generate(_request())["code"] == "return 2"
    assert generator.generate(_request())["code"] == "return 2"
    with pytest.raises(ProviderError):
        generator.generate(_request("sub"))


def test_replay_generator_reads_program_documents(tmp_path: Path) -> None:
    replay = tmp_path / "programs.json"
    replay.write_bytes(
        orjson.dumps(
            {"programs": [{"role": "calc", "method_name": "add", "code": "return 3"}]}
        )
    )
    assert ReplayGenerator(replay).generate(_request())["code"] == "return 3"


def test_subprocess_generator_round_trip() -> None:
    output = SubprocessGenerator(_generator_cmd()).generate(_request(args=[4, 5]))
    assert output == {"code": "return [4, 5]", "dependencies": []}


@pytest.mark.parametrize(
    "method_name,error",
    [("crash", ProviderError), ("garbage", ProviderError)],
)
def test_subprocess_generator_failures(method_name: str, error: type) -> None:
    with pytest.raises(error):
        SubprocessGenerator(_generator_cmd()).generate(_request(method_name))


def test_subprocess_generator_timeout() -> None:
    generator = SubprocessGenerator(_generator_cmd(), timeout_s=0.5)
    with pytest.raises(GenerationTimeoutError) as excinfo:
        generator.generate(_request("stall"))
    assert excinfo.value.retriable is True


def test_missing_command_is_a_provider_error(tmp_path: Path) -> None:
    generator = SubprocessGenerator([str(tmp_path / "missing-generator")])
    with pytest.raises(ProviderError, match="could not start"):
        generator.generate(_request())
