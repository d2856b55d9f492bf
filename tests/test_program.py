import pytest

from callforge.errors import InvalidCodeError
from callforge.program import (
    ENTRY_FUNCTION,
    GeneratedProgram,
    checksum_matches,
    compile_program,
    compute_code_checksum,
    reads_call_inputs,
)


def _entry(code: str):
    namespace = {}
    exec(compile_program(code), namespace)
    return namespace[ENTRY_FUNCTION]


def test_checksum_ignores_line_ending_variants() -> None:
    checksum = compute_code_checksum("return 1\n")
    assert checksum.startswith("blake3:")
    assert compute_code_checksum("return 1\r\n\n") == checksum
    assert checksum_matches("return 1", checksum)
    assert not checksum_matches("return 2", checksum)
    assert not checksum_matches("", checksum)
    assert not checksum_matches("return 1", None)


def test_top_level_return_and_result_assignment() -> None:
    unset = object()
    returned = _entry("return args[0] + kwargs['b']")
    assigned = _entry("result = len(context)")
    silent = _entry("x = 1")
    assert returned(None, {}, {}, [1], {"b": 2}, None, unset) == 3
    assert assigned(None, {"a": 1}, {}, [], {}, None, unset) == 1
    assert silent(None, {}, {}, [], {}, None, unset) is unset


def test_invalid_source_raises_invalid_code() -> None:
    with pytest.raises(InvalidCodeError) as excinfo:
        compile_program("return (")
    assert excinfo.value.retriable is True
    assert excinfo.value.metadata["lineno"] == 1


@pytest.mark.parametrize("payload", [None, {}, {"code": "   "}, "return 1"])
def test_provider_payload_requires_code(payload) -> None:
    with pytest.raises(InvalidCodeError):
        GeneratedProgram.from_provider_payload(payload)


def test_provider_payload_normalizes_dependencies() -> None:
    program = GeneratedProgram.from_provider_payload(
        {"code": "return 1\r\n", "dependencies": ["Rich"]}
    )
    assert program.code == "return 1\n"
    assert program.has_dependencies
    assert program.to_json() == {
        "code": "return 1\n",
        "dependencies": [{"name": "rich", "version": ">= 0"}],
        "origin": "fresh",
        "code_checksum": compute_code_checksum("return 1"),
    }


def test_reads_call_inputs() -> None:
    assert reads_call_inputs("return args[0]")
    assert reads_call_inputs("return kwargs.get('q')")
    assert not reads_call_inputs("return 42")
