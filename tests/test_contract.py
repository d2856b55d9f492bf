from hypothesis import given
from hypothesis import strategies as st

from callforge.contract import (
    contract_fingerprint,
    key_variants,
    state_key_continuity,
    validate_deliverable,
    validate_outcome,
)
from callforge.outcome import Outcome

WORDS = st.lists(
    st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=6), min_size=1, max_size=3
)


def test_missing_required_key_reports_shapes_and_keys() -> None:
    result = validate_deliverable({"required": ["body"]}, {"status": 200})
    assert not result.valid
    assert result.metadata == {
        "expected_shape": "object",
        "actual_shape": "object",
        "expected_keys": ["body"],
        "actual_keys": ["status"],
        "mismatch": "missing_required_key",
        "missing_keys": ["body"],
    }


@given(WORDS, st.sampled_from(["snake", "camel", "bytes"]))
def test_required_key_matches_any_representation(words, form) -> None:
    snake = "_".join(words)
    camel = words[0] + "".join(word.capitalize() for word in words[1:])
    key = {"snake": snake, "camel": camel, "bytes": snake.encode("utf-8")}[form]
    deliverable = {"type": "object", "required": [snake]}
    assert validate_deliverable(deliverable, {key: 1}).valid
    missing = validate_deliverable(deliverable, {"unrelated_field_zz": 1})
    assert missing.mismatch == "missing_required_key"


def test_valid_value_gains_canonical_key() -> None:
    result = validate_deliverable({"required": ["user_id"]}, {"userId": 7})
    assert result.valid
    assert result.value == {"userId": 7, "user_id": 7}
    assert "user_id" in key_variants("userId")


def test_type_and_min_items_violations() -> None:
    array_contract = {"type": "array", "min_items": 2}
    assert validate_deliverable(array_contract, {"a": 1}).mismatch == "type_mismatch"
    short = validate_deliverable(array_contract, [1])
    assert short.mismatch == "min_items_violation"
    assert short.metadata["expected_min_items"] == 2
    assert short.metadata["actual_items"] == 1

    nested = {
        "type": "object",
        "required": ["items"],
        "constraints": {"properties": {"items": {"type": "array", "min_items": 1}}},
    }
    empty = validate_deliverable(nested, {"items": []})
    assert empty.mismatch == "min_items_violation"
    assert empty.metadata["constraint_path"] == "deliverable.constraints.properties.items.min_items"
    wrong = validate_deliverable(nested, {"items": "x"})
    assert wrong.mismatch == "property_type_mismatch"


def test_nil_input_with_empty_success_is_a_violation() -> None:
    result = validate_deliverable({"type": "array"}, [], args=[None])
    assert result.mismatch == "nil_required_input"
    assert validate_deliverable({"type": "array"}, [], args=["query"]).valid


def test_validate_outcome_wraps_contract_violation() -> None:
    outcome, validation = validate_outcome(
        Outcome.ok({"status": 200}), {"deliverable": {"required": ["body"]}}
    )
    assert validation is not None and not validation.valid
    assert outcome.error_type == "contract_violation"
    assert outcome.retriable is False
    assert "missing_required_key" in outcome.error_message


def test_errors_and_uncontracted_outcomes_pass_through() -> None:
    error = Outcome.error("timeout", "late", retriable=True)
    assert validate_outcome(error, {"required": ["body"]}) == (error, None)
    ok = Outcome.ok({"anything": True})
    assert validate_outcome(ok, None) == (ok, None)


def test_low_utility_success_is_coerced_to_error() -> None:
    outcome, _ = validate_outcome(
        Outcome.ok({"status": "empty_result", "message": "no rows"}), None
    )
    assert outcome.error_type == "low_utility"
    assert outcome.metadata["signaled_status"] == "empty_result"
    assert outcome.metadata["signaled_message"] == "no rows"


def test_fingerprint_ignores_key_order() -> None:
    assert contract_fingerprint({"a": 1, "b": 2}) == contract_fingerprint({"b": 2, "a": 1})
    assert contract_fingerprint(None) is None


def test_state_key_continuity() -> None:
    assert state_key_continuity(None, [], {"x": 1}) == (1.0, [])
    assert state_key_continuity(None, ["a", "b"], {"a": 1}) == (0.5, ["b"])
    assert state_key_continuity({"state_keys": ["count"]}, ["a"], {"count": 1}) == (1.0, [])
    assert state_key_continuity(None, ["a"], "text") == (0.0, ["a"])
