from typing import Any, Dict

from callforge import promotion
from callforge.config import PromotionPolicy

CHECKSUM = "blake3:" + "a" * 64


def _artifact() -> Dict[str, Any]:
    return {"role": "calc", "method_name": "add", "scorecards": {}, "lifecycle": None}


def _observe(artifact, policy, ok=True, trace_id="session-a", **kwargs):
    return promotion.observe(artifact, CHECKSUM, policy, ok=ok, trace_id=trace_id, **kwargs)


def test_candidate_reaches_durable_after_calls_across_sessions() -> None:
    policy = PromotionPolicy()
    artifact = _artifact()

    first = _observe(artifact, policy)
    assert (first["from_state"], first["to_state"]) == ("candidate", "probation")

    for index in range(8):
        evaluation = _observe(artifact, policy, trace_id="session-a" if index < 4 else "session-b")
        assert evaluation["to_state"] == "probation"

    final = _observe(artifact, policy, trace_id="session-b")
    assert final["to_state"] == "durable"
    assert final["reason"] == "promotion_gate_passed"
    assert artifact["lifecycle"]["incumbent_checksum"] == CHECKSUM
    assert artifact["scorecards"][CHECKSUM]["sessions"] == ["session-a", "session-b"]


def test_single_session_never_promotes() -> None:
    policy = PromotionPolicy()
    artifact = _artifact()
    for _ in range(15):
        evaluation = _observe(artifact, policy)
    assert evaluation["to_state"] == "probation"
    reasons = promotion.gate_failures(artifact["scorecards"][CHECKSUM], policy)
    assert reasons == ["min_sessions"]


def test_failures_keep_candidate_waiting() -> None:
    evaluation = _observe(_artifact(), PromotionPolicy(), ok=False)
    assert evaluation["to_state"] == "candidate"
    assert evaluation["reason"] == "awaiting_productive_use"


def test_regression_degrades_and_recovery_needs_fresh_window() -> None:
    policy = PromotionPolicy(min_calls=2, min_sessions=1, short_window=4)
    artifact = _artifact()
    _observe(artifact, policy)
    assert _observe(artifact, policy)["to_state"] == "durable"

    states = [_observe(artifact, policy, ok=False)["to_state"] for _ in range(3)]
    assert states == ["durable", "durable", "degraded"]
    assert artifact["lifecycle"]["incumbent_checksum"] is None
    assert artifact["scorecards"][CHECKSUM]["calls"] == 0

    held = _observe(artifact, policy)
    assert (held["to_state"], held["reason"]) == ("degraded", "hold_degraded")
    recovered = _observe(artifact, policy)
    assert (recovered["to_state"], recovered["reason"]) == ("probation", "fresh_window_passed")
    assert _observe(artifact, policy)["to_state"] == "durable"


def test_enforced_probation_failure_degrades() -> None:
    policy = PromotionPolicy()
    artifact = _artifact()
    _observe(artifact, policy)
    evaluation = _observe(artifact, policy, ok=False, enforcement=True)
    assert (evaluation["to_state"], evaluation["reason"]) == ("degraded", "probation_failure")
    assert evaluation["mode"] == "enforced"


def test_gate_counts_exhaustions_and_continuity() -> None:
    policy = PromotionPolicy(min_calls=1, min_sessions=1)
    scorecard = promotion.new_scorecard()
    promotion.update_scorecard(
        scorecard,
        policy,
        ok=False,
        error_type="guardrail_retry_exhausted",
        contract_passed=False,
        state_key_ratio=0.0,
        provenance_violations=2,
    )
    assert promotion.gate_failures(scorecard, policy) == [
        "min_sessions",
        "contract_pass_rate",
        "guardrail_retry_exhausted_count",
        "provenance_violation_count",
        "state_key_consistency",
    ]


def test_shadow_ledger_is_optional_and_bounded() -> None:
    policy = PromotionPolicy(max_shadow_evaluations=2)
    artifact = _artifact()
    for _ in range(3):
        _observe(artifact, policy)
    assert len(artifact["lifecycle"]["shadow_ledger"]["evaluations"]) == 2

    quiet = _artifact()
    _observe(quiet, policy, shadow_mode=False)
    assert quiet["lifecycle"]["shadow_ledger"]["evaluations"] == []
    assert quiet["lifecycle"]["versions"][CHECKSUM]["state"] == "probation"


def test_rank_versions_orders_by_tier() -> None:
    artifact = {
        "code_checksum": "c-current",
        "versions": {"a-old": {}, "b-probation": {}, "c-current": {}, "d-bad": {}},
        "lifecycle": {
            "incumbent_checksum": "a-old",
            "versions": {
                "a-old": {"state": "durable"},
                "b-probation": {"state": "probation"},
                "d-bad": {"state": "degraded"},
            },
        },
    }
    assert promotion.rank_versions(artifact) == ["a-old", "b-probation", "c-current"]
    assert promotion.rank_versions({"code_checksum": "x"}) == ["x"]
