from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .config import PromotionPolicy
from .utils import utc_timestamp

logger = logging.getLogger(__name__)

CANDIDATE = "candidate"
PROBATION = "probation"
DURABLE = "durable"
DEGRADED = "degraded"
LIFECYCLE_STATES = (CANDIDATE, PROBATION, DURABLE, DEGRADED)

SELECTION_TIERS = (DURABLE, PROBATION, CANDIDATE)


def new_scorecard() -> Dict[str, Any]:
    return {
        "calls": 0,
        "successes": 0,
        "failures": 0,
        "contract_pass_count": 0,
        "contract_fail_count": 0,
        "guardrail_retry_exhausted_count": 0,
        "outcome_retry_exhausted_count": 0,
        "wrong_boundary_count": 0,
        "provenance_violation_count": 0,
        "state_key_observations": 0,
        "state_key_consistency_ratio": 1.0,
        "sessions": [],
        "short_window": [],
        "medium_window": [],
        "last_outcome_status": None,
        "window_started_at": utc_timestamp(),
        "updated_at": None,
    }


def _bounded_append(values: List[Any], value: Any, limit: int) -> None:
    values.append(value)
    if len(values) > limit:
        del values[0 : len(values) - limit]


def update_scorecard(
    scorecard: Dict[str, Any],
    policy: PromotionPolicy,
    *,
    ok: bool,
    error_type: Optional[str] = None,
    contract_passed: Optional[bool] = None,
    trace_id: Optional[str] = None,
    state_key_ratio: Optional[float] = None,
    provenance_violations: int = 0,
) -> Dict[str, Any]:
    scorecard["calls"] = int(scorecard.get("calls", 0)) + 1
    if ok:
        scorecard["successes"] = int(scorecard.get("successes", 0)) + 1
    else:
        scorecard["failures"] = int(scorecard.get("failures", 0)) + 1
    if contract_passed is True:
        scorecard["contract_pass_count"] = int(scorecard.get("contract_pass_count", 0)) + 1
    elif contract_passed is False:
        scorecard["contract_fail_count"] = int(scorecard.get("contract_fail_count", 0)) + 1
    counter = {
        "guardrail_retry_exhausted": "guardrail_retry_exhausted_count",
        "outcome_repair_retry_exhausted": "outcome_retry_exhausted_count",
        "wrong_tool_boundary": "wrong_boundary_count",
    }.get(error_type or "")
    if counter:
        scorecard[counter] = int(scorecard.get(counter, 0)) + 1
    if provenance_violations:
        scorecard["provenance_violation_count"] = (
            int(scorecard.get("provenance_violation_count", 0)) + provenance_violations
        )
    if state_key_ratio is not None:
        observations = int(scorecard.get("state_key_observations", 0))
        previous = float(scorecard.get("state_key_consistency_ratio", 1.0))
        scorecard["state_key_consistency_ratio"] = round(
            (previous * observations + state_key_ratio) / (observations + 1), 6
        )
        scorecard["state_key_observations"] = observations + 1
    sessions = list(scorecard.get("sessions") or [])
    if trace_id and trace_id not in sessions:
        _bounded_append(sessions, trace_id, policy.max_sessions_tracked)
    scorecard["sessions"] = sessions
    mark = 1 if ok else 0
    windows = (("short_window", policy.short_window), ("medium_window", policy.medium_window))
    for key, limit in windows:
        window = list(scorecard.get(key) or [])
        _bounded_append(window, mark, limit)
        scorecard[key] = window
    scorecard["last_outcome_status"] = "ok" if ok else "error"
    scorecard["updated_at"] = utc_timestamp()
    return scorecard


def contract_pass_rate(scorecard: Mapping[str, Any]) -> float:
    passed = int(scorecard.get("contract_pass_count", 0))
    failed = int(scorecard.get("contract_fail_count", 0))
    if passed + failed:
        return passed / (passed + failed)
    calls = int(scorecard.get("calls", 0))
    if not calls:
        return 0.0
    return int(scorecard.get("successes", 0)) / calls


def regressed(scorecard: Mapping[str, Any], policy: PromotionPolicy) -> bool:
    window = list(scorecard.get("short_window") or [])
    if len(window) < policy.regression_min_calls:
        return False
    successes = sum(window)
    failures = len(window) - successes
    return failures / len(window) > policy.regression_failure_rate and failures > successes


def gate_failures(
    scorecard: Mapping[str, Any],
    policy: PromotionPolicy,
    incumbent: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    reasons: List[str] = []
    if int(scorecard.get("calls", 0)) < policy.min_calls:
        reasons.append("min_calls")
    if len(scorecard.get("sessions") or []) < policy.min_sessions:
        reasons.append("min_sessions")
    rate = contract_pass_rate(scorecard)
    if rate < policy.min_contract_pass_rate:
        reasons.append("contract_pass_rate")
    if incumbent is not None and rate < contract_pass_rate(incumbent):
        reasons.append("below_incumbent")
    limits = (
        ("guardrail_retry_exhausted_count", policy.max_guardrail_retry_exhausted),
        ("outcome_retry_exhausted_count", policy.max_outcome_retry_exhausted),
        ("wrong_boundary_count", policy.max_wrong_boundary_count),
        ("provenance_violation_count", policy.max_provenance_violations),
    )
    for key, limit in limits:
        if int(scorecard.get(key, 0)) > limit:
            reasons.append(key)
    ratio = float(scorecard.get("state_key_consistency_ratio", 1.0))
    if ratio < policy.min_state_key_consistency_ratio:
        reasons.append("state_key_consistency")
    return reasons


def next_state(
    state: str,
    scorecard: Mapping[str, Any],
    policy: PromotionPolicy,
    *,
    ok: bool,
    enforcement: bool,
    incumbent: Optional[Mapping[str, Any]] = None,
) -> Tuple[str, str]:
    if state == CANDIDATE:
        if ok:
            return PROBATION, "continue_probation"
        return CANDIDATE, "awaiting_productive_use"
    if state == PROBATION:
        if enforcement and not ok:
            return DEGRADED, "probation_failure"
        if regressed(scorecard, policy):
            return DEGRADED, "regression"
        if not gate_failures(scorecard, policy, incumbent):
            return DURABLE, "promotion_gate_passed"
        return PROBATION, "continue_probation"
    if state == DURABLE:
        if regressed(scorecard, policy):
            return DEGRADED, "regression"
        return DURABLE, "hold"
    # Degraded versions only leave via a fresh, fully passing observation window.
    if not gate_failures(scorecard, policy, incumbent) and not regressed(scorecard, policy):
        return PROBATION, "fresh_window_passed"
    return DEGRADED, "hold_degraded"


def new_lifecycle(policy: PromotionPolicy) -> Dict[str, Any]:
    return {
        "policy_version": policy.version,
        "incumbent_checksum": None,
        "versions": {},
        "shadow_ledger": {"evaluations": []},
    }


def prune_versions(artifact: Dict[str, Any], live: Set[str]) -> None:
    """Drop scorecards and lifecycle entries for checksums no longer kept."""
    scorecards = artifact.get("scorecards")
    if isinstance(scorecards, Mapping):
        artifact["scorecards"] = {key: value for key, value in scorecards.items() if key in live}
    lifecycle = artifact.get("lifecycle")
    if isinstance(lifecycle, Mapping):
        versions = lifecycle.get("versions")
        if isinstance(versions, Mapping):
            lifecycle = dict(lifecycle)
            lifecycle["versions"] = {key: value for key, value in versions.items() if key in live}
            artifact["lifecycle"] = lifecycle


def version_state(lifecycle: Mapping[str, Any], checksum: str) -> str:
    versions = lifecycle.get("versions") or {}
    entry = versions.get(checksum) if isinstance(versions, Mapping) else None
    if isinstance(entry, Mapping) and entry.get("state") in LIFECYCLE_STATES:
        return str(entry["state"])
    return CANDIDATE


def observe(
    artifact: Dict[str, Any],
    checksum: str,
    policy: PromotionPolicy,
    *,
    ok: bool,
    error_type: Optional[str] = None,
    contract_passed: Optional[bool] = None,
    trace_id: Optional[str] = None,
    state_key_ratio: Optional[float] = None,
    provenance_violations: int = 0,
    shadow_mode: bool = True,
    enforcement: bool = False,
) -> Dict[str, Any]:
    scorecards = artifact.setdefault("scorecards", {})
    scorecard = scorecards.setdefault(checksum, new_scorecard())
    update_scorecard(
        scorecard,
        policy,
        ok=ok,
        error_type=error_type,
        contract_passed=contract_passed,
        trace_id=trace_id,
        state_key_ratio=state_key_ratio,
        provenance_violations=provenance_violations,
    )
    lifecycle = artifact.get("lifecycle")
    if not isinstance(lifecycle, dict):
        lifecycle = new_lifecycle(policy)
        artifact["lifecycle"] = lifecycle
    lifecycle["policy_version"] = policy.version
    incumbent_checksum = lifecycle.get("incumbent_checksum")
    incumbent = None
    if incumbent_checksum and incumbent_checksum != checksum:
        incumbent = scorecards.get(incumbent_checksum)
    current = version_state(lifecycle, checksum)
    target, reason = next_state(
        current, scorecard, policy, ok=ok, enforcement=enforcement, incumbent=incumbent
    )
    versions = lifecycle.setdefault("versions", {})
    entry = dict(versions.get(checksum) or {})
    if target != current or not entry:
        entry.update(
            state=target,
            reason=reason,
            updated_at=utc_timestamp(),
            policy_version=policy.version,
        )
        versions[checksum] = entry
    if target != current:
        logger.info("artifact version %s: %s -> %s (%s)", checksum[:19], current, target, reason)
    if target == DURABLE:
        lifecycle["incumbent_checksum"] = checksum
    elif target == DEGRADED and current != DEGRADED:
        # The next promotion must be earned on a fresh observation window.
        scorecards[checksum] = new_scorecard()
        if lifecycle.get("incumbent_checksum") == checksum:
            lifecycle["incumbent_checksum"] = None
    evaluation = {
        "evaluated_at": utc_timestamp(),
        "checksum": checksum,
        "from_state": current,
        "to_state": target,
        "reason": reason,
        "mode": "enforced" if enforcement else "shadow",
        "policy_version": policy.version,
    }
    if shadow_mode or enforcement:
        ledger = lifecycle.setdefault("shadow_ledger", {"evaluations": []})
        evaluations = list(ledger.get("evaluations") or [])
        _bounded_append(evaluations, evaluation, policy.max_shadow_evaluations)
        ledger["evaluations"] = evaluations
    return evaluation


def rank_versions(artifact: Mapping[str, Any]) -> List[str]:
    lifecycle = artifact.get("lifecycle")
    versions = artifact.get("versions") or {}
    if not isinstance(lifecycle, Mapping) or not isinstance(versions, Mapping):
        checksum = artifact.get("code_checksum")
        return [checksum] if isinstance(checksum, str) else []
    ordered: List[str] = []
    incumbent = lifecycle.get("incumbent_checksum")
    if isinstance(incumbent, str) and incumbent in versions:
        if version_state(lifecycle, incumbent) == DURABLE:
            ordered.append(incumbent)
    current = artifact.get("code_checksum")
    for tier in SELECTION_TIERS:
        tier_members = [
            checksum
            for checksum in versions
            if checksum not in ordered and version_state(lifecycle, checksum) == tier
        ]
        # Current version first within a tier, then by checksum for a stable order.
        tier_members.sort(key=lambda checksum: (checksum != current, checksum))
        ordered.extend(tier_members)
    return ordered
