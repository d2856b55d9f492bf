from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from . import promotion
from .artifacts import TRIGGER_INITIAL, TRIGGER_REGENERATE, ArtifactSelection, repair_trigger_for
from .attempts import (
    STAGE_CONTRACT,
    STAGE_EXECUTION,
    STAGE_GUARDRAIL,
    STAGE_OUTCOME_POLICY,
    STAGE_VALIDATION,
    AttemptIsolation,
    AttemptRecord,
)
from .contract import contract_fingerprint, state_key_continuity, validate_outcome
from .dependencies import ensure_additive, manifest_from_records
from .errors import (
    CallForgeError,
    DependencyManifestIncompatibleError,
    DependencyPolicyViolationError,
    ExecutionError,
    GuardrailRetryExhaustedError,
    GuardrailViolationError,
    InvalidDependencyManifestError,
    NonSerializableResultError,
    OutcomeRepairRetryExhaustedError,
    WorkerCrashError,
    error_type_for,
)
from .generator import CodeGenerationRequest, build_prompts, generate_program_with_retry
from .guardrails import (
    GuardrailViolation,
    continuity_violation,
    exhaustion_metadata,
    normalize_boundary_outcome,
)
from .outcome import Outcome, coerce_outcome, failure_class_for
from .program import ORIGIN_REPAIRED, GeneratedProgram, reads_call_inputs
from .sandbox import Delegator
from .utils import monotonic_ms, to_jsonable, utc_timestamp
from .worker.protocol import decode_value, ensure_serializable

if TYPE_CHECKING:
    from .config import Settings
    from .runtime import Runtime

logger = logging.getLogger(__name__)

FATAL_DEPENDENCY_ERRORS = (
    InvalidDependencyManifestError,
    DependencyManifestIncompatibleError,
    DependencyPolicyViolationError,
)


def new_call_id() -> str:
    return secrets.token_hex(8)


def _error_outcome(exc: CallForgeError) -> Outcome:
    return Outcome.error(
        exc.error_type, exc.message, retriable=exc.retriable, metadata=exc.metadata
    )


@dataclass(frozen=True)
class Invocation:
    role: str
    method_name: str
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    depth: int = 0
    trace_id: str = field(default_factory=new_call_id)
    call_id: str = field(default_factory=new_call_id)
    parent_call_id: Optional[str] = None
    contract: Optional[Dict[str, Any]] = None

    def call_info(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "method_name": self.method_name,
            "depth": self.depth,
            "trace_id": self.trace_id,
            "call_id": self.call_id,
            "parent_call_id": self.parent_call_id,
        }


@dataclass
class CallState:
    program_source: Optional[str] = None
    code: Optional[str] = None
    dependencies: List[Dict[str, str]] = field(default_factory=list)
    executed: bool = False
    execution_mode: Optional[str] = None
    artifact_trigger: Optional[str] = None
    artifact_checksum: Optional[str] = None
    lifecycle_state: Optional[str] = None
    promotion: Optional[Dict[str, Any]] = None
    cache_hit: bool = False
    cacheable: Optional[bool] = None
    cacheability_reason: Optional[str] = None
    repair_attempted: bool = False
    failure_class: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
    worker_pid: Optional[int] = None
    worker_restart_count: Optional[int] = None
    contract_applied: bool = False
    contract_passed: Optional[bool] = None
    contract_metadata: Dict[str, Any] = field(default_factory=dict)
    previous_state_keys: List[str] = field(default_factory=list)
    state_key_ratio: Optional[float] = None
    state_keys_missing: List[str] = field(default_factory=list)
    provenance_violations: int = 0


@dataclass
class AttemptResult:
    outcome: Optional[Outcome] = None
    context: Optional[Dict[str, Any]] = None
    violation: Optional[GuardrailViolation] = None
    error: Optional[ExecutionError] = None


class AttemptLifecycleController:
    def __init__(self, runtime: "Runtime") -> None:
        self.runtime = runtime

    @property
    def settings(self) -> "Settings":
        return self.runtime.settings

    def invoke(self, invocation: Invocation, context: Dict[str, Any]) -> Outcome:
        started = time.monotonic()
        state = CallState()
        attempts = AttemptRecord(
            max_failures=self.settings.max_attempt_failures_recorded,
            max_message_length=self.settings.max_failure_message_length,
        )
        self._hydrate_tools(context)
        isolation = AttemptIsolation(context, self.runtime.registry.path)
        try:
            outcome = self._resolve(invocation, isolation, state, attempts)
        except CallForgeError as exc:
            isolation.rollback()
            attempts.record_failure(
                getattr(exc, "stage", STAGE_VALIDATION), exc.error_type, exc.message
            )
            outcome = _error_outcome(exc)
        except Exception as exc:  # noqa: BLE001
            isolation.rollback()
            logger.warning(
                "unexpected failure in %s.%s",
                invocation.role,
                invocation.method_name,
                exc_info=True,
            )
            message = f"{exc.__class__.__name__}: {exc}"
            error_type = error_type_for(exc)
            attempts.record_failure(STAGE_EXECUTION, error_type, message)
            outcome = Outcome.error(error_type, message, retriable=False)
        outcome = outcome.bind(invocation.role, invocation.method_name)
        outcome = normalize_boundary_outcome(outcome, invocation.depth)
        attempts.stage = "completed"
        self.runtime.call_log.emit(
            self._call_record(invocation, outcome, state, attempts, monotonic_ms(started))
        )
        return outcome

    def _hydrate_tools(self, context: Dict[str, Any]) -> None:
        persisted = self.runtime.registry.load()
        if not persisted:
            return
        current = context.get("tools")
        merged = dict(persisted)
        if isinstance(current, Mapping):
            merged.update(current)
        context["tools"] = merged

    def _resolve(
        self,
        invocation: Invocation,
        isolation: AttemptIsolation,
        state: CallState,
        attempts: AttemptRecord,
    ) -> Outcome:
        store = self.runtime.artifacts
        cacheable, reason = self._cacheability(invocation.method_name)
        state.cacheable = cacheable
        state.cacheability_reason = reason
        fingerprint = contract_fingerprint(invocation.contract)
        existing = store.load(invocation.role, invocation.method_name)
        trigger = TRIGGER_INITIAL
        if existing is not None:
            trigger = TRIGGER_REGENERATE
            state.previous_state_keys = list(existing.get("last_state_keys") or [])
            self._seed_manifest(invocation.role, existing)
        if cacheable:
            selection = store.select(
                invocation.role,
                invocation.method_name,
                runtime_version=self.settings.runtime_version,
                contract_fingerprint=fingerprint,
                enforcement=self.settings.promotion_enforcement_enabled,
            )
            if selection is not None:
                resolved = self._run_persisted(selection, invocation, isolation, state, attempts)
                if resolved is not None:
                    return resolved
                existing = store.load(invocation.role, invocation.method_name)
        return self._run_fresh(invocation, isolation, state, attempts, existing, trigger)

    def _cacheability(self, method_name: str) -> Tuple[bool, str]:
        if method_name in self.settings.dynamic_dispatch_methods:
            return False, "dynamic_dispatch_method"
        return True, "stable_method"

    def _seed_manifest(self, role: str, artifact: Mapping[str, Any]) -> None:
        if self.runtime.role_manifest(role):
            return
        try:
            manifest = manifest_from_records(artifact.get("dependencies"))
        except InvalidDependencyManifestError:
            return
        if manifest:
            self.runtime.remember_manifest(role, manifest)

    def _run_persisted(
        self,
        selection: ArtifactSelection,
        invocation: Invocation,
        isolation: AttemptIsolation,
        state: CallState,
        attempts: AttemptRecord,
    ) -> Optional[Outcome]:
        state.program_source = "persisted"
        state.cache_hit = True
        state.artifact_checksum = selection.checksum
        state.lifecycle_state = selection.lifecycle_state
        working = isolation.begin()
        result = self._attempt(selection.program, invocation, working, state)
        if result.outcome is not None:
            outcome = result.outcome
            failure_class = None if outcome.is_ok else failure_class_for(outcome)
            if failure_class != "adaptive":
                isolation.commit(result.context or working)
                state.failure_class = failure_class
                self._finalize(
                    selection.artifact,
                    selection.program,
                    outcome,
                    invocation,
                    state,
                    checksum=selection.checksum,
                )
                return outcome
            attempts.record_failure(
                STAGE_OUTCOME_POLICY,
                outcome.error_type or "execution",
                outcome.error_message or "",
                error_class=failure_class,
            )
            message = outcome.error_message or ""
            error_type = outcome.error_type
        else:
            error = self._attempt_error(result)
            failure_class = failure_class_for(error=error)
            self._record_attempt_failure(attempts, result, error)
            if failure_class == "extrinsic":
                isolation.rollback()
                state.failure_class = failure_class
                self._record_persisted_failure(selection, invocation, state, failure_class, error)
                return Outcome.error(
                    error.error_type,
                    error.message,
                    retriable=error.retriable,
                    metadata=error.metadata,
                )
            message = error.message
            error_type = error.error_type
        isolation.rollback()
        state.failure_class = failure_class
        failure = Outcome.error(error_type or "execution", message)
        self._record_persisted_failure(selection, invocation, state, failure_class, failure)
        repairs = int(selection.artifact.get("repair_count_since_regen", 0))
        if repairs >= self.settings.max_repairs_before_regen:
            logger.info(
                "repair budget spent for %s.%s; regenerating",
                invocation.role,
                invocation.method_name,
            )
            return None
        attempts.next_attempt()
        return self._repair(
            selection, invocation, isolation, state, attempts, failure_class, message
        )

    def _record_persisted_failure(
        self,
        selection: ArtifactSelection,
        invocation: Invocation,
        state: CallState,
        failure_class: str,
        failure: Any,
    ) -> None:
        error_type = getattr(failure, "error_type", None)
        message = getattr(failure, "error_message", None) or getattr(failure, "message", "")
        artifact = selection.artifact
        self.runtime.artifacts.record_execution(
            artifact, ok=False, failure_class=failure_class, error_message=message
        )
        evaluation = promotion.observe(
            artifact,
            selection.checksum,
            self.settings.promotion_policy,
            ok=False,
            error_type=error_type,
            trace_id=invocation.trace_id,
            shadow_mode=self.settings.promotion_shadow_mode_enabled,
            enforcement=self.settings.promotion_enforcement_enabled,
        )
        state.promotion = evaluation
        state.lifecycle_state = evaluation["to_state"]
        self._save(artifact)

    def _repair(
        self,
        selection: ArtifactSelection,
        invocation: Invocation,
        isolation: AttemptIsolation,
        state: CallState,
        attempts: AttemptRecord,
        failure_class: str,
        message: str,
    ) -> Optional[Outcome]:
        state.repair_attempted = True
        feedback = {"repair": {"failure_class": failure_class, "failure_message": message}}
        request = self._request(invocation, feedback, existing_code=selection.program.code)
        try:
            program, used = generate_program_with_retry(
                self.runtime.generator,
                request,
                self.settings.max_generation_attempts,
                origin=ORIGIN_REPAIRED,
            )
        except CallForgeError as exc:
            attempts.generation_attempts += int(exc.metadata.get("generation_attempts", 1))
            attempts.record_failure(STAGE_VALIDATION, exc.error_type, exc.message)
            if isinstance(exc, FATAL_DEPENDENCY_ERRORS):
                raise
            attempts.next_attempt()
            return None
        attempts.generation_attempts += used
        state.program_source = "repaired"
        state.cache_hit = False
        working = isolation.begin()
        result = self._attempt(program, invocation, working, state)
        if result.outcome is not None and result.outcome.is_ok:
            isolation.commit(result.context or working)
            state.failure_class = None
            trigger = repair_trigger_for(failure_class)
            artifact = self._record_generation(
                selection.artifact, program, invocation, state, trigger, attempts
            )
            self._finalize(artifact, program, result.outcome, invocation, state)
            return result.outcome
        if result.outcome is not None:
            attempts.record_failure(
                STAGE_OUTCOME_POLICY,
                result.outcome.error_type or "execution",
                result.outcome.error_message or "",
            )
        else:
            self._record_attempt_failure(attempts, result, self._attempt_error(result))
        isolation.rollback()
        attempts.next_attempt()
        logger.info("repair of %s.%s failed; regenerating", invocation.role, invocation.method_name)
        return None

    def _run_fresh(
        self,
        invocation: Invocation,
        isolation: AttemptIsolation,
        state: CallState,
        attempts: AttemptRecord,
        existing: Optional[Dict[str, Any]],
        trigger: str,
    ) -> Outcome:
        settings = self.settings
        feedback: Dict[str, Any] = {}
        guardrail_attempts = 0
        execution_repairs = 0
        outcome_repairs = 0
        while True:
            request = self._request(invocation, feedback)
            try:
                program, used = generate_program_with_retry(
                    self.runtime.generator, request, settings.max_generation_attempts
                )
            except CallForgeError as exc:
                attempts.generation_attempts += int(exc.metadata.get("generation_attempts", 1))
                attempts.record_failure(STAGE_VALIDATION, exc.error_type, exc.message)
                isolation.rollback()
                return _error_outcome(exc)
            attempts.generation_attempts += used
            state.program_source = "fresh"
            state.cache_hit = False
            working = isolation.begin()
            result = self._attempt(program, invocation, working, state)

            if result.violation is not None:
                violation = result.violation
                self._record_attempt_failure(attempts, result, violation.to_error())
                isolation.rollback()
                if not violation.recoverable:
                    return Outcome.error(
                        violation.violation_type,
                        violation.message,
                        retriable=False,
                        metadata=violation.to_record(),
                    )
                guardrail_attempts += 1
                attempts.guardrail_recovery_attempts = guardrail_attempts
                remaining = settings.guardrail_recovery_budget - guardrail_attempts
                if remaining < 0:
                    return _error_outcome(
                        GuardrailRetryExhaustedError(
                            f"Recoverable guardrail retries exhausted for "
                            f"{invocation.role}.{invocation.method_name}",
                            metadata=exhaustion_metadata(violation, guardrail_attempts),
                        )
                    )
                feedback = {
                    "guardrail": dict(
                        violation.to_record(),
                        attempt_number=attempts.attempt_id + 1,
                        remaining_budget=remaining,
                    )
                }
                attempts.next_attempt()
                continue

            if result.error is not None:
                error = result.error
                self._record_attempt_failure(attempts, result, error)
                isolation.rollback()
                if execution_repairs < settings.fresh_execution_repair_budget and not (
                    error.metadata.get("terminal")
                ):
                    execution_repairs += 1
                    attempts.execution_repair_attempts = execution_repairs
                    feedback = {
                        "execution": {
                            "error_type": error.error_type,
                            "error_message": error.message,
                            "root_error_class": error.root_error_class,
                            "failure_location": error.metadata.get("failure_location"),
                        }
                    }
                    attempts.next_attempt()
                    continue
                retriable = error.retriable if isinstance(error, WorkerCrashError) else False
                return Outcome.error(
                    error.error_type, error.message, retriable=retriable, metadata=error.metadata
                )

            outcome = result.outcome
            assert outcome is not None
            if (
                outcome.is_error
                and outcome.retriable
                and failure_class_for(outcome) != "extrinsic"
            ):
                if outcome_repairs < settings.fresh_outcome_repair_budget:
                    attempts.record_failure(
                        STAGE_OUTCOME_POLICY,
                        outcome.error_type or "execution",
                        outcome.error_message or "",
                    )
                    isolation.rollback()
                    outcome_repairs += 1
                    attempts.outcome_repair_attempts = outcome_repairs
                    feedback = {
                        "outcome": {
                            "error_type": outcome.error_type,
                            "error_message": outcome.error_message,
                            "remaining_budget": settings.fresh_outcome_repair_budget
                            - outcome_repairs,
                        }
                    }
                    attempts.next_attempt()
                    continue
                outcome = _error_outcome(
                    OutcomeRepairRetryExhaustedError(
                        f"Outcome repair retries exhausted for "
                        f"{invocation.role}.{invocation.method_name}: {outcome.error_message}",
                        metadata={
                            "outcome_repair_attempts": outcome_repairs,
                            "last_error_type": outcome.error_type,
                            "last_error_message": outcome.error_message,
                        },
                    )
                )
            isolation.commit(result.context or working)
            state.failure_class = None if outcome.is_ok else failure_class_for(outcome)
            if outcome.is_error and outcome.error_type == "contract_violation":
                attempts.record_failure(
                    STAGE_CONTRACT, "contract_violation", outcome.error_message or ""
                )
            artifact = self._record_generation(
                existing, program, invocation, state, trigger, attempts
            )
            self._finalize(artifact, program, outcome, invocation, state)
            return outcome

    def _attempt(
        self,
        program: GeneratedProgram,
        invocation: Invocation,
        working: Dict[str, Any],
        state: CallState,
    ) -> AttemptResult:
        state.code = program.code
        state.dependencies = program.dependency_records()
        state.executed = False
        guardrails = self.runtime.guardrails
        violation = guardrails.evaluate_code(program.code)
        if violation is not None:
            return AttemptResult(violation=violation)
        try:
            value = self._execute(program, invocation, working, state)
        except GuardrailViolationError as exc:
            return AttemptResult(violation=exc.violation)
        except ExecutionError as exc:
            return AttemptResult(error=exc)
        state.executed = True
        violation = guardrails.evaluate_state(working)
        if violation is not None:
            return AttemptResult(violation=violation)
        outcome = coerce_outcome(
            value, tool_role=invocation.role, method_name=invocation.method_name
        )
        violation = guardrails.evaluate_outcome(program.code, outcome)
        if violation is not None:
            if violation.subtype == "missing_external_provenance":
                state.provenance_violations += 1
            return AttemptResult(violation=violation)
        outcome, validation = validate_outcome(
            outcome, invocation.contract, invocation.args, invocation.kwargs
        )
        state.contract_applied = validation is not None
        state.contract_passed = validation.valid if validation is not None else None
        state.contract_metadata = dict(validation.metadata) if validation is not None else {}
        if outcome.is_ok:
            ratio, missing = state_key_continuity(
                invocation.contract, state.previous_state_keys, outcome.value
            )
            state.state_key_ratio = ratio
            state.state_keys_missing = missing
            if missing:
                declared = bool((invocation.contract or {}).get("state_keys"))
                if self.settings.continuity_enforcement_enabled and declared:
                    return AttemptResult(violation=continuity_violation(missing))
                logger.info(
                    "%s.%s dropped state keys %s",
                    invocation.role,
                    invocation.method_name,
                    ", ".join(missing),
                )
        return AttemptResult(outcome=outcome, context=working)

    def _execute(
        self,
        program: GeneratedProgram,
        invocation: Invocation,
        working: Dict[str, Any],
        state: CallState,
    ) -> Any:
        args = list(invocation.args)
        kwargs = dict(invocation.kwargs)
        if not program.has_dependencies:
            state.execution_mode = "sandbox"
            result = self.runtime.sandbox.execute(
                program,
                role=invocation.role,
                context=working,
                call=invocation.call_info(),
                args=args,
                kwargs=kwargs,
                delegator=self._delegator(invocation),
            )
            return result.value
        state.execution_mode = "worker"
        manifest = list(program.dependencies)
        ensure_additive(self.runtime.role_manifest(invocation.role), manifest)
        env = self.runtime.environments.prepare(manifest)
        state.env = env.to_record()
        ensure_serializable(args, "args")
        ensure_serializable(kwargs, "kwargs")
        ensure_serializable(working, "context snapshot")
        payload = {
            "role": invocation.role,
            "code": program.code,
            "call": invocation.call_info(),
            "args": args,
            "kwargs": kwargs,
            "context_snapshot": working,
        }
        response = self.runtime.supervisor.execute(
            env.env_id, env.site_dir, payload, self.settings.worker_timeout_seconds
        )
        state.worker_pid = response.get("worker_pid")
        state.worker_restart_count = response.get("worker_restart_count")
        if response.get("status") != "ok":
            raise _worker_failure(response)
        snapshot = response.get("context_snapshot")
        if isinstance(snapshot, dict):
            working.clear()
            working.update(snapshot)
        self.runtime.remember_manifest(invocation.role, manifest)
        return decode_value(response.get("value"))

    def _delegator(self, invocation: Invocation) -> Delegator:
        runtime = self.runtime

        def delegate(
            role: str,
            purpose: Optional[str],
            methods: Optional[List[str]],
            deliverable: Optional[Dict[str, Any]],
        ):
            try:
                runtime.registry.register(role, purpose=purpose, methods=methods)
            except OSError as exc:
                logger.warning("could not register delegated tool %s: %s", role, exc)
            child = runtime.agent(
                role,
                deliverable=deliverable,
                depth=invocation.depth + 1,
                trace_id=invocation.trace_id,
                parent_call_id=invocation.call_id,
            )

            def dispatch(
                child_role: str, method_name: str, args: List[Any], kwargs: Dict[str, Any]
            ) -> Outcome:
                outcome = child.call(method_name, *args, **kwargs)
                artifact = runtime.artifacts.load(child_role, method_name) or {}
                lifecycle = artifact.get("lifecycle") or {}
                checksum = artifact.get("code_checksum")
                try:
                    runtime.registry.touch_usage(
                        child_role,
                        method_name=method_name,
                        outcome=outcome,
                        artifact_checksum=checksum,
                        lifecycle_state=(
                            promotion.version_state(lifecycle, checksum)
                            if lifecycle and checksum
                            else None
                        ),
                    )
                except OSError as exc:
                    logger.warning("could not record usage for %s: %s", child_role, exc)
                return outcome

            return dispatch

        return delegate

    def _request(
        self,
        invocation: Invocation,
        feedback: Dict[str, Any],
        existing_code: Optional[str] = None,
    ) -> CodeGenerationRequest:
        args = list(invocation.args)
        kwargs = dict(invocation.kwargs)
        system_prompt, user_prompt = build_prompts(
            invocation.role,
            invocation.method_name,
            args,
            kwargs,
            feedback=feedback,
            existing_code=existing_code,
            contract=invocation.contract,
        )
        return CodeGenerationRequest(
            role=invocation.role,
            method_name=invocation.method_name,
            model=self.settings.model,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            timeout_seconds=self.settings.provider_timeout_seconds,
            args=args,
            kwargs=kwargs,
            feedback=dict(feedback),
            existing_code=existing_code,
            contract=invocation.contract,
            depth=invocation.depth,
        )

    def _attempt_error(self, result: AttemptResult) -> CallForgeError:
        if result.error is not None:
            return result.error
        assert result.violation is not None
        return result.violation.to_error()

    def _record_attempt_failure(
        self, attempts: AttemptRecord, result: AttemptResult, error: CallForgeError
    ) -> None:
        if result.violation is not None:
            violation = result.violation
            attempts.record_failure(
                STAGE_GUARDRAIL,
                violation.violation_type,
                violation.message,
                error_class=violation.subtype,
                details={"guardrail_class": violation.guardrail_class},
            )
            return
        details = {}
        location = error.metadata.get("failure_location")
        if location:
            details["failure_location"] = location
        attempts.record_failure(
            getattr(error, "stage", STAGE_EXECUTION),
            error.error_type,
            error.message,
            error_class=getattr(error, "root_error_class", None),
            details=details,
        )

    def _record_generation(
        self,
        existing: Optional[Dict[str, Any]],
        program: GeneratedProgram,
        invocation: Invocation,
        state: CallState,
        trigger: str,
        attempts: AttemptRecord,
    ) -> Dict[str, Any]:
        state.artifact_trigger = trigger
        return self.runtime.artifacts.record_generation(
            existing,
            role=invocation.role,
            method_name=invocation.method_name,
            program=program,
            trigger=trigger,
            model=self.settings.model,
            prompt_version=self.settings.prompt_version,
            runtime_version=self.settings.runtime_version,
            contract_fingerprint=contract_fingerprint(invocation.contract),
            cacheable=bool(state.cacheable),
            cacheability_reason=state.cacheability_reason or "stable_method",
            input_sensitive=reads_call_inputs(program.code),
            failure=attempts.latest_failure,
        )

    def _finalize(
        self,
        artifact: Dict[str, Any],
        program: GeneratedProgram,
        outcome: Outcome,
        invocation: Invocation,
        state: CallState,
        checksum: Optional[str] = None,
    ) -> None:
        if not state.executed:
            return
        checksum = checksum or program.checksum
        self.runtime.artifacts.record_execution(
            artifact,
            ok=outcome.is_ok,
            failure_class=state.failure_class,
            error_message=outcome.error_message,
        )
        if outcome.is_ok and isinstance(outcome.value, Mapping):
            artifact["last_state_keys"] = sorted(str(key) for key in outcome.value)
        evaluation = promotion.observe(
            artifact,
            checksum,
            self.settings.promotion_policy,
            ok=outcome.is_ok,
            error_type=outcome.error_type,
            contract_passed=state.contract_passed,
            trace_id=invocation.trace_id,
            state_key_ratio=state.state_key_ratio,
            provenance_violations=state.provenance_violations,
            shadow_mode=self.settings.promotion_shadow_mode_enabled,
            enforcement=self.settings.promotion_enforcement_enabled,
        )
        state.promotion = evaluation
        state.lifecycle_state = evaluation["to_state"]
        state.artifact_checksum = checksum
        self._save(artifact)

    def _save(self, artifact: Dict[str, Any]) -> None:
        try:
            self.runtime.artifacts.save(artifact)
        except OSError as exc:
            logger.warning(
                "could not persist artifact %s.%s: %s",
                artifact.get("role"),
                artifact.get("method_name"),
                exc,
            )

    def _call_record(
        self,
        invocation: Invocation,
        outcome: Outcome,
        state: CallState,
        attempts: AttemptRecord,
        duration_ms: float,
    ) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "timestamp": utc_timestamp(),
            "runtime": self.settings.runtime_version,
            "model": self.settings.model,
            "role": invocation.role,
            "method": invocation.method_name,
            "args": to_jsonable(list(invocation.args)),
            "kwargs": to_jsonable(dict(invocation.kwargs)),
            "code": state.code,
            "dependencies": state.dependencies,
            "program_source": state.program_source,
            "execution_mode": state.execution_mode,
            "duration_ms": duration_ms,
            "trace_id": invocation.trace_id,
            "call_id": invocation.call_id,
            "parent_call_id": invocation.parent_call_id,
            "depth": invocation.depth,
            "worker_pid": state.worker_pid,
            "worker_restart_count": state.worker_restart_count,
            "outcome_status": outcome.status,
            "outcome_retriable": outcome.retriable,
            "outcome_error_type": outcome.error_type,
            "outcome_error_message": outcome.error_message,
            "outcome_metadata": to_jsonable(outcome.metadata),
            "contract_applied": state.contract_applied,
            "contract_passed": state.contract_passed,
            "contract_mismatch": state.contract_metadata.get("mismatch"),
            "cacheable": state.cacheable,
            "cacheability_reason": state.cacheability_reason,
            "cache_hit": state.cache_hit,
            "repair_attempted": state.repair_attempted,
            "failure_class": state.failure_class,
            "artifact_trigger": state.artifact_trigger,
            "artifact_checksum": state.artifact_checksum,
            "lifecycle_state": state.lifecycle_state,
            "promotion_reason": (state.promotion or {}).get("reason"),
            "state_key_consistency_ratio": state.state_key_ratio,
            "state_keys_missing": state.state_keys_missing,
        }
        record.update(state.env)
        record.update(attempts.to_record())
        return record


def _worker_failure(response: Mapping[str, Any]) -> CallForgeError:
    message = str(response.get("error_message") or "worker reported a failure")
    violation = response.get("violation")
    if isinstance(violation, Mapping):
        return GuardrailViolationError(GuardrailViolation.from_record(violation))
    if response.get("error_type") == NonSerializableResultError.error_type:
        return NonSerializableResultError(message, stage="execution")
    metadata = {}
    if response.get("failure_location"):
        metadata["failure_location"] = response["failure_location"]
    return ExecutionError(
        message,
        metadata=metadata,
        stage="execution",
        root_error_class=response.get("root_error_class"),
    )
