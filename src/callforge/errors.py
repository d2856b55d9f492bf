from __future__ import annotations

from typing import Any, Dict, Optional

RETRIABLE_ERROR_TYPES = frozenset(
    {
        "timeout",
        "provider",
        "invalid_code",
        "dependency_install_failed",
        "dependency_activation_failed",
        "environment_preparing",
        "worker_crash",
    }
)


class CallForgeError(Exception):
    error_type = "execution"

    def __init__(self, message: str = "", metadata: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.metadata: Dict[str, Any] = dict(metadata or {})

    @property
    def retriable(self) -> bool:
        if self.metadata.get("terminal"):
            return False
        return self.error_type in RETRIABLE_ERROR_TYPES


class ProviderError(CallForgeError):
    error_type = "provider"


class GenerationTimeoutError(ProviderError):
    error_type = "timeout"


class InvalidCodeError(CallForgeError):
    error_type = "invalid_code"


class InvalidDependencyManifestError(CallForgeError):
    error_type = "invalid_dependency_manifest"


class DependencyManifestIncompatibleError(CallForgeError):
    error_type = "dependency_manifest_incompatible"


class DependencyPolicyViolationError(CallForgeError):
    error_type = "dependency_policy_violation"


class DependencyInstallError(CallForgeError):
    error_type = "dependency_install_failed"


class DependencyActivationError(CallForgeError):
    error_type = "dependency_activation_failed"


class ExecutionError(CallForgeError):
    error_type = "execution"

    def __init__(
        self,
        message: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        stage: str = "execution",
        root_error_class: Optional[str] = None,
    ) -> None:
        super().__init__(message, metadata)
        self.stage = stage
        self.root_error_class = root_error_class


class NonSerializableResultError(ExecutionError):
    error_type = "non_serializable_result"


class WorkerCrashError(ExecutionError):
    error_type = "worker_crash"


class WorkerTimeoutError(WorkerCrashError):
    error_type = "timeout"


class GuardrailViolationError(CallForgeError):
    error_type = "guardrail_violation"

    def __init__(self, violation: Any) -> None:
        super().__init__(violation.message, violation.to_record())
        self.violation = violation


class ToolRegistryViolationError(GuardrailViolationError):
    error_type = "tool_registry_violation"


class GuardrailRetryExhaustedError(CallForgeError):
    error_type = "guardrail_retry_exhausted"


class OutcomeRepairRetryExhaustedError(CallForgeError):
    error_type = "outcome_repair_retry_exhausted"


def error_type_for(error: BaseException) -> str:
    if isinstance(error, CallForgeError):
        return error.error_type
    if isinstance(error, TimeoutError):
        return "timeout"
    return "execution"
