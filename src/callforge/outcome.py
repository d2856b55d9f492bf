from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from .errors import GenerationTimeoutError, ProviderError

EXTRINSIC_FAILURE_TYPES = frozenset(
    {
        "timeout",
        "provider",
        "network_error",
        "rate_limit",
        "rate_limited",
        "environment_preparing",
        "worker_crash",
        "dependency_resolution_failed",
        "dependency_install_failed",
        "dependency_activation_failed",
    }
)

ADAPTIVE_FAILURE_TYPES = frozenset(
    {
        "parse_error",
        "parse_failed",
        "low_utility",
        "wrong_tool_boundary",
        "missing_input",
        "invalid_format",
        "schema_mismatch",
        "contract_violation",
        "guardrail_retry_exhausted",
        "outcome_repair_retry_exhausted",
    }
)

STATUS_OK = "ok"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class Outcome:
    status: str
    value: Any = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    retriable: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    tool_role: Optional[str] = None
    method_name: Optional[str] = None

    @classmethod
    def ok(
        cls,
        value: Any = None,
        *,
        tool_role: Optional[str] = None,
        method_name: Optional[str] = None,
    ) -> "Outcome":
        return cls(status=STATUS_OK, value=value, tool_role=tool_role, method_name=method_name)

    @classmethod
    def error(
        cls,
        error_type: str,
        error_message: str = "",
        *,
        retriable: bool = False,
        metadata: Optional[Mapping[str, Any]] = None,
        tool_role: Optional[str] = None,
        method_name: Optional[str] = None,
    ) -> "Outcome":
        return cls(
            status=STATUS_ERROR,
            error_type=str(error_type or "execution"),
            error_message=str(error_message or ""),
            retriable=bool(retriable),
            metadata=dict(metadata or {}),
            tool_role=tool_role,
            method_name=method_name,
        )

    @property
    def is_ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def is_error(self) -> bool:
        return self.status == STATUS_ERROR

    def bind(self, tool_role: Optional[str], method_name: Optional[str]) -> "Outcome":
        return replace(
            self,
            tool_role=self.tool_role or tool_role,
            method_name=self.method_name or method_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.is_ok:
            return {
                "status": STATUS_OK,
                "value": self.value,
                "tool_role": self.tool_role,
                "method_name": self.method_name,
            }
        return {
            "status": STATUS_ERROR,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "retriable": self.retriable,
            "metadata": dict(self.metadata),
            "tool_role": self.tool_role,
            "method_name": self.method_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Outcome":
        if data.get("status") == STATUS_OK:
            return cls.ok(
                data.get("value"),
                tool_role=data.get("tool_role"),
                method_name=data.get("method_name"),
            )
        return cls.error(
            str(data.get("error_type") or "execution"),
            str(data.get("error_message") or ""),
            retriable=bool(data.get("retriable", False)),
            metadata=data.get("metadata") if isinstance(data.get("metadata"), Mapping) else None,
            tool_role=data.get("tool_role"),
            method_name=data.get("method_name"),
        )


def _error_shaped(value: Mapping[str, Any]) -> bool:
    status = value.get("status")
    if status == STATUS_ERROR:
        return True
    if status not in (None, STATUS_ERROR):
        return False
    return "error_type" in value and ("error_message" in value or "message" in value)


def _ok_shaped(value: Mapping[str, Any]) -> bool:
    return value.get("status") == STATUS_OK and set(value.keys()) <= {
        "status",
        "value",
        "tool_role",
        "method_name",
    }


def coerce_outcome(
    raw: Any,
    *,
    tool_role: Optional[str] = None,
    method_name: Optional[str] = None,
) -> Outcome:
    if isinstance(raw, Outcome):
        return raw.bind(tool_role, method_name)
    if isinstance(raw, Mapping) and all(isinstance(key, str) for key in raw):
        if _error_shaped(raw):
            message = raw.get("error_message", raw.get("message", ""))
            metadata = raw.get("metadata")
            return Outcome.error(
                str(raw.get("error_type") or "execution"),
                str(message or ""),
                retriable=bool(raw.get("retriable", False)),
                metadata=metadata if isinstance(metadata, Mapping) else None,
                tool_role=tool_role,
                method_name=method_name,
            )
        if _ok_shaped(raw):
            return Outcome.ok(raw.get("value"), tool_role=tool_role, method_name=method_name)
    return Outcome.ok(raw, tool_role=tool_role, method_name=method_name)


def failure_class_for(
    outcome: Optional[Outcome] = None, error: Optional[BaseException] = None
) -> str:
    error_type = None
    if outcome is not None and outcome.is_error:
        error_type = outcome.error_type
    elif error is not None:
        error_type = getattr(error, "error_type", None)
    if not error_type:
        if isinstance(error, (GenerationTimeoutError, ProviderError, TimeoutError)):
            return "extrinsic"
        return "intrinsic"
    if error_type in EXTRINSIC_FAILURE_TYPES:
        return "extrinsic"
    if error_type in ADAPTIVE_FAILURE_TYPES:
        return "adaptive"
    return "intrinsic"
