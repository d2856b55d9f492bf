from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .outcome import Outcome
from .utils import stable_hash

LOW_UTILITY_SUCCESS_STATUSES = frozenset(
    {
        "success_no_parse",
        "success_but_unusable",
        "partial_success_unusable",
        "empty_result",
        "no_useful_result",
        "low_utility",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


@dataclass
class ContractValidation:
    valid: bool
    value: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def mismatch(self) -> Optional[str]:
        return self.metadata.get("mismatch")


def contract_fingerprint(contract: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not contract:
        return None
    return stable_hash(dict(contract))


def deliverable_of(contract: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if not isinstance(contract, Mapping):
        return None
    deliverable = contract.get("deliverable", contract)
    return deliverable if isinstance(deliverable, Mapping) else None


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", key).replace("-", "_").lower()


def _camel(key: str) -> str:
    head, *rest = _snake(key).split("_")
    return head + "".join(part.capitalize() for part in rest)


def key_variants(key: str) -> List[Any]:
    variants: List[Any] = [key]
    for candidate in (_snake(key), _camel(key)):
        if candidate not in variants:
            variants.append(candidate)
    variants.extend(variant.encode("utf-8") for variant in list(variants))
    return variants


def tolerant_lookup(value: Mapping[Any, Any], key: str) -> tuple[bool, Any]:
    for variant in key_variants(key):
        if variant in value:
            return True, value[variant]
    return False, None


def value_shape(value: Any) -> str:
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    return type(value).__name__.lower()


def _shape_satisfies(expected: str, value: Any) -> bool:
    actual = value_shape(value)
    if expected == "number":
        return actual in {"number", "integer"}
    return actual == expected


def _key_descriptors(value: Any) -> List[str]:
    if not isinstance(value, Mapping):
        return []
    descriptors: List[str] = []
    for key in value.keys():
        label = f"b:{key.decode('utf-8', errors='replace')}" if isinstance(key, bytes) else str(key)
        if label not in descriptors:
            descriptors.append(label)
    return descriptors


def _invalid(
    mismatch: str,
    expected_shape: str,
    actual_shape: str,
    expected_keys: Sequence[str],
    actual_keys: Sequence[str],
    **details: Any,
) -> ContractValidation:
    metadata: Dict[str, Any] = {
        "expected_shape": expected_shape,
        "actual_shape": actual_shape,
        "expected_keys": list(expected_keys),
        "actual_keys": list(actual_keys),
        "mismatch": mismatch,
    }
    metadata.update(details)
    return ContractValidation(valid=False, metadata=metadata)


def _min_items(constraint: Mapping[str, Any]) -> Optional[int]:
    raw = constraint.get("min_items")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        min_items = int(raw)
    except (TypeError, ValueError):
        return None
    return min_items if min_items >= 0 else None


def _type_of(constraint: Mapping[str, Any]) -> Optional[str]:
    raw = constraint.get("type")
    if raw is None:
        return None
    return str(raw).strip().lower() or None


def _constraints(deliverable: Mapping[str, Any]) -> Mapping[str, Any]:
    constraints = deliverable.get("constraints")
    return constraints if isinstance(constraints, Mapping) else {}


def required_keys(deliverable: Mapping[str, Any]) -> List[str]:
    raw = deliverable.get("required") or []
    if isinstance(raw, str):
        raw = [raw]
    keys: List[str] = []
    for entry in raw:
        key = str(entry)
        if key and key not in keys:
            keys.append(key)
    return keys


def _nil_required_input(args: Sequence[Any], kwargs: Mapping[str, Any], value: Any) -> bool:
    if not args or args[0] is not None or kwargs:
        return False
    return isinstance(value, (list, tuple, Mapping)) and len(value) == 0


def _validate_properties(
    deliverable: Mapping[str, Any], value: Mapping[Any, Any]
) -> Optional[ContractValidation]:
    properties = _constraints(deliverable).get("properties")
    if not isinstance(properties, Mapping):
        return None
    for name, constraint in properties.items():
        key = str(name)
        found, property_value = tolerant_lookup(value, key)
        if not found or not isinstance(constraint, Mapping):
            continue
        expected_type = _type_of(constraint)
        if expected_type is not None and not _shape_satisfies(expected_type, property_value):
            return _invalid(
                "property_type_mismatch",
                expected_type,
                value_shape(property_value),
                [key],
                [],
                constraint_path=f"deliverable.constraints.properties.{key}.type",
            )
        min_items = _min_items(constraint)
        if min_items is None:
            continue
        if isinstance(property_value, (list, tuple)) and len(property_value) >= min_items:
            continue
        return _invalid(
            "min_items_violation",
            "array",
            value_shape(property_value),
            [key],
            [],
            constraint_path=f"deliverable.constraints.properties.{key}.min_items",
            expected_min_items=min_items,
            actual_items=len(property_value) if isinstance(property_value, (list, tuple)) else None,
        )
    return None


def _with_canonical_keys(value: Mapping[Any, Any], keys: Sequence[str]) -> Any:
    missing = [key for key in keys if key not in value]
    if not missing:
        return value
    normalized = dict(value)
    for key in missing:
        found, entry = tolerant_lookup(value, key)
        if found:
            normalized[key] = entry
    return normalized


def validate_deliverable(
    deliverable: Mapping[str, Any],
    value: Any,
    args: Sequence[Any] = (),
    kwargs: Optional[Mapping[str, Any]] = None,
) -> ContractValidation:
    if _nil_required_input(args, kwargs or {}, value):
        return _invalid("nil_required_input", "non_nil_input", "null", [], [])
    expected_type = _type_of(deliverable)
    if expected_type is None and required_keys(deliverable):
        expected_type = "object"
    if expected_type == "object":
        expected_keys = required_keys(deliverable)
        if not isinstance(value, Mapping):
            return _invalid(
                "type_mismatch",
                "object",
                value_shape(value),
                expected_keys,
                _key_descriptors(value),
            )
        missing = [key for key in expected_keys if not tolerant_lookup(value, key)[0]]
        if missing:
            return _invalid(
                "missing_required_key",
                "object",
                "object",
                expected_keys,
                _key_descriptors(value),
                missing_keys=missing,
            )
        violation = _validate_properties(deliverable, value)
        if violation is not None:
            return violation
        property_keys = [str(key) for key in (_constraints(deliverable).get("properties") or {})]
        canonical = _with_canonical_keys(value, expected_keys + property_keys)
        return ContractValidation(valid=True, value=canonical)
    if expected_type == "array":
        if not isinstance(value, (list, tuple)):
            return _invalid(
                "type_mismatch", "array", value_shape(value), [], _key_descriptors(value)
            )
        min_items = _min_items(deliverable)
        if min_items is None:
            min_items = _min_items(_constraints(deliverable))
        if min_items is not None and len(value) < min_items:
            return _invalid(
                "min_items_violation",
                "array",
                "array",
                [],
                [],
                constraint_path="deliverable.min_items",
                expected_min_items=min_items,
                actual_items=len(value),
            )
    return ContractValidation(valid=True, value=value)


def coerce_low_utility(outcome: Outcome) -> Outcome:
    if not outcome.is_ok or not isinstance(outcome.value, Mapping):
        return outcome
    status = outcome.value.get("status")
    if not isinstance(status, str):
        return outcome
    normalized = status.strip().lower()
    if normalized not in LOW_UTILITY_SUCCESS_STATUSES:
        return outcome
    metadata: Dict[str, Any] = {
        "mismatch": "low_utility_success_signal",
        "signaled_status": normalized,
    }
    message = outcome.value.get("message")
    if message is not None and str(message).strip():
        metadata["signaled_message"] = str(message)
    return Outcome.error(
        "low_utility",
        "Tool reported successful execution but signaled low utility output",
        retriable=False,
        metadata=metadata,
        tool_role=outcome.tool_role,
        method_name=outcome.method_name,
    )


def validate_outcome(
    outcome: Outcome,
    contract: Optional[Mapping[str, Any]],
    args: Sequence[Any] = (),
    kwargs: Optional[Mapping[str, Any]] = None,
) -> tuple[Outcome, Optional[ContractValidation]]:
    deliverable = deliverable_of(contract)
    if not outcome.is_ok or deliverable is None:
        return coerce_low_utility(outcome), None
    validation = validate_deliverable(deliverable, outcome.value, args, kwargs)
    if not validation.valid:
        mismatch = validation.mismatch or "contract_violation"
        return (
            Outcome.error(
                "contract_violation",
                f"Delegated outcome does not satisfy deliverable contract ({mismatch})",
                retriable=False,
                metadata=validation.metadata,
                tool_role=outcome.tool_role,
                method_name=outcome.method_name,
            ),
            validation,
        )
    validated = outcome
    if validation.value is not outcome.value and validation.value != outcome.value:
        validated = Outcome.ok(
            validation.value, tool_role=outcome.tool_role, method_name=outcome.method_name
        )
    return coerce_low_utility(validated), validation


def state_key_continuity(
    contract: Optional[Mapping[str, Any]],
    previous_keys: Sequence[str],
    value: Any,
) -> tuple[float, List[str]]:
    tracked = list((contract or {}).get("state_keys") or previous_keys)
    if not tracked:
        return 1.0, []
    if not isinstance(value, Mapping):
        return 0.0, list(tracked)
    missing = [key for key in tracked if not tolerant_lookup(value, key)[0]]
    return (len(tracked) - len(missing)) / len(tracked), missing
