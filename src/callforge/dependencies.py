from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import DependencyPolicy
from .errors import (
    DependencyManifestIncompatibleError,
    DependencyPolicyViolationError,
    InvalidDependencyManifestError,
)

DEFAULT_VERSION = ">= 0"
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True, order=True)
class DependencySpec:
    name: str
    version: str = DEFAULT_VERSION

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "version": self.version}

    def requirement(self) -> str:
        if self.version == DEFAULT_VERSION:
            return self.name
        return f"{self.name}{self.version.replace(' ', '')}"


def _normalize_entry(entry: Any, index: int) -> DependencySpec:
    if isinstance(entry, str):
        entry = {"name": entry}
    if not isinstance(entry, Mapping):
        raise InvalidDependencyManifestError(
            f"dependencies[{index}] must be an object with name/version"
        )
    raw_name = entry.get("name")
    if not isinstance(raw_name, str) or not raw_name.strip():
        raise InvalidDependencyManifestError(
            f"dependencies[{index}].name must be a non-empty string"
        )
    name = raw_name.strip().lower()
    if not NAME_PATTERN.match(name):
        raise InvalidDependencyManifestError(f"dependencies[{index}].name is invalid: {raw_name!r}")
    raw_version = entry.get("version")
    if raw_version is None:
        version = DEFAULT_VERSION
    elif isinstance(raw_version, str):
        version = raw_version.strip() or DEFAULT_VERSION
    else:
        raise InvalidDependencyManifestError(f"dependencies[{index}].version must be a string")
    return DependencySpec(name=name, version=version)


def normalize_dependencies(raw: Any) -> List[DependencySpec]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise InvalidDependencyManifestError("dependencies must be an array")
    by_name: Dict[str, DependencySpec] = {}
    for index, entry in enumerate(raw):
        spec = _normalize_entry(entry, index)
        existing = by_name.get(spec.name)
        if existing is not None and existing.version != spec.version:
            raise InvalidDependencyManifestError(
                f"conflicting versions for {spec.name}: {existing.version!r} vs {spec.version!r}",
                metadata={"name": spec.name, "versions": [existing.version, spec.version]},
            )
        by_name[spec.name] = spec
    return sorted(by_name.values())


def manifest_to_records(manifest: Iterable[DependencySpec]) -> List[Dict[str, str]]:
    return [spec.to_dict() for spec in manifest]


def manifest_from_records(records: Any) -> List[DependencySpec]:
    return normalize_dependencies(records or [])


def ensure_additive(
    previous: Sequence[DependencySpec], current: Sequence[DependencySpec]
) -> None:
    previous_versions = {spec.name: spec.version for spec in previous}
    conflicts = [
        {"name": spec.name, "previous": previous_versions[spec.name], "current": spec.version}
        for spec in current
        if spec.name in previous_versions and previous_versions[spec.name] != spec.version
    ]
    if conflicts:
        names = ", ".join(conflict["name"] for conflict in conflicts)
        raise DependencyManifestIncompatibleError(
            f"dependency manifest is not additive; version changed for: {names}",
            metadata={"conflicts": conflicts},
        )


def enforce_dependency_policy(
    manifest: Sequence[DependencySpec], policy: Optional[DependencyPolicy]
) -> None:
    if policy is None or not manifest:
        return
    blocked = {name.strip().lower() for name in policy.blocked}
    allowed = {name.strip().lower() for name in policy.allowed}
    denied = [spec.name for spec in manifest if spec.name in blocked]
    if allowed:
        denied.extend(spec.name for spec in manifest if spec.name not in allowed)
    if denied:
        raise DependencyPolicyViolationError(
            f"dependencies not permitted by policy: {', '.join(sorted(set(denied)))}",
            metadata={"denied": sorted(set(denied))},
        )
    if policy.source_mode == "internal_only" and not policy.internal_index_url:
        raise DependencyPolicyViolationError(
            "source_mode internal_only requires internal_index_url",
            metadata={"source_mode": policy.source_mode},
        )
