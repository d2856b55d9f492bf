from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .outcome import Outcome
from .utils import atomic_write_json, quarantine_file, read_json, to_jsonable, utc_timestamp

logger = logging.getLogger(__name__)

REGISTRY_SCHEMA_VERSION = 1


def _merged_names(existing: Any, incoming: Optional[Sequence[str]]) -> List[str]:
    names = [str(name) for name in existing] if isinstance(existing, list) else []
    for name in incoming or []:
        if str(name) not in names:
            names.append(str(name))
    return sorted(names)


class ToolRegistry:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = read_json(self.path)
        except ValueError:
            data = None
        tools = data.get("tools") if isinstance(data, dict) else None
        if (
            not isinstance(tools, dict)
            or data.get("schema_version") != REGISTRY_SCHEMA_VERSION
        ):
            quarantined = quarantine_file(self.path)
            logger.warning("quarantined unreadable tool registry to %s", quarantined)
            return {}
        return {str(name): entry for name, entry in tools.items() if isinstance(entry, dict)}

    def save(self, tools: Mapping[str, Any]) -> None:
        atomic_write_json(
            self.path,
            {"schema_version": REGISTRY_SCHEMA_VERSION, "tools": to_jsonable(dict(tools))},
        )

    def register(
        self,
        role: str,
        *,
        purpose: Optional[str] = None,
        methods: Optional[Sequence[str]] = None,
        aliases: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        tools = self.load()
        existing = tools.get(role, {})
        timestamp = utc_timestamp()
        entry = dict(existing)
        if purpose:
            entry["purpose"] = purpose
        entry["methods"] = _merged_names(existing.get("methods"), methods)
        entry["aliases"] = _merged_names(existing.get("aliases"), aliases)
        entry.setdefault("created_at", timestamp)
        entry["last_used_at"] = timestamp
        entry["usage_count"] = int(existing.get("usage_count", 0)) + 1
        entry["success_count"] = int(existing.get("success_count", 0))
        entry["failure_count"] = int(existing.get("failure_count", 0))
        tools[role] = entry
        self.save(tools)
        return entry

    def touch_usage(
        self,
        role: str,
        *,
        method_name: str,
        outcome: Outcome,
        artifact_checksum: Optional[str] = None,
        lifecycle_state: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        tools = self.load()
        entry = tools.get(role)
        if entry is None:
            return None
        updated = dict(entry)
        updated["last_used_at"] = utc_timestamp()
        updated["usage_count"] = int(entry.get("usage_count", 0)) + 1
        if outcome.is_ok:
            updated["success_count"] = int(entry.get("success_count", 0)) + 1
            updated["methods"] = _merged_names(entry.get("methods"), [method_name])
        else:
            updated["failure_count"] = int(entry.get("failure_count", 0)) + 1
        updated["last_outcome"] = {
            "method_name": method_name,
            "status": outcome.status,
            "error_type": outcome.error_type,
        }
        if artifact_checksum:
            updated.setdefault("artifact_checksums", {})[method_name] = artifact_checksum
        if lifecycle_state:
            updated.setdefault("lifecycle", {})[method_name] = lifecycle_state
        tools[role] = updated
        self.save(tools)
        return updated
