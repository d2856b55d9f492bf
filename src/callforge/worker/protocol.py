from __future__ import annotations

from typing import Any, Dict, Mapping

import orjson

from ..errors import NonSerializableResultError
from ..outcome import Outcome
from ..utils import canonical_dumps, is_plain_data

IPC_VERSION = 1
OUTCOME_MARKER = "__callforge_outcome__"


def ensure_serializable(value: Any, label: str) -> None:
    if not is_plain_data(value):
        raise NonSerializableResultError(
            f"{label} is not plain serializable data ({type(value).__name__})",
            stage="execution",
        )


def encode_value(value: Any) -> Any:
    if isinstance(value, Outcome):
        return {OUTCOME_MARKER: value.to_dict()}
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, Mapping) and set(value.keys()) == {OUTCOME_MARKER}:
        return Outcome.from_dict(value[OUTCOME_MARKER])
    return value


def encode_message(message: Mapping[str, Any]) -> bytes:
    return canonical_dumps(dict(message)) + b"\n"


def decode_message(line: bytes) -> Dict[str, Any]:
    data = orjson.loads(line)
    if not isinstance(data, dict):
        raise ValueError("worker message must be an object")
    if data.get("ipc_version") != IPC_VERSION:
        raise ValueError(f"unsupported ipc_version: {data.get('ipc_version')!r}")
    return data
