from __future__ import annotations

import argparse
import os
import sys
from typing import Any, BinaryIO, Dict

from ..errors import CallForgeError, GuardrailViolationError, NonSerializableResultError
from ..sandbox import AttemptReceiver, run_program
from .protocol import IPC_VERSION, decode_message, encode_message, encode_value, ensure_serializable


def _limit_resources(memory_mb: int) -> None:
    if memory_mb <= 0:
        return
    try:
        import resource

        limit = memory_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ImportError, ValueError):
        pass


def handle_request(request: Dict[str, Any]) -> Dict[str, Any]:
    response: Dict[str, Any] = {
        "ipc_version": IPC_VERSION,
        "call_id": request.get("call_id"),
        "worker_pid": os.getpid(),
    }
    context = request.get("context_snapshot")
    if not isinstance(context, dict):
        context = {}
    receiver = AttemptReceiver(str(request.get("role", "")), context)
    try:
        value = run_program(
            str(request.get("code", "")),
            receiver,
            context,
            request.get("call") or {},
            list(request.get("args") or []),
            dict(request.get("kwargs") or {}),
        )
        value = encode_value(value)
        ensure_serializable(value, "result")
        ensure_serializable(context, "context snapshot")
    except GuardrailViolationError as exc:
        response.update(
            status="error",
            error_type=exc.error_type,
            error_message=exc.message,
            violation=exc.violation.to_record(),
        )
        return response
    except NonSerializableResultError as exc:
        response.update(status="error", error_type=exc.error_type, error_message=exc.message)
        return response
    except CallForgeError as exc:
        response.update(
            status="error",
            error_type=exc.error_type,
            error_message=exc.message,
            root_error_class=getattr(exc, "root_error_class", None),
            failure_location=exc.metadata.get("failure_location"),
        )
        return response
    response.update(status="ok", value=value, context_snapshot=context)
    return response


def serve(stdin: BinaryIO, stdout: BinaryIO) -> None:
    for line in stdin:
        if not line.strip():
            continue
        try:
            request = decode_message(line)
        except ValueError as exc:
            stdout.write(
                encode_message(
                    {
                        "ipc_version": IPC_VERSION,
                        "call_id": None,
                        "status": "error",
                        "error_type": "execution",
                        "error_message": f"malformed request: {exc}",
                        "worker_pid": os.getpid(),
                    }
                )
            )
            stdout.flush()
            continue
        stdout.write(encode_message(handle_request(request)))
        stdout.flush()


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--memory-mb", type=int, default=0)
    args = parser.parse_args()
    _limit_resources(args.memory_mb)
    # Program output must not interleave with protocol lines.
    protocol_out = os.fdopen(os.dup(sys.stdout.fileno()), "wb")
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    sys.stdout = sys.stderr
    serve(sys.stdin.buffer, protocol_out)


if __name__ == "__main__":
    main()
