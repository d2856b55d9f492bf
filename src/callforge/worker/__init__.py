from .executor import WorkerExecutor, default_worker_command
from .protocol import IPC_VERSION, decode_message, encode_message
from .supervisor import DEFAULT_MAX_RESTARTS, WorkerSupervisor

__all__ = [
    "WorkerExecutor",
    "default_worker_command",
    "IPC_VERSION",
    "decode_message",
    "encode_message",
    "DEFAULT_MAX_RESTARTS",
    "WorkerSupervisor",
]
