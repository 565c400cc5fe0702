"""Worker backend implementations."""

from create3_race.race.backend.base import ExecutionBackend, ExecutionRequest, RemoteExecution
from create3_race.race.backend.shell_backend import ShellBackend, ShellExecution

__all__ = [
    "ExecutionBackend",
    "ExecutionRequest",
    "RemoteExecution",
    "ShellBackend",
    "ShellExecution",
]
