"""Backend interface for remote worker execution."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from create3_race.race.models import Workload


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to dispatch one attempt to one worker."""

    attempt_id: str
    attempt_index: int
    workload: Workload


class RemoteExecution(Protocol):
    """Handle to a workload running on one worker."""

    def stream(self) -> Iterator[str]:
        """Yield output chunks; raise ExecutionError if the worker fails."""

    def cancel(self, timeout_seconds: float) -> None:
        """Ask the worker to stop, returning within ``timeout_seconds``."""


class ExecutionBackend(Protocol):
    """Protocol implemented by worker backends."""

    def start(self, request: ExecutionRequest) -> RemoteExecution:
        """Dispatch the workload and return a running execution."""

    def close(self) -> None:
        """Release backend connections."""
