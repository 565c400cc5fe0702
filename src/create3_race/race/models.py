"""Domain models for redundant worker races."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AttemptState(str, Enum):
    """Lifecycle of one redundant execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_ATTEMPT_STATES


_TERMINAL_ATTEMPT_STATES = frozenset(
    {AttemptState.SUCCEEDED, AttemptState.FAILED, AttemptState.CANCELLED},
)


@dataclass(frozen=True, slots=True)
class RaceResult:
    """Parsed output of the winning attempt."""

    salt: str
    address: str


@dataclass(frozen=True, slots=True)
class Workload:
    """Resource requirements plus the command every worker runs."""

    argv: tuple[str, ...]
    image_hash: str
    rent_hours: float
    timeout_seconds: int

    @property
    def command(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    """Terminal report of one attempt."""

    attempt_id: str
    state: AttemptState
    output: str = ""
    result: RaceResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is AttemptState.SUCCEEDED and self.result is not None
