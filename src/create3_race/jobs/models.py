"""Domain models for durable job records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from create3_race.errors import ValidationError
from create3_race.race.models import RaceResult


class JobState(str, Enum):
    """Durable job lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobState.DONE, JobState.FAILED}


NON_TERMINAL_JOB_STATES = (JobState.CREATED, JobState.RUNNING)


@dataclass(frozen=True, slots=True)
class JobRequest:
    """Input payload for one salt search."""

    owner: str
    pattern: str
    deployer: str


def validate_job_request(request: JobRequest) -> JobRequest:
    """Return a trimmed copy of ``request`` or raise ValidationError."""

    cleaned = JobRequest(
        owner=(request.owner or "").strip(),
        pattern=(request.pattern or "").strip(),
        deployer=(request.deployer or "").strip(),
    )
    missing = tuple(
        name for name in ("owner", "pattern", "deployer") if not getattr(cleaned, name)
    )
    if missing:
        raise ValidationError(
            f"Missing required parameters: {', '.join(missing)}",
            fields=missing,
        )
    return cleaned


@dataclass(frozen=True, slots=True)
class JobPatch:
    """State change applied by reconciliation."""

    state: JobState
    salt: str | None = None
    address: str | None = None

    def __post_init__(self) -> None:
        has_result = self.salt is not None or self.address is not None
        if self.state is JobState.DONE:
            if not self.salt or not self.address:
                raise ValueError("A done patch requires both salt and address.")
        elif has_result:
            raise ValueError(f"salt/address are only allowed on done, got {self.state.value}")
        if self.state is JobState.CREATED:
            raise ValueError("Jobs cannot be moved back to created.")

    @classmethod
    def running(cls) -> JobPatch:
        return cls(state=JobState.RUNNING)

    @classmethod
    def done(cls, result: RaceResult) -> JobPatch:
        return cls(state=JobState.DONE, salt=result.salt, address=result.address)

    @classmethod
    def failed(cls) -> JobPatch:
        return cls(state=JobState.FAILED)


@dataclass(slots=True)
class JobView:
    """Readable job record."""

    id: str
    owner: str
    pattern: str
    deployer: str
    state: JobState
    salt: str | None
    address: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class JobEventView:
    """Job transition entry for the audit trail."""

    event_id: int
    job_id: str
    event_type: str
    state_from: JobState | None
    state_to: JobState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
