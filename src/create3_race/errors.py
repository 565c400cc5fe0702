"""Error taxonomy shared by the race core, the job store and request intake."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from create3_race.race.models import AttemptOutcome


class ValidationError(ValueError):
    """Malformed or incomplete job request; rejected before any record exists."""

    def __init__(self, message: str, *, fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.fields = fields


class ExecutionError(RuntimeError):
    """Worker execution error with retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.exit_code = exit_code


class ParseError(ValueError):
    """Worker output does not have the ``salt,address`` shape."""


class RaceFailure(RuntimeError):
    """Every attempt of a race terminated without a parseable success."""

    def __init__(self, message: str, *, outcomes: Sequence[AttemptOutcome] = ()) -> None:
        super().__init__(message)
        self.outcomes = tuple(outcomes)


class RaceAborted(RaceFailure):
    """Race abandoned because shutdown was requested."""


class PersistenceError(RuntimeError):
    """Job store read or write failed."""


class JobNotFoundError(LookupError):
    """Requested job id does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id
