"""Request intake and CLI controllers for salt-search jobs."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from create3_race.config import Settings
from create3_race.errors import JobNotFoundError, ValidationError
from create3_race.jobs.models import JobRequest, JobState, JobView
from create3_race.jobs.orchestrator import JobOrchestrator
from create3_race.jobs.repository import JobRepository
from create3_race.race.backend import ShellBackend
from create3_race.race.cancellation import ShutdownToken
from create3_race.race.coordinator import RaceCoordinator


class JobIntakeController:
    """Transport-independent create / fetch / list operations."""

    def __init__(self, *, orchestrator: JobOrchestrator) -> None:
        self.orchestrator = orchestrator

    def create(self, payload: Mapping[str, Any]) -> str:
        """Validate ``{owner, pattern, deployer}`` and submit; returns the job id."""

        values = {name: payload.get(name) for name in ("owner", "pattern", "deployer")}
        wrong_type = [name for name, value in values.items() if not isinstance(value, str | None)]
        if wrong_type:
            raise ValidationError(
                f"Parameters must be strings: {', '.join(wrong_type)}",
                fields=tuple(wrong_type),
            )
        return self.orchestrator.submit(
            JobRequest(
                owner=values["owner"] or "",
                pattern=values["pattern"] or "",
                deployer=values["deployer"] or "",
            ),
        )

    def fetch(self, job_id: str) -> JobView:
        """Read one job; raises JobNotFoundError, distinct from PersistenceError."""

        job = self.orchestrator.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_by_owner(self, owner: str) -> list[JobView]:
        return self.orchestrator.repository.list_jobs_by_owner(owner)


def job_to_payload(job: JobView) -> dict[str, Any]:
    """Render a job with the public API field names."""

    return {
        "id": job.id,
        "owner": job.owner,
        "pattern": job.pattern,
        "deployer": job.deployer,
        "state": job.state.value,
        "salt": job.salt,
        "address": job.address,
        "createdAt": _iso(job.created_at),
        "finishedAt": _iso(job.finished_at),
    }


def build_orchestrator(settings: Settings, *, token: ShutdownToken | None = None) -> JobOrchestrator:
    """Wire the store, shell backend and coordinator from settings."""

    settings.validate()
    repository = JobRepository(
        settings.db_path,
        busy_timeout_ms=settings.persistence.busy_timeout_ms,
    )
    repository.init_schema()
    coordinator = RaceCoordinator(
        backend=ShellBackend(),
        replication_factor=settings.race.replication_factor,
        race_timeout_seconds=settings.race.race_timeout_seconds,
        cancel_timeout_seconds=settings.race.cancel_timeout_seconds,
        poll_interval_seconds=settings.race.poll_interval_seconds,
    )
    return JobOrchestrator(
        repository=repository,
        coordinator=coordinator,
        workload_settings=settings.workload,
        token=token,
        write_retries=settings.persistence.write_retries,
        write_retry_backoff_seconds=settings.persistence.write_retry_backoff_seconds,
    )


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    owner: str
    pattern: str
    deployer: str
    replication_factor: int | None = None
    race_timeout_seconds: float | None = None


@dataclass(slots=True)
class JobShowCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    output_format: str = "table"


@dataclass(slots=True)
class JobListCommand:
    """CLI input for owner job listing."""

    db_path: Path | None
    owner: str
    output_format: str = "table"


@dataclass(slots=True)
class JobCommandResult:
    """Lines to render plus the process outcome."""

    lines: list[str]
    success: bool = True


class JobsCliController:
    """Coordinates submit, show and list CLI operations."""

    def __init__(self, *, token: ShutdownToken | None = None) -> None:
        self.token = token or ShutdownToken()

    def submit(self, command: JobSubmitCommand) -> JobCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.replication_factor is not None:
            settings.race.replication_factor = command.replication_factor
        if command.race_timeout_seconds is not None:
            settings.race.race_timeout_seconds = command.race_timeout_seconds
        orchestrator = build_orchestrator(settings, token=self.token)
        try:
            job_id = JobIntakeController(orchestrator=orchestrator).create(
                {"owner": command.owner, "pattern": command.pattern, "deployer": command.deployer},
            )
            lines = [f"Job submitted: id={job_id}"]
            # The race threads live in this process; only a signal aborts them.
            job = orchestrator.wait(job_id)
        finally:
            orchestrator.shutdown(timeout_seconds=settings.shutdown_timeout_seconds)

        if job is None:
            return JobCommandResult(lines=[*lines, "Job record disappeared."], success=False)
        return JobCommandResult(
            lines=[*lines, *_render_job(job)],
            success=job.state is JobState.DONE,
        )

    def show(self, command: JobShowCommand) -> JobCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(command.job_id)
            events = repository.list_job_events(command.job_id) if job is not None else []
        if job is None:
            return JobCommandResult(lines=[f"Job not found: {command.job_id}"], success=False)
        if command.output_format == "json":
            return JobCommandResult(lines=[json.dumps(job_to_payload(job), indent=2)])

        lines = _render_job(job)
        lines.append("Events:")
        for event in events:
            transition = (
                f"{event.state_from.value if event.state_from else '-'}"
                f" -> {event.state_to.value if event.state_to else '-'}"
            )
            details = json.dumps(event.details, sort_keys=True) if event.details else ""
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {transition} {details}".rstrip(),
            )
        return JobCommandResult(lines=lines)

    def list_jobs(self, command: JobListCommand) -> JobCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = repository.list_jobs_by_owner(command.owner)
        if command.output_format == "json":
            return JobCommandResult(
                lines=[json.dumps([job_to_payload(job) for job in jobs], indent=2)],
            )
        if not jobs:
            return JobCommandResult(lines=[f"No jobs for owner {command.owner}."])
        return JobCommandResult(
            lines=[
                f"{job.id} state={job.state.value} pattern={job.pattern} "
                f"address={job.address or '-'} created_at={job.created_at.isoformat()}"
                for job in jobs
            ],
        )


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        busy_timeout_ms=settings.persistence.busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()


def _render_job(job: JobView) -> list[str]:
    return [
        f"Job {job.id}: state={job.state.value}",
        f"  owner={job.owner} pattern={job.pattern} deployer={job.deployer}",
        f"  salt={job.salt or '-'} address={job.address or '-'}",
        f"  created_at={job.created_at.isoformat()} finished_at={_iso(job.finished_at) or '-'}",
    ]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
