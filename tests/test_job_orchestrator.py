from __future__ import annotations

import time

import allure
import pytest
from conftest import Script, ScriptedBackend

from create3_race.config import WorkloadSettings
from create3_race.errors import JobNotFoundError, PersistenceError, ValidationError
from create3_race.jobs.controllers import JobIntakeController, job_to_payload
from create3_race.jobs.models import JobPatch, JobRequest, JobState
from create3_race.jobs.orchestrator import JobOrchestrator
from create3_race.jobs.repository import JobRepository
from create3_race.race.cancellation import ShutdownToken
from create3_race.race.coordinator import RaceCoordinator

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Race Reconciliation"),
]


def _orchestrator(
    repository: JobRepository,
    backend: ScriptedBackend,
    *,
    replication_factor: int = 3,
    token: ShutdownToken | None = None,
) -> JobOrchestrator:
    return JobOrchestrator(
        repository=repository,
        coordinator=RaceCoordinator(
            backend=backend,
            replication_factor=replication_factor,
            race_timeout_seconds=10.0,
            cancel_timeout_seconds=1.0,
            poll_interval_seconds=0.01,
        ),
        workload_settings=WorkloadSettings(attempt_timeout_seconds=30),
        token=token,
        write_retries=3,
        write_retry_backoff_seconds=0.0,
    )


def _request() -> JobRequest:
    return JobRequest(owner="0xowner", pattern="0xdead", deployer="0xdeployer")


def test_first_success_settles_job_done_and_late_winner_is_ignored(
    repository: JobRepository,
) -> None:
    backend = ScriptedBackend(
        [
            Script(delay=0.5, error="provider crashed"),
            Script(delay=0.1, output="s1,0xAA"),
            Script(delay=2.5, output="s3,0xCC"),
        ],
    )
    orchestrator = _orchestrator(repository, backend)

    job_id = orchestrator.submit(_request())
    job = orchestrator.wait(job_id, timeout_seconds=10)

    assert job is not None
    assert job.state is JobState.DONE
    assert (job.salt, job.address) == ("s1", "0xAA")
    assert job.finished_at is not None
    assert backend.executions[3].cancelled.wait(timeout=2)
    assert backend.executions[3].cancel_calls == 1

    time.sleep(0.1)
    assert repository.get_job(job_id) == job


def test_all_attempts_failing_settles_job_failed(repository: JobRepository) -> None:
    backend = ScriptedBackend(
        [
            Script(delay=0.01, error="connection lost"),
            Script(delay=0.02, error="non-zero exit"),
        ],
    )
    orchestrator = _orchestrator(repository, backend, replication_factor=2)

    job = orchestrator.wait(orchestrator.submit(_request()), timeout_seconds=10)

    assert job is not None
    assert job.state is JobState.FAILED
    assert job.salt is None
    assert job.address is None
    assert job.finished_at is not None
    events = repository.list_job_events(job.id)
    assert [event.event_type for event in events] == ["created", "running", "failed"]
    assert events[-1].details["reason"] == "race_failed"


def test_submit_returns_before_race_finishes(repository: JobRepository) -> None:
    backend = ScriptedBackend([Script(delay=1.0, output="s1,0xAA")])
    orchestrator = _orchestrator(repository, backend, replication_factor=1)

    started = time.monotonic()
    job_id = orchestrator.submit(_request())
    elapsed = time.monotonic() - started

    assert elapsed < 1.0
    job = repository.get_job(job_id)
    assert job is not None
    assert not job.state.is_terminal
    assert orchestrator.wait(job_id, timeout_seconds=10).state is JobState.DONE


@pytest.mark.parametrize("field", ["owner", "pattern", "deployer"])
def test_empty_field_is_rejected_before_any_job(repository: JobRepository, field: str) -> None:
    backend = ScriptedBackend([Script(output="s1,0xAA")])
    orchestrator = _orchestrator(repository, backend)
    payload = {"owner": "0xowner", "pattern": "0xdead", "deployer": "0xdeployer", field: "  "}

    with pytest.raises(ValidationError, match=field):
        JobIntakeController(orchestrator=orchestrator).create(payload)

    assert repository.list_jobs_by_owner("0xowner") == []
    assert backend.requests == []


def test_intake_rejects_missing_and_non_string_fields(repository: JobRepository) -> None:
    intake = JobIntakeController(
        orchestrator=_orchestrator(repository, ScriptedBackend([Script(output="a,b")])),
    )

    with pytest.raises(ValidationError, match="pattern"):
        intake.create({"owner": "0xowner", "deployer": "0xdeployer"})
    with pytest.raises(ValidationError, match="must be strings"):
        intake.create({"owner": "0xowner", "pattern": 42, "deployer": "0xdeployer"})


def test_intake_fetch_and_list(repository: JobRepository) -> None:
    orchestrator = _orchestrator(
        repository,
        ScriptedBackend([Script(output="s1,0xAA")]),
        replication_factor=1,
    )
    intake = JobIntakeController(orchestrator=orchestrator)

    job_id = intake.create({"owner": "0xowner", "pattern": "0xdead", "deployer": "0xdeployer"})
    orchestrator.wait(job_id, timeout_seconds=10)

    payload = job_to_payload(intake.fetch(job_id))
    assert payload["state"] == "done"
    assert payload["salt"] == "s1"
    assert payload["createdAt"] is not None
    assert payload["finishedAt"] is not None
    assert [job.id for job in intake.list_by_owner("0xowner")] == [job_id]
    assert intake.list_by_owner("nobody") == []
    with pytest.raises(JobNotFoundError):
        intake.fetch("missing")


def test_late_reconciliation_cannot_regress_terminal_job(repository: JobRepository) -> None:
    orchestrator = _orchestrator(
        repository,
        ScriptedBackend([Script(output="s1,0xAA")]),
        replication_factor=1,
    )
    job = orchestrator.wait(orchestrator.submit(_request()), timeout_seconds=10)
    assert job is not None

    assert orchestrator._reconcile(job.id, JobPatch.failed()) is False

    assert repository.get_job(job.id) == job


def test_persistence_errors_are_retried_without_crashing(
    repository: JobRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    orchestrator = _orchestrator(
        repository,
        ScriptedBackend([Script(output="s1,0xAA")]),
        replication_factor=1,
    )
    original = repository.update_if_non_terminal
    failures = {"left": 2}

    def _flaky(job_id, patch, *, details=None):
        if patch.state is JobState.DONE and failures["left"] > 0:
            failures["left"] -= 1
            raise PersistenceError("database is locked")
        return original(job_id, patch, details=details)

    monkeypatch.setattr(repository, "update_if_non_terminal", _flaky)

    job = orchestrator.wait(orchestrator.submit(_request()), timeout_seconds=10)

    assert failures["left"] == 0
    assert job is not None
    assert job.state is JobState.DONE


def test_shutdown_aborts_races_and_closes_collaborators(repository: JobRepository) -> None:
    backend = ScriptedBackend([Script(delay=30.0, output="late,0x01")])
    token = ShutdownToken()
    orchestrator = _orchestrator(repository, backend, replication_factor=2, token=token)
    job_id = orchestrator.submit(_request())
    deadline = time.monotonic() + 5
    while len(backend.executions) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)

    started = time.monotonic()
    orchestrator.shutdown(timeout_seconds=5)

    assert time.monotonic() - started < 5
    assert token.is_requested()
    assert backend.closed
    assert orchestrator.inflight_job_ids() == []
    for execution in backend.executions.values():
        assert execution.cancelled.wait(timeout=2)

    reopened = JobRepository(repository.db_path)
    try:
        job = reopened.get_job(job_id)
    finally:
        reopened.close()
    assert job is not None
    assert job.state is JobState.FAILED
    assert job.finished_at is not None
    with pytest.raises(RuntimeError, match="shutting down"):
        orchestrator.submit(_request())
