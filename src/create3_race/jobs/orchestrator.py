"""Job orchestration: durable record + detached race + reconciliation."""

from __future__ import annotations

import logging
import threading
import time

from create3_race.config import WorkloadSettings
from create3_race.errors import JobNotFoundError, PersistenceError, RaceAborted, RaceFailure
from create3_race.jobs.models import JobPatch, JobRequest, JobView, validate_job_request
from create3_race.jobs.repository import JobRepository
from create3_race.race.cancellation import ShutdownToken
from create3_race.race.coordinator import RaceCoordinator
from create3_race.race.workload import build_workload

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Creates job records and drives one race per job in the background."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        coordinator: RaceCoordinator,
        workload_settings: WorkloadSettings,
        token: ShutdownToken | None = None,
        write_retries: int = 3,
        write_retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.repository = repository
        self.coordinator = coordinator
        self.workload_settings = workload_settings
        self.token = token or ShutdownToken()
        self.write_retries = max(1, write_retries)
        self.write_retry_backoff_seconds = write_retry_backoff_seconds
        self._lock = threading.Lock()
        self._inflight: dict[str, threading.Thread] = {}

    def submit(self, request: JobRequest) -> str:
        """Persist a new job and start its race; returns the job id immediately.

        Raises:
            ValidationError: a request field is empty; nothing is persisted.
            PersistenceError: the job record could not be created.
        """

        cleaned = validate_job_request(request)
        if self.token.is_requested():
            raise RuntimeError("Orchestrator is shutting down; not accepting new jobs.")
        job = self.repository.create_job(cleaned)
        logger.info(
            "Created job %s for owner=%s pattern=%s deployer=%s",
            job.id,
            cleaned.owner,
            cleaned.pattern,
            cleaned.deployer,
        )
        thread = threading.Thread(
            target=self._run_job,
            args=(job.id, cleaned),
            daemon=True,
            name=f"job-{job.id[:8]}",
        )
        with self._lock:
            self._inflight[job.id] = thread
        thread.start()
        return job.id

    def wait(self, job_id: str, *, timeout_seconds: float | None = None) -> JobView | None:
        """Block until the race of ``job_id`` settles, then return the stored job."""

        with self._lock:
            thread = self._inflight.get(job_id)
        if thread is not None:
            thread.join(timeout=timeout_seconds)
        return self.repository.get_job(job_id)

    def inflight_job_ids(self) -> list[str]:
        with self._lock:
            return [job_id for job_id, thread in self._inflight.items() if thread.is_alive()]

    def shutdown(self, *, timeout_seconds: float = 10.0) -> None:
        """Abort pending races, wait a bounded time, then close collaborators."""

        if self.token.request("orchestrator shutdown"):
            logger.info("Shutdown requested; aborting %d races", len(self.inflight_job_ids()))
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        with self._lock:
            threads = list(self._inflight.values())
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning("Race thread %s still running at shutdown", thread.name)
        self.coordinator.backend.close()
        self.repository.close()

    def _run_job(self, job_id: str, request: JobRequest) -> None:
        try:
            if not self._reconcile(job_id, JobPatch.running()):
                logger.warning("Job %s could not be moved to running; skipping race", job_id)
                self._reconcile(job_id, JobPatch.failed(), details={"reason": "not_started"})
                return
            workload = build_workload(
                pattern=request.pattern,
                deployer=request.deployer,
                settings=self.workload_settings,
            )
            result = self.coordinator.race(workload, token=self.token, race_id=job_id[:12])
        except RaceAborted as error:
            logger.warning("Job %s aborted: %s", job_id, error)
            self._reconcile(job_id, JobPatch.failed(), details={"reason": "aborted"})
        except RaceFailure as error:
            logger.warning("Job %s failed: %s", job_id, error)
            self._reconcile(
                job_id,
                JobPatch.failed(),
                details={
                    "reason": "race_failed",
                    "attempts": {
                        outcome.attempt_id: outcome.state.value for outcome in error.outcomes
                    },
                },
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s crashed", job_id)
            self._reconcile(
                job_id,
                JobPatch.failed(),
                details={"reason": "internal_error", "error": f"{type(error).__name__}: {error}"},
            )
        else:
            if self._reconcile(job_id, JobPatch.done(result)):
                logger.info(
                    "Job %s done: salt=%s address=%s",
                    job_id,
                    result.salt,
                    result.address,
                )
        finally:
            with self._lock:
                self._inflight.pop(job_id, None)

    def _reconcile(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Single write path for job state; never overwrites a terminal job."""

        for attempt in range(1, self.write_retries + 1):
            try:
                applied = self.repository.update_if_non_terminal(job_id, patch, details=details)
            except JobNotFoundError:
                logger.error("Job %s vanished before %s could be written", job_id, patch.state.value)
                return False
            except PersistenceError as error:
                logger.warning(
                    "Writing %s for job %s failed (try %d/%d): %s",
                    patch.state.value,
                    job_id,
                    attempt,
                    self.write_retries,
                    error,
                )
                if attempt < self.write_retries:
                    time.sleep(self.write_retry_backoff_seconds * attempt)
                continue
            if not applied:
                logger.info(
                    "Job %s already terminal or unchanged; %s write skipped",
                    job_id,
                    patch.state.value,
                )
            return applied
        logger.error("Giving up writing %s for job %s", patch.state.value, job_id)
        return False
