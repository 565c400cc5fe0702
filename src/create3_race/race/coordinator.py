"""Redundant execution race: N attempts, first valid success wins."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Sequence
from typing import Generic, TypeVar
from uuid import uuid4

from create3_race.errors import RaceAborted, RaceFailure
from create3_race.race.attempt import WorkerAttempt
from create3_race.race.backend.base import ExecutionBackend
from create3_race.race.cancellation import ShutdownToken
from create3_race.race.models import AttemptOutcome, AttemptState, RaceResult, Workload

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResolveOnce(Generic[T]):
    """Single-slot resolution: the first ``try_resolve`` wins, later ones are ignored."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resolved = threading.Event()
        self._winner: str | None = None
        self._value: T | None = None

    def try_resolve(self, winner: str, value: T) -> bool:
        with self._lock:
            if self._resolved.is_set():
                return False
            self._winner = winner
            self._value = value
            self._resolved.set()
            return True

    @property
    def resolved(self) -> bool:
        return self._resolved.is_set()

    @property
    def winner(self) -> str | None:
        return self._winner

    @property
    def value(self) -> T | None:
        return self._value


class RaceCoordinator:
    """Fans a workload out to N workers and keeps the first parseable success."""

    def __init__(
        self,
        *,
        backend: ExecutionBackend,
        replication_factor: int = 3,
        race_timeout_seconds: float = 1_800.0,
        cancel_timeout_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        if replication_factor < 1:
            raise ValueError(f"replication_factor must be >= 1, got {replication_factor}")
        self.backend = backend
        self.replication_factor = replication_factor
        self.race_timeout_seconds = race_timeout_seconds
        self.cancel_timeout_seconds = cancel_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def race(
        self,
        workload: Workload,
        *,
        replication_factor: int | None = None,
        token: ShutdownToken | None = None,
        race_id: str | None = None,
    ) -> RaceResult:
        """Run the race and return the winning result.

        Raises:
            RaceFailure: every attempt terminated without a parseable success,
                or the race deadline expired.
            RaceAborted: ``token`` requested shutdown before a winner emerged.
        """

        count = replication_factor if replication_factor is not None else self.replication_factor
        if count < 1:
            raise ValueError(f"replication_factor must be >= 1, got {count}")
        race_id = race_id or uuid4().hex[:12]

        attempts = [
            WorkerAttempt(
                attempt_id=f"{race_id}-{index}",
                attempt_index=index,
                backend=self.backend,
                cancel_timeout_seconds=self.cancel_timeout_seconds,
            )
            for index in range(1, count + 1)
        ]
        slot: ResolveOnce[RaceResult] = ResolveOnce()
        outcomes: queue.Queue[AttemptOutcome] = queue.Queue()

        logger.info("Race %s starting %d attempts: %s", race_id, count, workload.command)
        for attempt in attempts:
            threading.Thread(
                target=self._run_attempt,
                args=(attempt, workload, slot, outcomes),
                daemon=True,
                name=f"attempt-{attempt.attempt_id}",
            ).start()

        finished: list[AttemptOutcome] = []
        deadline = time.monotonic() + self.race_timeout_seconds
        while True:
            # A winner resolved before the guards were sampled takes precedence.
            aborted = token is not None and token.is_requested()
            expired = time.monotonic() >= deadline
            if slot.resolved:
                result = slot.value
                assert result is not None
                logger.info(
                    "Race %s won by %s: salt=%s address=%s",
                    race_id,
                    slot.winner,
                    result.salt,
                    result.address,
                )
                self._cancel_remaining(race_id, attempts, winner=slot.winner)
                return result
            if len(finished) >= count:
                break
            if aborted:
                assert token is not None
                self._cancel_remaining(race_id, attempts, winner=None)
                raise RaceAborted(
                    f"Race {race_id} aborted: {token.reason or 'shutdown requested'}",
                    outcomes=finished,
                )
            if expired:
                self._cancel_remaining(race_id, attempts, winner=None)
                raise RaceFailure(
                    f"Race {race_id} timed out after {self.race_timeout_seconds:g}s "
                    f"with {len(finished)}/{count} attempts finished",
                    outcomes=finished,
                )
            try:
                outcome = outcomes.get(timeout=self.poll_interval_seconds)
            except queue.Empty:
                continue
            finished.append(outcome)

        raise RaceFailure(
            f"Race {race_id}: all {count} attempts failed ({_summarize(finished)})",
            outcomes=finished,
        )

    def _run_attempt(
        self,
        attempt: WorkerAttempt,
        workload: Workload,
        slot: ResolveOnce[RaceResult],
        outcomes: queue.Queue[AttemptOutcome],
    ) -> None:
        try:
            outcome = attempt.run(workload)
        except Exception as error:  # noqa: BLE001
            logger.exception("Attempt %s crashed", attempt.attempt_id)
            outcome = AttemptOutcome(
                attempt_id=attempt.attempt_id,
                state=AttemptState.FAILED,
                output=attempt.output,
                error=f"{type(error).__name__}: {error}",
            )
        if outcome.succeeded and outcome.result is not None:
            if not slot.try_resolve(attempt.attempt_id, outcome.result):
                logger.info(
                    "Attempt %s succeeded after the race was resolved; result discarded",
                    attempt.attempt_id,
                )
        outcomes.put(outcome)

    def _cancel_remaining(
        self,
        race_id: str,
        attempts: Sequence[WorkerAttempt],
        *,
        winner: str | None,
    ) -> threading.Thread:
        losers = [
            attempt
            for attempt in attempts
            if attempt.attempt_id != winner and not attempt.is_terminal
        ]
        thread = threading.Thread(
            target=_cancel_all,
            args=(losers,),
            daemon=True,
            name=f"race-{race_id}-cancel",
        )
        thread.start()
        return thread


def _cancel_all(attempts: Sequence[WorkerAttempt]) -> None:
    for attempt in attempts:
        try:
            attempt.cancel()
        except Exception:  # noqa: BLE001
            logger.exception("Cancelling attempt %s failed", attempt.attempt_id)


def _summarize(outcomes: Sequence[AttemptOutcome]) -> str:
    return "; ".join(
        f"{outcome.attempt_id}={outcome.state.value}"
        + (f" ({outcome.error})" if outcome.error else "")
        for outcome in outcomes
    )
