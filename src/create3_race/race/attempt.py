"""One redundant execution of a race workload against one worker."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from create3_race.errors import ExecutionError, ParseError
from create3_race.race.backend.base import ExecutionBackend, ExecutionRequest, RemoteExecution
from create3_race.race.models import AttemptOutcome, AttemptState, RaceResult, Workload
from create3_race.race.parser import parse_race_output

logger = logging.getLogger(__name__)


class WorkerAttempt:
    """Owns the lifecycle and cancellation of one worker execution.

    State moves ``pending -> running -> succeeded | failed | cancelled``.
    ``cancel()`` may arrive from another thread at any point; whichever of
    cancel and completion takes the lock first decides the terminal state.
    """

    def __init__(
        self,
        *,
        attempt_id: str,
        attempt_index: int,
        backend: ExecutionBackend,
        parser: Callable[[str], RaceResult] = parse_race_output,
        cancel_timeout_seconds: float = 5.0,
    ) -> None:
        self.attempt_id = attempt_id
        self.attempt_index = attempt_index
        self._backend = backend
        self._parser = parser
        self._cancel_timeout_seconds = cancel_timeout_seconds
        self._lock = threading.Lock()
        self._state = AttemptState.PENDING
        self._execution: RemoteExecution | None = None
        self._chunks: list[str] = []

    @property
    def state(self) -> AttemptState:
        with self._lock:
            return self._state

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def output(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    def run(self, workload: Workload) -> AttemptOutcome:
        """Dispatch the workload and block until the attempt terminates."""

        with self._lock:
            dispatchable = self._state is AttemptState.PENDING
            if dispatchable:
                self._state = AttemptState.RUNNING
        if not dispatchable:
            return self._outcome(error="Attempt was cancelled before dispatch.")

        try:
            execution = self._backend.start(
                ExecutionRequest(
                    attempt_id=self.attempt_id,
                    attempt_index=self.attempt_index,
                    workload=workload,
                ),
            )
        except ExecutionError as error:
            return self._finish(AttemptState.FAILED, error=str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Attempt %s backend start crashed", self.attempt_id)
            return self._finish(AttemptState.FAILED, error=f"{type(error).__name__}: {error}")

        with self._lock:
            self._execution = execution
            cancelled_during_start = self._state is AttemptState.CANCELLED
        if cancelled_during_start:
            self._stop_execution(execution)
            return self._outcome(error="Attempt was cancelled during dispatch.")

        try:
            for chunk in execution.stream():
                with self._lock:
                    self._chunks.append(chunk)
        except ExecutionError as error:
            return self._finish(AttemptState.FAILED, error=str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Attempt %s output stream crashed", self.attempt_id)
            self._stop_execution(execution)
            return self._finish(AttemptState.FAILED, error=f"{type(error).__name__}: {error}")

        raw_output = self.output
        try:
            result = self._parser(raw_output)
        except ParseError as error:
            return self._finish(AttemptState.FAILED, error=str(error))
        return self._finish(AttemptState.SUCCEEDED, result=result)

    def cancel(self) -> bool:
        """Stop the attempt unless it already terminated.

        Returns True only for the call that moved the attempt to cancelled.
        """

        with self._lock:
            if self._state.is_terminal:
                return False
            self._state = AttemptState.CANCELLED
            execution = self._execution
        logger.info("Attempt %s cancelled", self.attempt_id)
        if execution is not None:
            self._stop_execution(execution)
        return True

    def _stop_execution(self, execution: RemoteExecution) -> None:
        try:
            execution.cancel(timeout_seconds=self._cancel_timeout_seconds)
        except ExecutionError as error:
            logger.warning("Attempt %s cancel request failed: %s", self.attempt_id, error)

    def _finish(
        self,
        state: AttemptState,
        *,
        result: RaceResult | None = None,
        error: str | None = None,
    ) -> AttemptOutcome:
        with self._lock:
            if self._state is AttemptState.RUNNING:
                self._state = state
            final_state = self._state
        if final_state is not AttemptState.SUCCEEDED:
            result = None
        if final_state is AttemptState.CANCELLED:
            error = error or "Attempt was cancelled."
        elif final_state is AttemptState.FAILED:
            logger.warning("Attempt %s failed: %s", self.attempt_id, error)
        return self._outcome(result=result, error=error)

    def _outcome(
        self,
        *,
        result: RaceResult | None = None,
        error: str | None = None,
    ) -> AttemptOutcome:
        with self._lock:
            return AttemptOutcome(
                attempt_id=self.attempt_id,
                state=self._state,
                output="".join(self._chunks),
                result=result,
                error=error,
            )
