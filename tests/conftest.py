"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from create3_race.errors import ExecutionError
from create3_race.jobs.repository import JobRepository
from create3_race.race.backend.base import ExecutionRequest
from create3_race.race.models import Workload

ECHO_WORKER_COMMAND_TEMPLATE = (
    f"{sys.executable} -m create3_race.race.backend.echo_worker -m {{pattern}} -c {{deployer}}"
)


@dataclass(slots=True)
class Script:
    """Scripted behaviour of one fake worker."""

    delay: float = 0.0
    output: str = ""
    error: str | None = None
    start_error: str | None = None


class FakeExecution:
    def __init__(self, *, attempt_id: str, script: Script) -> None:
        self.attempt_id = attempt_id
        self.script = script
        self.cancel_calls = 0
        self.cancelled = threading.Event()
        self.finished = threading.Event()

    def stream(self) -> Iterator[str]:
        try:
            if self.cancelled.wait(self.script.delay):
                raise ExecutionError(f"{self.attempt_id} stopped", transient=False)
            if self.script.error is not None:
                raise ExecutionError(self.script.error, transient=True, exit_code=1)
            middle = len(self.script.output) // 2
            for chunk in (self.script.output[:middle], self.script.output[middle:]):
                if chunk:
                    yield chunk
        finally:
            self.finished.set()

    def cancel(self, timeout_seconds: float) -> None:
        self.cancel_calls += 1
        self.cancelled.set()


class ScriptedBackend:
    """Backend whose workers follow per-attempt-index scripts."""

    def __init__(self, scripts: list[Script]) -> None:
        self.scripts = scripts
        self.executions: dict[int, FakeExecution] = {}
        self.requests: list[ExecutionRequest] = []
        self.closed = False
        self._lock = threading.Lock()

    def start(self, request: ExecutionRequest) -> FakeExecution:
        script = self.scripts[(request.attempt_index - 1) % len(self.scripts)]
        with self._lock:
            self.requests.append(request)
        if script.start_error is not None:
            raise ExecutionError(script.start_error, transient=True)
        execution = FakeExecution(attempt_id=request.attempt_id, script=script)
        with self._lock:
            self.executions[request.attempt_index] = execution
        return execution

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def workload() -> Workload:
    return Workload(
        argv=("createXcrunch", "create3", "-m", "0xdead", "-c", "0xdeployer"),
        image_hash="test-image",
        rent_hours=0.1,
        timeout_seconds=30,
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
