from __future__ import annotations

import hashlib
import sys
import threading
import time

import allure
import pytest
from conftest import ECHO_WORKER_COMMAND_TEMPLATE

from create3_race.config import WorkloadSettings
from create3_race.errors import ExecutionError
from create3_race.race.attempt import WorkerAttempt
from create3_race.race.backend import ShellBackend
from create3_race.race.backend.base import ExecutionRequest
from create3_race.race.backend.echo_worker import main as echo_worker_main
from create3_race.race.coordinator import RaceCoordinator
from create3_race.race.models import AttemptState, Workload
from create3_race.race.workload import build_workload, render_command

pytestmark = [
    allure.epic("Race Core"),
    allure.feature("Shell Worker Backend"),
]


def _workload(command_template: str, *, timeout_seconds: int = 30) -> Workload:
    return build_workload(
        pattern="0xdead",
        deployer="0xdeployer",
        settings=WorkloadSettings(
            command_template=command_template,
            attempt_timeout_seconds=timeout_seconds,
        ),
    )


def _request(workload: Workload, index: int = 1) -> ExecutionRequest:
    return ExecutionRequest(attempt_id=f"shell-{index}", attempt_index=index, workload=workload)


def test_render_command_quotes_placeholders() -> None:
    argv = render_command(
        command_template="./createXcrunch create3 -m {pattern} -c {deployer}",
        pattern="0xdead beef",
        deployer="0xdeployer; rm -rf /",
    )

    assert argv == (
        "./createXcrunch",
        "create3",
        "-m",
        "0xdead beef",
        "-c",
        "0xdeployer; rm -rf /",
    )


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("createXcrunch -c {deployer}", "must include"),
        ("createXcrunch -m {pattern} -c {deployer} {unknown}", "placeholder"),
    ],
)
def test_render_command_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        render_command(command_template=template, pattern="0xdead", deployer="0xdeployer")


def test_echo_worker_prints_deterministic_pair(capsys: pytest.CaptureFixture[str]) -> None:
    assert echo_worker_main(["-m", "0xdead", "-c", "0xdeployer"]) == 0

    digest = hashlib.sha256(b"0xdead:0xdeployer").hexdigest()
    assert capsys.readouterr().out.strip() == f"0x{digest},0x{('dead' + digest)[:40]}"


def test_shell_backend_race_with_echo_worker() -> None:
    backend = ShellBackend()
    coordinator = RaceCoordinator(
        backend=backend,
        replication_factor=2,
        race_timeout_seconds=30.0,
        cancel_timeout_seconds=2.0,
        poll_interval_seconds=0.05,
    )

    try:
        result = coordinator.race(_workload(ECHO_WORKER_COMMAND_TEMPLATE))
    finally:
        backend.close()

    digest = hashlib.sha256(b"0xdead:0xdeployer").hexdigest()
    assert result.salt == f"0x{digest}"
    assert result.address == "0x" + ("dead" + digest)[:40]


def test_shell_backend_reports_non_zero_exit() -> None:
    backend = ShellBackend()
    execution = backend.start(
        _request(_workload(ECHO_WORKER_COMMAND_TEMPLATE + " --exit-code 3")),
    )

    with pytest.raises(ExecutionError, match="exited with 3") as excinfo:
        list(execution.stream())

    assert excinfo.value.exit_code == 3
    assert "simulated failure" in str(excinfo.value)
    backend.close()


def test_shell_backend_missing_command_is_not_transient() -> None:
    backend = ShellBackend()

    with pytest.raises(ExecutionError, match="not found") as excinfo:
        backend.start(_request(_workload("/nonexistent/createXcrunch -m {pattern} -c {deployer}")))

    assert excinfo.value.transient is False


def test_shell_backend_cancel_stops_process_promptly() -> None:
    backend = ShellBackend()
    execution = backend.start(
        _request(_workload(ECHO_WORKER_COMMAND_TEMPLATE + " --delay 30")),
    )
    errors: list[ExecutionError] = []

    def _consume() -> None:
        try:
            list(execution.stream())
        except ExecutionError as error:
            errors.append(error)

    consumer = threading.Thread(target=_consume)
    consumer.start()
    started = time.monotonic()
    execution.cancel(timeout_seconds=2.0)
    consumer.join(timeout=10)

    assert not consumer.is_alive()
    assert time.monotonic() - started < 10
    assert errors
    assert "cancelled" in str(errors[0])


def test_shell_backend_timeout_kills_process() -> None:
    backend = ShellBackend()
    execution = backend.start(
        _request(_workload(ECHO_WORKER_COMMAND_TEMPLATE + " --delay 30", timeout_seconds=1)),
    )

    with pytest.raises(ExecutionError, match="timed out") as excinfo:
        list(execution.stream())

    assert excinfo.value.transient is True
    backend.close()


def test_shell_backend_tolerates_non_utf8_output() -> None:
    code = "import sys; sys.stdout.buffer.write(bytes([255, 254, 44, 48, 120, 65, 65, 10]))"
    backend = ShellBackend()
    attempt = WorkerAttempt(
        attempt_id="shell-1",
        attempt_index=1,
        backend=backend,
        cancel_timeout_seconds=2.0,
    )

    try:
        outcome = attempt.run(
            _workload(f'{sys.executable} -c "{code}" {{pattern}} {{deployer}}'),
        )
    finally:
        backend.close()

    assert outcome.state is AttemptState.SUCCEEDED
    assert attempt.is_terminal
    assert outcome.result is not None
    assert outcome.result.salt == "\ufffd\ufffd"
    assert outcome.result.address == "0xAA"


def test_closed_backend_refuses_new_work() -> None:
    backend = ShellBackend()
    backend.close()

    with pytest.raises(ExecutionError, match="closed"):
        backend.start(_request(_workload(f"{sys.executable} -c pass {{pattern}} {{deployer}}")))
