"""Subprocess-based backend: each attempt runs the workload as a local process."""

from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
from collections.abc import Iterator
from typing import IO

from create3_race.errors import ExecutionError
from create3_race.race.backend.base import ExecutionRequest

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class ShellExecution:
    """One running worker process."""

    def __init__(
        self,
        *,
        attempt_id: str,
        process: subprocess.Popen[str],
        stderr_handle: IO[str],
        timeout_seconds: int,
    ) -> None:
        self.attempt_id = attempt_id
        self._process = process
        self._stderr_handle = stderr_handle
        self._cancelled = False
        self._timed_out = False
        self._timer = threading.Timer(timeout_seconds, self._on_timeout)
        self._timer.daemon = True
        self._timer.start()

    def stream(self) -> Iterator[str]:
        stdout = self._process.stdout
        try:
            if stdout is not None:
                yield from stdout
            returncode = self._process.wait()
        except BaseException:
            self._stderr_handle.close()
            raise
        finally:
            self._timer.cancel()
            if stdout is not None:
                stdout.close()

        stderr_preview = self._read_stderr_preview()
        if self._cancelled:
            raise ExecutionError(
                f"Worker process for {self.attempt_id} was cancelled.",
                transient=False,
                exit_code=returncode,
            )
        if self._timed_out:
            raise ExecutionError(
                f"Worker process for {self.attempt_id} timed out.",
                transient=True,
                exit_code=TIMEOUT_EXIT_CODE,
            )
        if returncode != 0:
            raise ExecutionError(
                f"Worker process for {self.attempt_id} exited with {returncode}: "
                f"{stderr_preview or '<no stderr>'}",
                transient=returncode in {137, 143},
                exit_code=returncode,
            )

    def cancel(self, timeout_seconds: float) -> None:
        self._cancelled = True
        self._timer.cancel()
        _terminate_process(self._process, timeout_seconds=timeout_seconds)

    def _on_timeout(self) -> None:
        self._timed_out = True
        logger.warning("Worker process for %s hit its timeout", self.attempt_id)
        _terminate_process(self._process, timeout_seconds=2.0)

    def _read_stderr_preview(self, limit: int = 1200) -> str:
        try:
            self._stderr_handle.seek(0)
            text = self._stderr_handle.read(limit)
        except (OSError, ValueError):
            return ""
        finally:
            self._stderr_handle.close()
        return text.strip()


class ShellBackend:
    """Run workloads as local subprocesses standing in for remote workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executions: set[ShellExecution] = set()
        self._closed = False

    def start(self, request: ExecutionRequest) -> ShellExecution:
        with self._lock:
            if self._closed:
                raise ExecutionError("Shell backend is closed.", transient=False)

        argv = list(request.workload.argv)
        stderr_handle = tempfile.TemporaryFile(mode="w+", encoding="utf-8")  # noqa: SIM115
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdout=subprocess.PIPE,
                stderr=stderr_handle,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            stderr_handle.close()
            raise ExecutionError(
                f"Worker command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            stderr_handle.close()
            raise ExecutionError(
                f"Worker command failed to start: {error}",
                transient=True,
            ) from error

        logger.info("Attempt %s started worker process pid=%s", request.attempt_id, process.pid)
        execution = ShellExecution(
            attempt_id=request.attempt_id,
            process=process,
            stderr_handle=stderr_handle,
            timeout_seconds=request.workload.timeout_seconds,
        )
        with self._lock:
            self._executions = {item for item in self._executions if item._process.poll() is None}
            self._executions.add(execution)
        return execution

    def close(self) -> None:
        """Stop accepting work and terminate processes still running."""

        with self._lock:
            self._closed = True
            executions = list(self._executions)
            self._executions.clear()
        for execution in executions:
            execution.cancel(timeout_seconds=2.0)


def _terminate_process(process: subprocess.Popen[str], *, timeout_seconds: float) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        try:
            process.wait(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Worker process pid=%s did not exit after kill", process.pid)
