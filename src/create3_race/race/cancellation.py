"""Explicit shutdown signal threaded from the CLI down to every attempt."""

from __future__ import annotations

import threading


class ShutdownToken:
    """One-way shutdown flag shared by an orchestrator and its races."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    def request(self, reason: str = "shutdown") -> bool:
        """Trigger shutdown; returns False when it was already requested."""

        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def is_requested(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout_seconds: float) -> bool:
        """Sleep up to ``timeout_seconds``, waking early on shutdown."""

        return self._event.wait(timeout=max(0.0, timeout_seconds))
