"""Cooperative cancellation shared by workflow runs and orchestration runs."""

from __future__ import annotations

import threading


class CancelToken:
    """Flag checked between steps; never interrupts an in-flight call."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
