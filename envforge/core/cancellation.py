"""Cooperative cancellation shared between a caller and long-running work."""

from __future__ import annotations

import threading

from envforge.core.errors import OperationCancelledError


class CancellationToken:
    """A thread-safe cancel flag.

    Work checks the token between steps; nothing is interrupted mid-step.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            suffix = f" during {where}" if where else ""
            raise OperationCancelledError(f"Operation cancelled{suffix}: {self._reason}")
