"""Cooperative cancellation token shared between a caller and a generation worker."""

from __future__ import annotations

import threading

from .errors import GenerationCancelledError

CANCELLED_MESSAGE = "Generation stopped by user"


class CancellationToken:
    """A settable flag polled at explicit checkpoints.

    Setting the flag never interrupts anything by itself; the producer observes
    it at its next checkpoint and terminates on its own.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelledError(CANCELLED_MESSAGE)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
