"""Cancellation token passed into every long-running call."""

import threading

from ffu_builder.errors import BuildCancelledError


class CancellationToken:
    """Thread-safe, one-way cancellation flag.

    Long-running loops (tool polling, VM power-state polling, batch
    workers) check the token at each interval and stop when it fires.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Fire the token. Idempotent."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether the token has fired."""
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise BuildCancelledError if the token has fired."""
        if self._event.is_set():
            raise BuildCancelledError()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation.

        Returns:
            True if the token fired.
        """
        return self._event.wait(timeout)


__all__ = ["CancellationToken"]
