"""Cooperative cancellation shared by every pipeline loop."""

from __future__ import annotations

import logging
import threading

from .errors import ArchiverError

logger = logging.getLogger("archiver.cancel")


class CancelToken:
    """A one-shot stop signal.

    Loops call :meth:`sleep` for delays so a cancel wakes them immediately,
    and check :attr:`cancelled` at the top of every iteration and before every
    network call.  Cancelling never interrupts an in-flight request.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: BaseException | str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: BaseException | str | None = None) -> bool:
        """Set the signal.  Returns True only for the call that actually cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
        logger.debug("Cancelled: %s", reason)
        return True

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``.  Returns False if woken by cancellation."""
        if seconds <= 0:
            return not self.cancelled
        return not self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if not self.cancelled:
            return
        if isinstance(self.reason, BaseException):
            raise self.reason
        raise ArchiverError(self.reason or "cancelled")
