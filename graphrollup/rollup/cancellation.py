"""Cooperative cancellation shared between the executor and its worker threads."""

from __future__ import annotations

import threading
from typing import Optional

from .errors import RollupCancelledError, RollupTimeoutError


class CancellationToken:
    """
    Checked by workers between blocks / components, never mid-comparison.
    Thread-safe: set from the event loop, read from matching threads.
    """

    def __init__(self, execution_id: str = "") -> None:
        self.execution_id = execution_id
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None
        self.cancelled_by: Optional[str] = None
        self.timeout_seconds: Optional[float] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self.timeout_seconds is not None

    def cancel(self, reason: Optional[str] = None, cancelled_by: Optional[str] = None) -> bool:
        """Request cancellation; returns False when already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self.cancelled_by = cancelled_by
            self._event.set()
            return True

    def expire(self, timeout_seconds: float) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self.timeout_seconds = timeout_seconds
            self.reason = "timeout"
            self._event.set()
            return True

    def raise_if_cancelled(self) -> None:
        if not self._event.is_set():
            return
        if self.timed_out:
            raise RollupTimeoutError(self.execution_id, self.timeout_seconds or 0)
        raise RollupCancelledError(self.execution_id, self.reason)
