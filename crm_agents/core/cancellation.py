"""Deadlines threaded through every agent dispatch."""
from __future__ import annotations

import time
from typing import Callable, Optional

from .errors import DeadlineExceeded


class Deadline:
    """Cancellation token with an optional time budget.

    A child deadline never outlives its parent and observes the parent's
    cancellation.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        parent: Optional[Deadline] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = clock() + timeout if timeout is not None else None
        self._parent = parent
        self._cancelled = False
        self._reason: Optional[str] = None

    def child(self, timeout: Optional[float] = None) -> Deadline:
        return Deadline(timeout, parent=self, clock=self._clock)

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._parent.cancelled if self._parent else False

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        candidates = []
        if self._expires_at is not None:
            candidates.append(self._expires_at - self._clock())
        if self._parent is not None:
            parent_remaining = self._parent.remaining()
            if parent_remaining is not None:
                candidates.append(parent_remaining)
        if not candidates:
            return None
        return max(0.0, min(candidates))

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise if the deadline has passed or was cancelled."""
        if self.cancelled:
            raise DeadlineExceeded(self._cancel_reason() or "cancelled")
        if self.expired:
            raise DeadlineExceeded("deadline exceeded")

    def _cancel_reason(self) -> Optional[str]:
        if self._cancelled:
            return self._reason
        return self._parent._cancel_reason() if self._parent else None
