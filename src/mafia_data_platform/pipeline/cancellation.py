"""Cooperative cancellation for a single import run."""

import logging
import threading
import time
from typing import Optional

from mafia_data_platform.pipeline.errors import (
    CANCELLED_BY_USER_MESSAGE,
    CancelReason,
    ImportCancelledError,
    timeout_message,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancellation flag shared by everything in one run.

    The token is raised once, either explicitly via cancel() or implicitly
    when its deadline passes (reason TIMEOUT). Observers poll is_cancelled,
    call raise_if_cancelled() at unit boundaries, or block on wait() during
    backoff sleeps.

    Example:
        >>> token = CancellationToken(max_duration_hours=12)
        >>> token.cancel()
        True
        >>> token.is_cancelled
        True
    """

    def __init__(self, max_duration_hours: Optional[float] = None, clock=time.monotonic):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._clock = clock
        self._reason: Optional[CancelReason] = None
        self.max_duration_hours = max_duration_hours
        self.deadline: Optional[float] = (
            clock() + max_duration_hours * 3600 if max_duration_hours else None
        )

    # ========================================================================
    # RAISING
    # ========================================================================

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Raise the token.

        Returns:
            True if this call raised the token, False if it was already raised
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()

        logger.info(f"Cancellation requested (reason={reason.value})")
        return True

    def _check_deadline(self) -> None:
        if self.deadline is not None and not self._event.is_set() and self._clock() >= self.deadline:
            self.cancel(CancelReason.TIMEOUT)

    # ========================================================================
    # OBSERVING
    # ========================================================================

    @property
    def is_cancelled(self) -> bool:
        self._check_deadline()
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        self._check_deadline()
        return self._reason

    @property
    def message(self) -> str:
        """User-facing cancellation reason."""
        if self.reason == CancelReason.TIMEOUT:
            return timeout_message(self.max_duration_hours or 0)
        return CANCELLED_BY_USER_MESSAGE

    def raise_if_cancelled(self) -> None:
        """Raise ImportCancelledError if the token has been raised."""
        if self.is_cancelled:
            raise ImportCancelledError(self._reason or CancelReason.USER, self.message)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancellation.

        Returns:
            True if the token was raised while (or before) waiting
        """
        if self.deadline is not None:
            seconds = max(0.0, min(seconds, self.deadline - self._clock()))

        cancelled = self._event.wait(seconds)
        return cancelled or self.is_cancelled
