"""Retry and backoff policy for per-unit work."""

import logging
import time
from typing import Any, Callable, Optional, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_incrementing,
)

from mafia_data_platform.config import BackoffStrategy, RetryConfig
from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.errors import (
    CancelReason,
    ErrorClass,
    ImportCancelledError,
    UnitFailure,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_transient(exc: BaseException) -> bool:
    return classify_error(exc) == ErrorClass.TRANSIENT


class RetryPolicy:
    """Runs one unit of work, retrying transient failures.

    Transient errors are retried up to ``max_attempts`` with the configured
    backoff (exponential: initial_delay * 2^(n-1), capped at max_delay).
    Backoff sleeps wait on the cancellation token, so a cancel interrupts a
    sleeping retry immediately.

    Outcome of call():
    - success: the function's return value
    - transient exhausted / permanent: UnitFailure
    - fatal (including cancellation): the original exception
    """

    def __init__(self, config: Optional[RetryConfig] = None, token: Optional[CancellationToken] = None):
        self.config = config or RetryConfig()
        self.token = token

    def _build_wait(self):
        """Build tenacity wait strategy from configuration."""
        if self.config.backoff == BackoffStrategy.EXPONENTIAL:
            return wait_exponential(
                multiplier=self.config.initial_delay,
                max=self.config.max_delay,
            )
        if self.config.backoff == BackoffStrategy.LINEAR:
            return wait_incrementing(
                start=self.config.initial_delay,
                increment=self.config.initial_delay,
                max=self.config.max_delay,
            )
        return wait_fixed(self.config.initial_delay)

    def _sleep(self, seconds: float) -> None:
        if self.token is None:
            time.sleep(seconds)
            return

        if self.token.wait(seconds):
            raise ImportCancelledError(self.token.reason or CancelReason.USER, self.token.message)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Transient failure (attempt {retry_state.attempt_number}), "
            f"retrying in {delay:.1f}s: {exc}"
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``fn`` under this policy.

        Raises:
            UnitFailure: If the unit failed permanently or ran out of attempts
            ImportCancelledError: If the token was raised during a backoff sleep
            Exception: Any fatal error raised by ``fn``
        """
        retrying = Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._build_wait(),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            return retrying(fn, *args, **kwargs)
        except ImportCancelledError:
            raise
        except Exception as exc:
            error_class = classify_error(exc)
            if error_class == ErrorClass.FATAL:
                raise
            attempts = retrying.statistics.get("attempt_number", 1)
            raise UnitFailure(exc, attempts, error_class) from exc
