"""Unit tests for RetryPolicy."""

from unittest.mock import MagicMock

import pytest
from tenacity import wait_exponential, wait_fixed, wait_incrementing

from mafia_data_platform.config import BackoffStrategy, RetryConfig
from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.errors import (
    ErrorClass,
    ImportCancelledError,
    PermanentUnitError,
    TransientUnitError,
    UnitFailure,
)
from mafia_data_platform.pipeline.retry import RetryPolicy


@pytest.fixture
def instant() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_delay=0, max_delay=0)


class TestRetryPolicyCall:
    """Test RetryPolicy.call()."""

    def test_success_returns_value(self, instant):
        fn = MagicMock(return_value=5)

        assert RetryPolicy(instant).call(fn, "a", key="b") == 5
        fn.assert_called_once_with("a", key="b")

    def test_transient_twice_then_success(self, instant):
        fn = MagicMock(side_effect=[TransientUnitError("blip"), TransientUnitError("blip"), 7])

        assert RetryPolicy(instant).call(fn) == 7
        assert fn.call_count == 3

    def test_transient_exhausted_raises_unit_failure(self, instant, make_http_error):
        fn = MagicMock(side_effect=make_http_error(503))

        with pytest.raises(UnitFailure) as exc_info:
            RetryPolicy(instant).call(fn)

        assert fn.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.error_class == ErrorClass.TRANSIENT

    def test_permanent_error_is_not_retried(self, instant, make_http_error):
        fn = MagicMock(side_effect=make_http_error(404))

        with pytest.raises(UnitFailure) as exc_info:
            RetryPolicy(instant).call(fn)

        assert fn.call_count == 1
        assert exc_info.value.attempts == 1
        assert exc_info.value.error_class == ErrorClass.PERMANENT

    def test_fatal_error_propagates_unchanged(self, instant):
        fn = MagicMock(side_effect=RuntimeError("bug"))

        with pytest.raises(RuntimeError, match="bug"):
            RetryPolicy(instant).call(fn)
        assert fn.call_count == 1

    def test_cancellation_propagates(self, instant):
        fn = MagicMock(side_effect=ImportCancelledError())

        with pytest.raises(ImportCancelledError):
            RetryPolicy(instant).call(fn)

    def test_cancel_interrupts_backoff_sleep(self):
        config = RetryConfig(max_attempts=5, initial_delay=30, max_delay=60)
        token = CancellationToken()

        def fail_and_cancel():
            token.cancel()
            raise TransientUnitError("blip")

        with pytest.raises(ImportCancelledError):
            RetryPolicy(config, token).call(fail_and_cancel)

    def test_permanent_unit_error_code_is_kept(self, instant):
        fn = MagicMock(side_effect=PermanentUnitError("gone"))

        with pytest.raises(UnitFailure) as exc_info:
            RetryPolicy(instant).call(fn)

        assert exc_info.value.error_class == ErrorClass.PERMANENT


class TestBuildWait:
    """Test backoff strategy mapping."""

    @pytest.mark.parametrize(
        "backoff,expected",
        [
            (BackoffStrategy.EXPONENTIAL, wait_exponential),
            (BackoffStrategy.LINEAR, wait_incrementing),
            (BackoffStrategy.CONSTANT, wait_fixed),
        ],
    )
    def test_strategy_types(self, backoff, expected):
        policy = RetryPolicy(RetryConfig(backoff=backoff))

        assert isinstance(policy._build_wait(), expected)
