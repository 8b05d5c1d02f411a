"""Tests for the per-chunk retry state machine, with sleep injected."""

import asyncio
from unittest.mock import AsyncMock, call

import pytest

from batch_stream_inference.errors import PermanentFailureError, TransientError
from batch_stream_inference.models import ChunkState, RetryPolicy
from batch_stream_inference.retry import RetryingCall


def _run(coro):
    return asyncio.run(coro)


class TestRetryingCall:
    def test_success_after_two_transient_failures(self, no_sleep):
        fn = AsyncMock(side_effect=[TransientError("503"), TransientError("503"), "ok"])
        states = []
        retrying = RetryingCall(
            RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=10.0),
            sleep=no_sleep,
            on_state=states.append,
        )
        assert _run(retrying.run(fn)) == "ok"
        assert retrying.attempts == 3
        assert retrying.state is ChunkState.SUCCEEDED
        assert no_sleep.await_args_list == [call(1.0), call(2.0)]
        assert states == [
            ChunkState.ATTEMPTING, ChunkState.BACKOFF_WAIT,
            ChunkState.ATTEMPTING, ChunkState.BACKOFF_WAIT,
            ChunkState.ATTEMPTING, ChunkState.SUCCEEDED,
        ]

    def test_exhausted_attempts_reraise_last_error(self, no_sleep):
        fn = AsyncMock(side_effect=[TransientError("first"), TransientError("second")])
        retrying = RetryingCall(RetryPolicy(max_attempts=2), sleep=no_sleep)
        with pytest.raises(TransientError, match="second"):
            _run(retrying.run(fn))
        assert retrying.attempts == 2
        assert retrying.state is ChunkState.FAILED
        assert no_sleep.await_count == 1

    def test_permanent_failure_is_not_retried(self, no_sleep):
        fn = AsyncMock(side_effect=PermanentFailureError("invalid input"))
        retrying = RetryingCall(RetryPolicy(max_attempts=5), sleep=no_sleep)
        with pytest.raises(PermanentFailureError):
            _run(retrying.run(fn))
        assert retrying.attempts == 1
        assert fn.await_count == 1
        no_sleep.assert_not_awaited()

    def test_backoff_is_capped(self, no_sleep):
        fn = AsyncMock(side_effect=[TransientError("x")] * 4 + ["ok"])
        retrying = RetryingCall(RetryPolicy(max_attempts=5, initial_delay=2.0, max_delay=5.0), sleep=no_sleep)
        _run(retrying.run(fn))
        assert [c.args[0] for c in no_sleep.await_args_list] == [2.0, 4.0, 5.0, 5.0]

    def test_cancellation_is_not_retried(self, no_sleep):
        fn = AsyncMock(side_effect=asyncio.CancelledError())
        retrying = RetryingCall(RetryPolicy(max_attempts=3), sleep=no_sleep)
        with pytest.raises(asyncio.CancelledError):
            _run(retrying.run(fn))
        assert retrying.state is ChunkState.CANCELLED
        assert fn.await_count == 1
