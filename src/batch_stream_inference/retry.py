"""Per-chunk retry state machine.

The backoff delay goes through an injected ``sleep`` coroutine so tests can
drive retries without real time passing.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from batch_stream_inference.errors import is_transient
from batch_stream_inference.models import ChunkState, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryingCall:
    """Runs one call under a ``RetryPolicy``, tracking state and attempts.

    ``on_state`` is invoked on every transition, which lets the coordinator
    report per-chunk progress without sharing this object.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep: Sleep = asyncio.sleep,
        on_state: Callable[[ChunkState], None] | None = None,
        label: str = "call",
    ):
        self.policy = policy
        self.attempts = 0
        self.state = ChunkState.PENDING
        self._sleep = sleep
        self._on_state = on_state
        self._label = label

    def _transition(self, state: ChunkState) -> None:
        self.state = state
        if self._on_state is not None:
            self._on_state(state)

    async def run(self, call: Callable[[], Awaitable[T]]) -> T:
        """Await ``call()`` until it succeeds, fails permanently, or runs out of attempts.

        The last exception is re-raised on failure; ``attempts`` tells how many
        calls were made.  ``asyncio.CancelledError`` is never retried.
        """
        while True:
            self.attempts += 1
            self._transition(ChunkState.ATTEMPTING)
            try:
                result = await call()
            except asyncio.CancelledError:
                self._transition(ChunkState.CANCELLED)
                raise
            except Exception as exc:
                if not is_transient(exc) or self.attempts >= self.policy.max_attempts:
                    self._transition(ChunkState.FAILED)
                    raise
                delay = self.policy.delay_for(self.attempts)
                logger.warning(
                    "%s transient error (attempt %d/%d): %s, retrying in %.2fs",
                    self._label, self.attempts, self.policy.max_attempts, exc, delay,
                )
                self._transition(ChunkState.BACKOFF_WAIT)
                await self._sleep(delay)
                continue
            self._transition(ChunkState.SUCCEEDED)
            return result
