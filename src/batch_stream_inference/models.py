"""Value types shared by the coordinator, the sync wrappers and callers."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from batch_stream_inference.errors import ErrorKind, InvalidArgumentError

DEFAULT_CHUNK_SIZE = 16
DEFAULT_MAX_CONCURRENCY = 5


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class ChunkState(str, Enum):
    """Per-chunk dispatch state.

    ``PENDING -> ATTEMPTING -> (SUCCEEDED | BACKOFF_WAIT -> ATTEMPTING | FAILED)``,
    and ``CANCELLED`` from any non-terminal state.
    """

    PENDING = "pending"
    ATTEMPTING = "attempting"
    BACKOFF_WAIT = "backoff_wait"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings for one chunk.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` disables
    retries.  The delay after failed attempt *n* is
    ``min(initial_delay * 2 ** (n - 1), max_delay)``.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if not _is_positive_int(self.max_attempts):
            raise InvalidArgumentError(f"max_attempts must be a positive integer, got {self.max_attempts!r}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise InvalidArgumentError("retry delays must not be negative")
        if self.max_delay < self.initial_delay:
            raise InvalidArgumentError("max_delay must be >= initial_delay")

    def delay_for(self, attempt: int) -> float:
        return min(self.initial_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass(frozen=True)
class BatchOptions:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    # Stop the whole job after the first chunk that exhausts its retries.
    fail_fast: bool = False

    def validate(self) -> None:
        if not _is_positive_int(self.chunk_size):
            raise InvalidArgumentError(f"chunk_size must be a positive integer, got {self.chunk_size!r}")
        if not _is_positive_int(self.max_concurrency):
            raise InvalidArgumentError(
                f"max_concurrency must be a positive integer, got {self.max_concurrency!r}"
            )


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of the job's input, sent as one request."""

    index: int
    start: int
    items: tuple

    @property
    def positions(self) -> range:
        return range(self.start, self.start + len(self.items))


def partition(items: Sequence[Any], chunk_size: int) -> list[Chunk]:
    """Split *items* into ``ceil(len(items) / chunk_size)`` ordered chunks."""
    if not _is_positive_int(chunk_size):
        raise InvalidArgumentError(f"chunk_size must be a positive integer, got {chunk_size!r}")
    count = math.ceil(len(items) / chunk_size)
    return [
        Chunk(index=i, start=i * chunk_size, items=tuple(items[i * chunk_size:(i + 1) * chunk_size]))
        for i in range(count)
    ]


@dataclass(frozen=True)
class ChunkOutcome:
    chunk: Chunk
    payloads: list | None = None
    error: BaseException | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.payloads is not None


@dataclass(frozen=True)
class ItemFailure:
    kind: ErrorKind
    message: str
    attempts: int
    chunk_index: int


@dataclass(frozen=True)
class ItemResult:
    index: int
    payload: Any = None
    failure: ItemFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class BatchSummary:
    total: int
    succeeded: int
    failed: int


@dataclass(frozen=True)
class BatchResult:
    """Final per-item outcome of a job, ordered by original input index."""

    job_id: str
    state: JobState
    items: tuple[ItemResult, ...]

    @property
    def summary(self) -> BatchSummary:
        succeeded = sum(1 for item in self.items if item.ok)
        return BatchSummary(total=len(self.items), succeeded=succeeded, failed=len(self.items) - succeeded)

    def payloads(self) -> list[Any]:
        """Success payloads in input order, ``None`` where the item failed."""
        return [item.payload if item.ok else None for item in self.items]

    def failures(self) -> list[ItemResult]:
        return [item for item in self.items if not item.ok]


@dataclass(frozen=True)
class BatchStatus:
    job_id: str
    state: JobState
    total_items: int
    total_chunks: int
    pending_chunks: int
    running_chunks: int
    succeeded_chunks: int
    failed_chunks: int
    cancelled_chunks: int
