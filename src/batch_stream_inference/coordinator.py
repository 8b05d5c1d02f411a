"""Chunked, concurrent, retrying batch submission.

``BatchCoordinator.submit`` splits the input into chunks of at most
``chunk_size`` items and starts one task per chunk.  An
``asyncio.Semaphore(max_concurrency)`` bounds how many chunk requests are in
flight.  Each chunk is retried on transient errors according to its
``RetryPolicy``.  Outcomes are merged under the job's lock into slots indexed
by original input position, so the final ``BatchResult`` does not depend on
completion order.

A chunk that fails does not stop the job unless ``fail_fast`` is set.  Waiting
on a job never affects it; only ``cancel`` does.
"""

import asyncio
import functools
import logging
import uuid
from typing import Any, AsyncIterator, Iterable

from batch_stream_inference.errors import (
    ErrorKind,
    InvalidArgumentError,
    JobNotFoundError,
    WaitCancelledError,
    classify_error,
)
from batch_stream_inference.invoker import EndpointInvoker
from batch_stream_inference.models import (
    BatchOptions,
    BatchResult,
    BatchStatus,
    Chunk,
    ChunkOutcome,
    ChunkState,
    ItemFailure,
    ItemResult,
    JobState,
    partition,
)
from batch_stream_inference.operations import BatchOperation, get_operation
from batch_stream_inference.retry import RetryingCall, Sleep

logger = logging.getLogger(__name__)


class BatchJob:
    """Handle for one submission.  Mutated only by its ``BatchCoordinator``."""

    def __init__(
        self,
        job_id: str,
        model: str,
        operation: BatchOperation,
        items: tuple,
        options: BatchOptions,
    ):
        self.id = job_id
        self.model = model
        self.operation = operation
        self.items = items
        self.options = options
        self.chunks: list[Chunk] = partition(items, options.chunk_size)
        self.state = JobState.PENDING
        self._chunk_states = [ChunkState.PENDING] * len(self.chunks)
        self._slots: list[ItemResult | None] = [None] * len(items)
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._outcomes: asyncio.Queue[ChunkOutcome | None] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._supervisor: asyncio.Task | None = None
        self._result: BatchResult | None = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def result(self) -> BatchResult | None:
        """The final result once the job is terminal, else None."""
        return self._result

    def status(self) -> BatchStatus:
        states = self._chunk_states
        running = sum(1 for s in states if s in (ChunkState.ATTEMPTING, ChunkState.BACKOFF_WAIT))
        return BatchStatus(
            job_id=self.id,
            state=self.state,
            total_items=len(self.items),
            total_chunks=len(self.chunks),
            pending_chunks=states.count(ChunkState.PENDING),
            running_chunks=running,
            succeeded_chunks=states.count(ChunkState.SUCCEEDED),
            failed_chunks=states.count(ChunkState.FAILED),
            cancelled_chunks=states.count(ChunkState.CANCELLED),
        )

    async def outcomes(self) -> AsyncIterator[ChunkOutcome]:
        """Yield each chunk outcome as it is merged, in completion order.

        Single consumer: outcomes are handed out once.  Ends when the job is
        terminal, including the synthesized outcomes of cancelled chunks.
        """
        while True:
            outcome = await self._outcomes.get()
            if outcome is None:
                return
            yield outcome

    def results_for(self, chunk: Chunk) -> list[ItemResult | None]:
        """Item results merged so far for *chunk*, in input order."""
        return [self._slots[position] for position in chunk.positions]

    def _set_chunk_state(self, index: int, state: ChunkState) -> None:
        self._chunk_states[index] = state

    def _fill(self, outcome: ChunkOutcome) -> None:
        chunk = outcome.chunk
        if outcome.succeeded:
            for position, payload in zip(chunk.positions, outcome.payloads):
                self._slots[position] = ItemResult(index=position, payload=payload)
            self._chunk_states[chunk.index] = ChunkState.SUCCEEDED
            return
        failure = ItemFailure(
            kind=outcome.error_kind,
            message=str(outcome.error) or type(outcome.error).__name__,
            attempts=outcome.attempts,
            chunk_index=chunk.index,
        )
        for position in chunk.positions:
            self._slots[position] = ItemResult(index=position, failure=failure)
        self._chunk_states[chunk.index] = (
            ChunkState.CANCELLED if outcome.error_kind is ErrorKind.CANCELLED else ChunkState.FAILED
        )

    async def _merge(self, outcome: ChunkOutcome) -> None:
        async with self._lock:
            self._fill(outcome)
        self._outcomes.put_nowait(outcome)

    async def _finalize(self) -> None:
        async with self._lock:
            reason = "batch job failed fast" if self.state is JobState.FAILED else "batch job cancelled"
            for chunk in self.chunks:
                if all(self._slots[p] is not None for p in chunk.positions):
                    continue
                outcome = ChunkOutcome(
                    chunk=chunk,
                    error=asyncio.CancelledError(reason),
                    error_kind=ErrorKind.CANCELLED,
                )
                self._fill(outcome)
                self._outcomes.put_nowait(outcome)
            if not self.state.is_terminal:
                self.state = JobState.COMPLETED
            self._result = BatchResult(job_id=self.id, state=self.state, items=tuple(self._slots))
        self._outcomes.put_nowait(None)
        self._done.set()


class BatchCoordinator:
    """Submits batch jobs and tracks them until they finish.

    Jobs stay in this instance's registry until ``forget`` drops them.
    ``sleep`` is used for retry backoff and may be replaced in tests.
    """

    def __init__(self, invoker: EndpointInvoker | None = None, *, sleep: Sleep = asyncio.sleep):
        self._invoker = invoker if invoker is not None else EndpointInvoker()
        self._sleep = sleep
        self._jobs: dict[str, BatchJob] = {}

    def jobs(self) -> list[str]:
        return list(self._jobs)

    def get(self, job_id: str) -> BatchJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id) from None

    def forget(self, job_id: str) -> BatchResult:
        """Drop a finished job from the registry and return its result.

        Raises ``InvalidArgumentError`` while the job is still running; cancel
        it first if it must go.
        """
        job = self.get(job_id)
        if not job.done:
            raise InvalidArgumentError(f"Batch job {job_id} is still {job.state.value}")
        del self._jobs[job_id]
        return job.result

    async def submit(
        self,
        items: Iterable[Any],
        model: str,
        options: BatchOptions | None = None,
        *,
        operation: str = "embeddings",
    ) -> BatchJob:
        """Validate, partition and schedule *items*; return without waiting."""
        options = options if options is not None else BatchOptions()
        options.validate()
        op = get_operation(operation)
        items = tuple(items)
        if not items:
            raise InvalidArgumentError("items must not be empty")
        if not isinstance(model, str) or not model:
            raise InvalidArgumentError("model must be a non-empty string")

        job = BatchJob(f"batch_{uuid.uuid4().hex}", model, op, items, options)
        self._jobs[job.id] = job
        semaphore = asyncio.Semaphore(options.max_concurrency)
        job._tasks = [
            asyncio.create_task(self._dispatch(job, chunk, semaphore), name=f"{job.id}:{chunk.index}")
            for chunk in job.chunks
        ]
        job._supervisor = asyncio.create_task(self._supervise(job), name=f"{job.id}:supervisor")
        logger.info(
            "Submitted batch %s: %d items in %d chunks (operation=%s, model=%s, max_concurrency=%d)",
            job.id, len(items), len(job.chunks), op.name, model, options.max_concurrency,
        )
        return job

    def status(self, job_id: str) -> BatchStatus:
        return self.get(job_id).status()

    async def wait_for_completion(
        self,
        job_id: str,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Suspend until the job is terminal and return its result.

        Raises ``WaitCancelledError`` if *timeout* elapses or *cancel_event*
        is set first; an already-set event or a non-positive timeout fails
        without suspending.  The job keeps running either way.
        """
        job = self.get(job_id)
        if job.done:
            return job.result
        if cancel_event is not None and cancel_event.is_set():
            raise WaitCancelledError(job_id, "cancel event already set")
        if timeout is not None and timeout <= 0:
            raise WaitCancelledError(job_id, "timeout elapsed")

        waiters = {asyncio.ensure_future(job._done.wait())}
        if cancel_event is not None:
            waiters.add(asyncio.ensure_future(cancel_event.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if job.done:
            return job.result
        if cancel_event is not None and cancel_event.is_set():
            raise WaitCancelledError(job_id, "cancel event set")
        raise WaitCancelledError(job_id, f"timeout of {timeout}s elapsed")

    async def cancel(self, job_id: str) -> BatchResult:
        """Cancel every pending and in-flight chunk and mark the job ``CANCELLED``.

        Items without an outcome are recorded as cancelled failures.  A job
        that is already terminal is returned unchanged.
        """
        job = self.get(job_id)
        if not job.done:
            self._abort(job, JobState.CANCELLED)
            await job._done.wait()
        return job.result

    def _abort(self, job: BatchJob, state: JobState) -> None:
        if job.state.is_terminal:
            return
        logger.info("Aborting batch %s (%s)", job.id, state.value)
        job.state = state
        current = asyncio.current_task()
        for task in job._tasks:
            if task is not current:
                task.cancel()

    async def _invoke_chunk(self, job: BatchJob, chunk: Chunk) -> list[Any]:
        payload = job.operation.build_payload(job.model, chunk.items)
        body = await self._invoker.invoke(job.operation.name, payload)
        return job.operation.split_response(body, len(chunk.items))

    async def _dispatch(self, job: BatchJob, chunk: Chunk, semaphore: asyncio.Semaphore) -> ChunkOutcome:
        async with semaphore:
            if job.state is JobState.PENDING:
                job.state = JobState.RUNNING
            logger.debug("Batch %s dispatching chunk %d (%d items)", job.id, chunk.index, len(chunk.items))
            retrying = RetryingCall(
                job.options.retry,
                sleep=self._sleep,
                on_state=functools.partial(job._set_chunk_state, chunk.index),
                label=f"Batch {job.id} chunk {chunk.index}",
            )
            try:
                payloads = await retrying.run(lambda: self._invoke_chunk(job, chunk))
            except Exception as exc:
                logger.warning(
                    "Batch %s chunk %d failed after %d attempt(s): %s",
                    job.id, chunk.index, retrying.attempts, exc,
                )
                outcome = ChunkOutcome(
                    chunk=chunk, error=exc, error_kind=classify_error(exc), attempts=retrying.attempts,
                )
            else:
                outcome = ChunkOutcome(chunk=chunk, payloads=payloads, attempts=retrying.attempts)
        await job._merge(outcome)
        if not outcome.succeeded and job.options.fail_fast:
            self._abort(job, JobState.FAILED)
        return outcome

    async def _supervise(self, job: BatchJob) -> None:
        results = await asyncio.gather(*job._tasks, return_exceptions=True)
        for chunk, result in zip(job.chunks, results):
            if isinstance(result, Exception):
                logger.error("Batch %s chunk %d task crashed", job.id, chunk.index, exc_info=result)
        await job._finalize()
        summary = job.result.summary
        logger.info(
            "Batch %s %s: %d/%d items succeeded, %d failed",
            job.id, job.state.value, summary.succeeded, summary.total, summary.failed,
        )
