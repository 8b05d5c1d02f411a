"""Synchronous entry points over ``BatchCoordinator``.

``stream_batch``
    Submit the items in chunks and **yield each (index, ItemResult) as its
    chunk completes**.  Lets the caller persist results incrementally.

``run_batch``
    Block until the whole job is done and return the ordered ``BatchResult``.

Both run a temporary event loop in the calling thread.  Without an explicit
``invoker`` they share the module-level ``AsyncOpenAI`` client to keep TCP
connections alive.
"""

import asyncio
import logging
from typing import Any, Generator, Iterable

from batch_stream_inference.coordinator import BatchCoordinator
from batch_stream_inference.invoker import EndpointInvoker
from batch_stream_inference.models import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_CONCURRENCY,
    BatchOptions,
    BatchResult,
    ItemResult,
    RetryPolicy,
)

logger = logging.getLogger(__name__)


def _options(chunk_size: int, max_concurrency: int, retry: RetryPolicy | None, fail_fast: bool) -> BatchOptions:
    return BatchOptions(
        chunk_size=chunk_size,
        max_concurrency=max_concurrency,
        retry=retry if retry is not None else RetryPolicy(),
        fail_fast=fail_fast,
    )


def stream_batch(
    items: Iterable[Any],
    model: str,
    *,
    operation: str = "embeddings",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    retry: RetryPolicy | None = None,
    fail_fast: bool = False,
    invoker: EndpointInvoker | None = None,
) -> Generator[tuple[int, ItemResult], None, None]:
    """Submit *items* and **yield** ``(index, ItemResult)`` as each chunk lands.

    Results arrive in **chunk completion order**, *not* input order; within
    a chunk, items come in input order.  Failed chunks are yielded as
    failures; they never kill the batch.
    """
    options = _options(chunk_size, max_concurrency, retry, fail_fast)
    items = list(items)
    loop = asyncio.new_event_loop()

    async def _run():
        coordinator = BatchCoordinator(invoker)
        job = await coordinator.submit(items, model, options, operation=operation)
        try:
            async for outcome in job.outcomes():
                for item in job.results_for(outcome.chunk):
                    yield item.index, item
        finally:
            # Caller stopped iterating early.
            if not job.done:
                await coordinator.cancel(job.id)

    agen = _run()
    try:
        while True:
            try:
                yield loop.run_until_complete(agen.__anext__())
            except StopAsyncIteration:
                break
    finally:
        # Drain pending async generator cleanup (httpx connection callbacks)
        # while the loop is still open, then close the loop.  The client
        # itself is NOT closed; it's a module-level singleton reused across
        # calls.
        loop.run_until_complete(agen.aclose())
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()


def run_batch(
    items: Iterable[Any],
    model: str,
    *,
    operation: str = "embeddings",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    retry: RetryPolicy | None = None,
    fail_fast: bool = False,
    invoker: EndpointInvoker | None = None,
) -> BatchResult:
    """Run a batch to completion and return the ordered result.

    Blocks until **all** chunks reach a terminal outcome.
    """
    options = _options(chunk_size, max_concurrency, retry, fail_fast)
    loop = asyncio.new_event_loop()

    async def _run() -> BatchResult:
        coordinator = BatchCoordinator(invoker)
        job = await coordinator.submit(items, model, options, operation=operation)
        return await coordinator.wait_for_completion(job.id)

    try:
        result = loop.run_until_complete(_run())
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
    summary = result.summary
    logger.info("run_batch finished: %d/%d succeeded", summary.succeeded, summary.total)
    return result
