"""Batch and streaming client for OpenAI-compatible inference APIs."""

from batch_stream_inference.batch_stream import run_batch, stream_batch
from batch_stream_inference.chat import ChatRequest, astream_chat, complete_chat, stream_chat
from batch_stream_inference.client import InferenceClient
from batch_stream_inference.coordinator import BatchCoordinator, BatchJob
from batch_stream_inference.errors import (
    BatchStreamError,
    ErrorKind,
    InvalidArgumentError,
    JobNotFoundError,
    PermanentFailureError,
    TransientError,
    WaitCancelledError,
)
from batch_stream_inference.invoker import EndpointInvoker
from batch_stream_inference.models import (
    BatchOptions,
    BatchResult,
    BatchStatus,
    BatchSummary,
    ItemFailure,
    ItemResult,
    JobState,
    RetryPolicy,
)

__all__ = [
    "BatchCoordinator",
    "BatchJob",
    "BatchOptions",
    "BatchResult",
    "BatchStatus",
    "BatchStreamError",
    "BatchSummary",
    "ChatRequest",
    "EndpointInvoker",
    "ErrorKind",
    "InferenceClient",
    "InvalidArgumentError",
    "ItemFailure",
    "ItemResult",
    "JobNotFoundError",
    "JobState",
    "PermanentFailureError",
    "RetryPolicy",
    "TransientError",
    "WaitCancelledError",
    "astream_chat",
    "complete_chat",
    "run_batch",
    "stream_batch",
    "stream_chat",
]
__version__ = "0.1.0"
