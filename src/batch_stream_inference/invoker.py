"""One HTTP request/response round trip against a named API operation.

The native transport is the openai SDK pointed at any OpenAI-compatible
inference API (``OPENAI_BASE_URL`` / ``OPENAI_API_KEY``, or an injected
client).  A module-level ``AsyncOpenAI`` client is reused across calls to
keep TCP connections alive.  The SDK's own retries are switched off: every
``invoke`` is exactly one HTTP request, and retrying is left to
``RetryPolicy``.

Model names whose prefix is a LiteLLM provider (e.g.
``"mistral/mistral-embed"``) are routed through LiteLLM instead, when no
client was injected and the ``[litellm]`` extra is installed.  Other slashed
ids such as ``"BAAI/bge-m3"`` stay on the native endpoint.
"""

import logging
from typing import Any

import httpx
from openai import AsyncOpenAI

from batch_stream_inference.errors import PermanentFailureError

logger = logging.getLogger(__name__)

_async_client: AsyncOpenAI | None = None

# Operation name -> path relative to the client's base URL.
ENDPOINTS: dict[str, str] = {
    "chat": "/chat/completions",
    "embeddings": "/embeddings",
    "moderations": "/moderations",
    "classifications": "/classifications",
    "ocr": "/ocr",
}


def _get_async_client() -> AsyncOpenAI:
    global _async_client
    if _async_client is None:
        _async_client = AsyncOpenAI(max_retries=0)
    return _async_client


def _get_litellm():
    """Lazy import of litellm. Raises ImportError if litellm extra not installed."""
    try:
        import litellm
        return litellm
    except ImportError as e:
        raise ImportError(
            "LiteLLM is required for provider-prefixed models (e.g. mistral/*). "
            "Install with: pip install batch-stream-inference[litellm]"
        ) from e


def _litellm_for(model: str, client: AsyncOpenAI | None):
    """Return the litellm module when *model* should go through LiteLLM, else None.

    An injected client always wins.  Otherwise only a prefix LiteLLM knows as
    a provider is routed.
    """
    if client is not None or "/" not in model:
        return None
    try:
        litellm = _get_litellm()
    except ImportError:
        logger.debug("LiteLLM not installed, keeping model=%s on the native endpoint", model)
        return None
    if model.split("/", 1)[0] in litellm.provider_list:
        return litellm
    return None


def _as_dict(response: Any) -> dict:
    if isinstance(response, dict):
        return response
    if hasattr(response, "model_dump"):
        return response.model_dump()
    raise PermanentFailureError(f"Unexpected response type: {type(response).__name__}")


class EndpointInvoker:
    """Performs a single call to one of the ``ENDPOINTS``.

    Returns the decoded JSON body.  HTTP failures surface as the openai SDK's
    typed exceptions (``RateLimitError``, ``APIConnectionError``, ...) so the
    retry layer can classify them.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        return self._client if self._client is not None else _get_async_client()

    async def invoke(self, operation: str, payload: dict[str, Any]) -> dict:
        if operation not in ENDPOINTS:
            raise PermanentFailureError(f"Unknown operation: {operation!r}")
        litellm = _litellm_for(payload.get("model", ""), self._client)
        if litellm is not None:
            return await self._invoke_litellm(litellm, operation, payload)
        client = self.client.with_options(max_retries=0)
        response = await client.post(ENDPOINTS[operation], body=payload, cast_to=httpx.Response)
        try:
            return response.json()
        except ValueError as e:
            raise PermanentFailureError(f"{operation}: response is not valid JSON") from e

    async def _invoke_litellm(self, litellm, operation: str, payload: dict[str, Any]) -> dict:
        logger.debug("Routing %s for model=%s through LiteLLM", operation, payload.get("model"))
        if operation == "embeddings":
            response = await litellm.aembedding(**payload)
        elif operation == "moderations":
            response = await litellm.amoderation(**payload)
        elif operation == "chat":
            response = await litellm.acompletion(**payload)
        else:
            raise PermanentFailureError(f"{operation} is not available through LiteLLM")
        return _as_dict(response)
