"""Chat completion calls and the streaming reader.

``astream_chat`` yields content deltas over one long-lived connection.
Leaving the ``async for`` early (``break``, an exception, ``aclose()``)
closes the underlying stream right away, so the connection is released
deterministically.  ``stream_chat`` is the same thing as a plain generator
that drives a private event loop in the calling thread.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Generator

from openai import AsyncOpenAI

from batch_stream_inference.invoker import _get_async_client, _litellm_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatRequest:
    """A single chat request.

    ``model`` may be any model name served by the configured endpoint (e.g.
    ``"mistral-small-latest"`` or ``"meta-llama/Llama-3.1-8B-Instruct"``).
    Without an injected client, a name whose prefix is a LiteLLM provider
    (e.g. ``"mistral/mistral-small-latest"``) is routed through LiteLLM when
    the ``[litellm]`` extra is installed.
    """

    user_prompt: str
    system_prompt: str | None = None
    model: str = "mistral-small-latest"
    temperature: float | None = None
    max_tokens: int | None = None
    response_format: dict[str, str] | None = None

    def to_kwargs(self) -> dict:
        messages = []
        if self.system_prompt is not None:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.user_prompt})
        kwargs: dict = dict(model=self.model, messages=messages)
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.response_format is not None:
            kwargs["response_format"] = self.response_format
        return kwargs


async def complete_chat(req: ChatRequest, client: AsyncOpenAI | None = None) -> str:
    """Run one non-streaming chat completion and return the message text."""
    litellm = _litellm_for(req.model, client)
    if litellm is not None:
        response = await litellm.acompletion(**req.to_kwargs())
    else:
        client = client if client is not None else _get_async_client()
        response = await client.chat.completions.create(**req.to_kwargs())
    content = response.choices[0].message.content
    if isinstance(content, str):
        return content
    raise ValueError("Unexpected chat completion format.")


async def astream_chat(req: ChatRequest, client: AsyncOpenAI | None = None) -> AsyncIterator[str]:
    """Yield non-empty content deltas as they arrive."""
    litellm = _litellm_for(req.model, client)
    native = litellm is None
    if native:
        client = client if client is not None else _get_async_client()
        stream = await client.chat.completions.create(**req.to_kwargs(), stream=True)
    else:
        stream = await litellm.acompletion(**req.to_kwargs(), stream=True)
    try:
        async for event in stream:
            if not event.choices:
                continue
            delta = event.choices[0].delta.content
            if delta:
                yield delta
    finally:
        if native:
            await stream.close()
        logger.debug("Closed chat stream for model=%s", req.model)


def stream_chat(req: ChatRequest, client: AsyncOpenAI | None = None) -> Generator[str, None, None]:
    """Synchronous form of ``astream_chat``.

    Runs the event loop directly in the calling thread.  Closing the
    generator closes the stream before the loop is shut down.
    """
    loop = asyncio.new_event_loop()
    agen = astream_chat(req, client)
    try:
        while True:
            try:
                yield loop.run_until_complete(agen.__anext__())
            except StopAsyncIteration:
                break
    finally:
        loop.run_until_complete(agen.aclose())
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
