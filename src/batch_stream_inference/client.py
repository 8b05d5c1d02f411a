"""Typed async facade over the inference API.

Single calls go straight through the ``EndpointInvoker``; large inputs go
through ``client.batches``, a ``BatchCoordinator`` sharing the same invoker.
"""

import asyncio
from typing import Any, AsyncIterator, Sequence

from openai import AsyncOpenAI

from batch_stream_inference.chat import ChatRequest, astream_chat, complete_chat
from batch_stream_inference.coordinator import BatchCoordinator
from batch_stream_inference.invoker import EndpointInvoker
from batch_stream_inference.operations import get_operation
from batch_stream_inference.retry import Sleep


class InferenceClient:
    def __init__(self, client: AsyncOpenAI | None = None, *, sleep: Sleep = asyncio.sleep):
        self._client = client
        self.invoker = EndpointInvoker(client)
        self.batches = BatchCoordinator(self.invoker, sleep=sleep)

    async def chat(self, req: ChatRequest) -> str:
        return await complete_chat(req, self._client)

    def astream_chat(self, req: ChatRequest) -> AsyncIterator[str]:
        return astream_chat(req, self._client)

    async def _call_list(self, operation: str, model: str, inputs: Sequence[Any]) -> list[Any]:
        op = get_operation(operation)
        body = await self.invoker.invoke(op.name, op.build_payload(model, inputs))
        return op.split_response(body, len(inputs))

    async def embed(self, inputs: Sequence[str], model: str = "mistral-embed") -> list[list[float]]:
        """Embed *inputs* in one request; use ``batches`` for large inputs."""
        return await self._call_list("embeddings", model, inputs)

    async def moderate(self, inputs: Sequence[str], model: str = "mistral-moderation-latest") -> list[dict]:
        return await self._call_list("moderations", model, inputs)

    async def classify(self, inputs: Sequence[str], model: str) -> list[dict]:
        return await self._call_list("classifications", model, inputs)

    async def ocr(self, document_url: str, model: str = "mistral-ocr-latest") -> dict:
        payload = {
            "model": model,
            "document": {"type": "document_url", "document_url": document_url},
        }
        return await self.invoker.invoke("ocr", payload)

    async def list_models(self) -> list[str]:
        page = await self.invoker.client.models.list()
        return [model.id for model in page.data]
