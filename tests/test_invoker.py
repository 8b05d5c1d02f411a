"""Tests for the endpoint invoker and the batchable operations."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest
from openai import AsyncOpenAI

from batch_stream_inference import BatchCoordinator, BatchOptions, ErrorKind, RetryPolicy
from batch_stream_inference.errors import InvalidArgumentError, PermanentFailureError
from batch_stream_inference.invoker import EndpointInvoker, _litellm_for
from batch_stream_inference.operations import get_operation

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/embeddings")


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def mock_openai_client():
    """Provide a mocked AsyncOpenAI client."""
    client = MagicMock()
    client.with_options.return_value = client
    client.post = AsyncMock()
    return client


@pytest.fixture
def mock_litellm():
    """Patch the lazy litellm import with a fake that knows a few providers."""
    with patch("batch_stream_inference.invoker._get_litellm") as mock_get_litellm:
        litellm = MagicMock()
        litellm.provider_list = ["mistral", "gemini", "openai"]
        mock_get_litellm.return_value = litellm
        yield litellm


def _counting_client(status, hits):
    """A real AsyncOpenAI client whose transport answers every request with *status*."""
    def handler(request):
        hits.append(request.url.path)
        return httpx.Response(status, json={"error": {"message": "unavailable"}})

    return AsyncOpenAI(
        api_key="test-key",
        base_url="https://api.example.test/v1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestLitellmRouting:
    def test_plain_names_stay_native(self, mock_litellm):
        assert _litellm_for("mistral-embed", None) is None
        assert _litellm_for("gpt-4o-mini", None) is None

    def test_known_provider_prefix_routes(self, mock_litellm):
        assert _litellm_for("mistral/mistral-embed", None) is mock_litellm
        assert _litellm_for("gemini/gemini-2.0-flash", None) is mock_litellm

    def test_hugging_face_ids_stay_native(self, mock_litellm):
        assert _litellm_for("BAAI/bge-m3", None) is None
        assert _litellm_for("meta-llama/Llama-3.1-8B-Instruct", None) is None

    def test_injected_client_always_wins(self, mock_litellm, mock_openai_client):
        assert _litellm_for("mistral/mistral-embed", mock_openai_client) is None

    @patch("batch_stream_inference.invoker._get_litellm")
    def test_missing_litellm_stays_native(self, mock_get_litellm):
        mock_get_litellm.side_effect = ImportError(
            "LiteLLM is required for provider-prefixed models (e.g. mistral/*). "
            "Install with: pip install batch-stream-inference[litellm]"
        )
        assert _litellm_for("mistral/mistral-embed", None) is None


class TestEndpointInvoker:
    def test_posts_to_operation_path(self, mock_openai_client):
        mock_openai_client.post.return_value = httpx.Response(
            200, json={"data": [{"index": 0, "embedding": [0.1]}]}, request=_REQUEST,
        )
        invoker = EndpointInvoker(mock_openai_client)
        payload = {"model": "mistral-embed", "input": ["hi"]}

        body = _run(invoker.invoke("embeddings", payload))

        assert body == {"data": [{"index": 0, "embedding": [0.1]}]}
        mock_openai_client.with_options.assert_called_once_with(max_retries=0)
        mock_openai_client.post.assert_awaited_once_with("/embeddings", body=payload, cast_to=httpx.Response)

    def test_slashed_model_uses_injected_client(self, mock_litellm, mock_openai_client):
        mock_openai_client.post.return_value = httpx.Response(
            200, json={"data": [{"index": 0, "embedding": [0.3]}]}, request=_REQUEST,
        )
        invoker = EndpointInvoker(mock_openai_client)

        body = _run(invoker.invoke("embeddings", {"model": "BAAI/bge-m3", "input": ["x"]}))

        assert body["data"][0]["embedding"] == [0.3]
        mock_openai_client.post.assert_awaited_once()
        mock_litellm.aembedding.assert_not_called()

    def test_one_http_request_per_invoke(self):
        hits = []
        invoker = EndpointInvoker(_counting_client(503, hits))
        with pytest.raises(openai.InternalServerError):
            _run(invoker.invoke("embeddings", {"model": "mistral-embed", "input": ["a"]}))
        assert hits == ["/v1/embeddings"]

    def test_attempts_match_http_requests(self, no_sleep):
        hits = []
        invoker = EndpointInvoker(_counting_client(503, hits))

        async def scenario():
            coordinator = BatchCoordinator(invoker, sleep=no_sleep)
            job = await coordinator.submit(["a"], "mistral-embed", BatchOptions(retry=RetryPolicy(max_attempts=2)))
            return await coordinator.wait_for_completion(job.id)

        result = _run(scenario())
        assert len(hits) == 2
        assert result.items[0].failure.attempts == 2
        assert result.items[0].failure.kind is ErrorKind.TRANSIENT

    @patch("batch_stream_inference.invoker.AsyncOpenAI")
    def test_default_client_is_shared_without_sdk_retries(self, mock_cls):
        first = EndpointInvoker().client
        second = EndpointInvoker().client
        assert first is second
        mock_cls.assert_called_once_with(max_retries=0)

    def test_non_json_body_is_permanent(self, mock_openai_client):
        mock_openai_client.post.return_value = httpx.Response(200, text="<html>", request=_REQUEST)
        invoker = EndpointInvoker(mock_openai_client)
        with pytest.raises(PermanentFailureError):
            _run(invoker.invoke("ocr", {"model": "mistral-ocr-latest"}))

    def test_unknown_operation(self, mock_openai_client):
        invoker = EndpointInvoker(mock_openai_client)
        with pytest.raises(PermanentFailureError):
            _run(invoker.invoke("agents", {"model": "m"}))
        mock_openai_client.post.assert_not_called()

    def test_provider_model_routes_through_litellm(self, mock_litellm):
        response = MagicMock()
        response.model_dump.return_value = {"data": [{"index": 0, "embedding": [1.0]}]}
        mock_litellm.aembedding = AsyncMock(return_value=response)

        body = _run(EndpointInvoker().invoke("embeddings", {"model": "mistral/mistral-embed", "input": ["x"]}))

        assert body["data"][0]["embedding"] == [1.0]
        mock_litellm.aembedding.assert_awaited_once_with(model="mistral/mistral-embed", input=["x"])

    def test_litellm_unsupported_operation(self, mock_litellm):
        with pytest.raises(PermanentFailureError, match="not available through LiteLLM"):
            _run(EndpointInvoker().invoke("ocr", {"model": "mistral/mistral-ocr-latest"}))


class TestOperations:
    def test_embeddings_payload_and_split(self):
        op = get_operation("embeddings")
        assert op.build_payload("mistral-embed", ("a", "b")) == {"model": "mistral-embed", "input": ["a", "b"]}
        body = {"data": [{"index": 1, "embedding": [2.0]}, {"index": 0, "embedding": [1.0]}]}
        assert op.split_response(body, 2) == [[1.0], [2.0]]

    def test_moderations_keep_whole_entries(self):
        op = get_operation("moderations")
        body = {"results": [{"categories": {"hate": False}}, {"categories": {"hate": True}}]}
        assert op.split_response(body, 2) == body["results"]

    @pytest.mark.parametrize("body", [
        {},
        {"data": "nope"},
        {"data": [{"index": 0, "embedding": [1.0]}]},
        {"data": [{"index": 0}, {"index": 1}]},
    ])
    def test_malformed_responses(self, body):
        with pytest.raises(PermanentFailureError):
            get_operation("embeddings").split_response(body, 2)

    def test_unknown_operation(self):
        with pytest.raises(InvalidArgumentError, match="Valid: classifications, embeddings, moderations"):
            get_operation("ocr")
