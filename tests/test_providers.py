"""Tests for translation and embedding providers."""

import json

import httpx
import numpy as np
import pytest

from newsdigest.core.errors import ApiError
from newsdigest.core.settings import Settings
from newsdigest.enricher.providers import (
    EchoTranslator,
    HashingEmbedder,
    OpenAIProvider,
    build_providers,
)


def chat_response(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def make_provider(handler, max_retries: int = 3) -> OpenAIProvider:
    return OpenAIProvider(
        api_key="test-key",
        base_url="https://api.test",
        max_retries=max_retries,
        backoff=0,
        transport=httpx.MockTransport(handler),
    )


class TestOpenAIProvider:

    @pytest.mark.asyncio
    async def test_translate(self):
        requests = []

        def handler(request):
            requests.append(request)
            return chat_response("  Big fire in the harbour \n")

        provider = make_provider(handler)
        try:
            text = await provider.translate("Stor brand i hamnen", "sv", "en")
        finally:
            await provider.aclose()

        assert text == "Big fire in the harbour"
        [request] = requests
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        payload = json.loads(request.content)
        assert payload["temperature"] == 0
        assert "Swedish" in payload["messages"][0]["content"]
        assert payload["messages"][1]["content"] == "Stor brand i hamnen"

    @pytest.mark.asyncio
    async def test_transient_error_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return chat_response("Election decided")

        provider = make_provider(handler)
        try:
            text = await provider.translate("Valet avgjort", "sv", "en")
        finally:
            await provider.aclose()

        assert text == "Election decided"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retry_ceiling(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429)

        provider = make_provider(handler, max_retries=3)
        try:
            with pytest.raises(ApiError) as exc_info:
                await provider.embed("text")
        finally:
            await provider.aclose()

        assert exc_info.value.retryable
        assert exc_info.value.status_code == 429
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_error_payload_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": {"message": "bad model"}})

        provider = make_provider(handler)
        try:
            with pytest.raises(ApiError, match="bad model"):
                await provider.translate("text", "sv", "en")
        finally:
            await provider.aclose()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_plain_string_error_payload(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "model not found"})

        provider = make_provider(handler)
        try:
            with pytest.raises(ApiError, match="model not found") as exc_info:
                await provider.translate("text", "sv", "en")
        finally:
            await provider.aclose()

        assert exc_info.value.status_code == 400
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        provider = make_provider(lambda request: httpx.Response(200, json=["unexpected"]))
        try:
            with pytest.raises(ApiError, match="expected a JSON object"):
                await provider.embed("text")
        finally:
            await provider.aclose()

    @pytest.mark.asyncio
    async def test_empty_translation_rejected(self):
        provider = make_provider(lambda request: chat_response("   "))
        try:
            with pytest.raises(ApiError):
                await provider.translate("text", "sv", "en")
        finally:
            await provider.aclose()

    @pytest.mark.asyncio
    async def test_embed(self):
        def handler(request):
            assert request.url.path == "/v1/embeddings"
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        provider = make_provider(handler)
        try:
            vector = await provider.embed("big fire")
        finally:
            await provider.aclose()

        assert vector == [0.1, 0.2, 0.3]


class TestOfflineProviders:

    @pytest.mark.asyncio
    async def test_echo_translator(self):
        assert await EchoTranslator().translate("Hej", "sv", "en") == "Hej"

    @pytest.mark.asyncio
    async def test_hashing_embedder(self):
        embedder = HashingEmbedder()
        first = await embedder.embed("fire in the harbour")
        second = await embedder.embed("fire in the harbour")
        other = await embedder.embed("election results announced")

        assert first == second
        assert len(first) == 256
        assert np.linalg.norm(first) == pytest.approx(1.0)
        assert first != other

    def test_build_providers_without_key(self):
        translator, embedder = build_providers(Settings(openai_api_key=""))
        assert isinstance(translator, EchoTranslator)
        assert isinstance(embedder, HashingEmbedder)

    @pytest.mark.asyncio
    async def test_build_providers_with_key(self):
        translator, embedder = build_providers(Settings(openai_api_key="sk-test"))
        try:
            assert isinstance(translator, OpenAIProvider)
            assert translator is embedder
        finally:
            await translator.aclose()
