"""Tests for rag_pipeline.llm_engine against a stand-in OpenAI client."""

from types import SimpleNamespace

import pytest

from rag_pipeline.errors import RAGError, RAGErrorCode
from rag_pipeline.llm_engine import (
    ChatMessage,
    OllamaProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    build_messages,
    build_provider,
)
from rag_pipeline.settings import Settings


class _AuthFailure(Exception):
    status_code = 401


class _Stream:
    def __init__(self, deltas):
        self._chunks = [
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=d))]) for d in deltas
        ]

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk


class FakeCompletions:
    def __init__(self, content="", deltas=(), error=None):
        self.content = content
        self.deltas = list(deltas)
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            return _Stream(self.deltas)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _provider(completions, cls=OpenAICompatibleProvider, rerank_model="small"):
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return cls(model="big", api_key="k", rerank_model=rerank_model, client=client)


class TestBuildMessages:

    def test_history_roles_are_mapped(self):
        history = [ChatMessage("user", "hi"), ChatMessage("ai", "hello"), ChatMessage("system", "ignored")]
        messages = build_messages("sys", "question", history)

        assert messages == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "question"},
        ]


class TestOpenAICompatibleProvider:

    @pytest.mark.asyncio
    async def test_complete_strips_content(self):
        completions = FakeCompletions(content="  An answer.\n")
        text = await _provider(completions).complete("sys", "q", temperature=0.3)

        assert text == "An answer."
        assert completions.requests[0]["model"] == "big"
        assert completions.requests[0]["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_stream_forwards_each_delta(self):
        completions = FakeCompletions(deltas=["Your ", None, "A1C ", "was 6.5%."])
        received = []

        async def on_chunk(chunk):
            received.append(chunk)

        text = await _provider(completions).stream_complete("sys", "q", on_chunk)

        assert received == ["Your ", "A1C ", "was 6.5%."]
        assert text == "Your A1C was 6.5%."
        assert completions.requests[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_complete_json_uses_rerank_model(self):
        completions = FakeCompletions(content='{"1": 8}')
        answer = await _provider(completions).complete_json("sys", "docs")

        assert answer == {"1": 8}
        assert completions.requests[0]["model"] == "small"
        assert completions.requests[0]["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_malformed_json_raises_value_error(self):
        with pytest.raises(ValueError):
            await _provider(FakeCompletions(content="eight")).complete_json("sys", "docs")

    @pytest.mark.asyncio
    async def test_auth_failure_becomes_rag_error(self):
        with pytest.raises(RAGError) as info:
            await _provider(FakeCompletions(error=_AuthFailure("denied"))).complete("sys", "q")
        assert info.value.code is RAGErrorCode.AUTH

    @pytest.mark.asyncio
    async def test_other_failures_propagate(self):
        with pytest.raises(ConnectionError):
            await _provider(FakeCompletions(error=ConnectionError("reset"))).complete("sys", "q")


class TestProviderConfig:

    def test_ollama_without_rerank_model_skips_reranking(self):
        config = _provider(FakeCompletions(), OllamaProvider, rerank_model=None).get_config()

        assert config.ai_provider == "ollama"
        assert config.skip_reranking

    def test_ollama_with_rerank_model(self):
        assert not _provider(FakeCompletions(), OllamaProvider).get_config().skip_reranking

    def test_openai_requires_a_key(self):
        with pytest.raises(RAGError) as info:
            OpenAIProvider.from_settings(Settings(ai_provider="openai", openai_api_key=""))
        assert info.value.code is RAGErrorCode.AUTH

    def test_build_provider_for_ollama(self):
        settings = Settings(ai_provider="ollama", ollama_endpoint="http://localhost:11434/", ollama_model="llama3")
        provider = build_provider(settings)

        assert isinstance(provider, OllamaProvider)
        assert provider.get_config().model == "llama3"
