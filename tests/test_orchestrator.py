"""Tests for rag_pipeline.orchestrator — perform_rag and friends."""

import asyncio

import pytest
import pytest_asyncio

from conftest import FakeProvider, make_observation
from rag_pipeline.errors import RAGError, RAGErrorCode
from rag_pipeline.indexer import index_documents
from rag_pipeline.llm_engine import ChatMessage
from rag_pipeline.orchestrator import (
    STATUS_GENERATING,
    STATUS_PREPARING,
    STATUS_SEARCHING,
    RAGContext,
    RAGFailure,
    RAGOptions,
    RAGPartial,
    RAGSuccess,
    SessionGuard,
    perform_rag,
    perform_rag_with_streaming,
    result_to_dict,
)
from rag_pipeline.prompts import MEDICAL_AI_SYSTEM_PROMPT
from rag_pipeline.related import RepositoryRelatedFetcher


def _context(store, repository, provider, query="What was my last A1C?", **kwargs):
    kwargs.setdefault("options", RAGOptions(enable_reranking=False))
    return RAGContext(
        query    = query,
        user_id  = kwargs.pop("user_id", "u1"),
        store    = store,
        lookup   = repository,
        provider = provider,
        **kwargs,
    )


@pytest_asyncio.fixture
async def indexed(store, repository):
    docs = [
        make_observation("a1c", text="Hemoglobin A1C 6.5%", loinc=["4548-4"]),
        make_observation("tet", text="Tetanus booster"),
    ]
    await repository.upsert_many(docs)
    await index_documents(store, docs)
    return docs


class TestPerformRag:

    @pytest.mark.asyncio
    async def test_empty_corpus_is_recoverable_no_documents(self, store, repository, provider):
        result = await perform_rag(_context(store, repository, provider))

        assert isinstance(result, RAGFailure)
        assert result.error.code is RAGErrorCode.NO_DOCUMENTS
        assert result.error.recoverable
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_success_reports_statuses_in_order(self, store, repository, provider, indexed):
        statuses = []
        result = await perform_rag(_context(store, repository, provider, on_status_update=statuses.append))

        assert isinstance(result, RAGSuccess)
        assert result.response == provider.response
        assert statuses == [STATUS_SEARCHING, STATUS_PREPARING, STATUS_GENERATING]
        assert result.confidence == 1.0
        assert {d.id for d in result.sources} <= {"a1c", "tet"}

    @pytest.mark.asyncio
    async def test_prompt_carries_history_and_records(self, store, repository, provider, indexed):
        history = [ChatMessage("user", "hi"), ChatMessage("ai", "hello")]
        await perform_rag(_context(store, repository, provider, messages=history))

        call = provider.calls[0]
        assert call["system_prompt"] == MEDICAL_AI_SYSTEM_PROMPT
        assert call["messages"] == history
        assert call["temperature"] == 0.3
        assert "What was my last A1C?" in call["user_prompt"]
        assert "Hemoglobin A1C 6.5%" in call["user_prompt"]

    @pytest.mark.asyncio
    async def test_async_status_callback_is_awaited(self, store, repository, provider, indexed):
        statuses = []

        async def on_status(status):
            statuses.append(status)

        await perform_rag(_context(store, repository, provider, on_status_update=on_status))
        assert statuses[-1] == STATUS_GENERATING

    @pytest.mark.asyncio
    async def test_other_users_records_are_not_used(self, store, repository, provider, indexed):
        result = await perform_rag(_context(store, repository, provider, user_id="u2"))
        assert result.error.code is RAGErrorCode.NO_DOCUMENTS

    @pytest.mark.asyncio
    async def test_provider_failure_is_ai_provider_error(self, store, repository, indexed):
        provider = FakeProvider(fail_with=RuntimeError("upstream 500"))
        result = await perform_rag(_context(store, repository, provider))

        assert isinstance(result, RAGFailure)
        assert result.error.code is RAGErrorCode.AI_PROVIDER
        assert not result.error.recoverable

    @pytest.mark.asyncio
    async def test_provider_auth_error_keeps_its_code(self, store, repository, indexed):
        provider = FakeProvider(fail_with=RAGError("bad key", RAGErrorCode.AUTH, False))
        result = await perform_rag(_context(store, repository, provider))
        assert result.error.code is RAGErrorCode.AUTH

    @pytest.mark.asyncio
    async def test_search_failure_is_ai_provider_error(self, store, repository, provider, embedder, indexed):
        embedder.fail_with = RuntimeError("embedding service down")
        result = await perform_rag(_context(store, repository, provider))

        assert result.error.code is RAGErrorCode.AI_PROVIDER
        assert not result.error.recoverable
        assert provider.calls == []
        assert isinstance(result.error.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_empty_query_is_invalid_input(self, store, repository, provider):
        result = await perform_rag(_context(store, repository, provider, query="   "))

        assert result.error.code is RAGErrorCode.INVALID_INPUT
        assert result.error.recoverable

    @pytest.mark.asyncio
    async def test_missing_user_is_invalid_input(self, store, repository, provider):
        result = await perform_rag(_context(store, repository, provider, user_id=""))

        assert result.error.code is RAGErrorCode.INVALID_INPUT
        assert not result.error.recoverable

    @pytest.mark.asyncio
    async def test_iterative_search_runs_configured_rounds(self, store, repository, provider, embedder, indexed):
        embedder.calls.clear()
        options = RAGOptions(max_search_iterations=3, enable_reranking=False)
        result = await perform_rag(_context(store, repository, provider, options=options))

        assert isinstance(result, RAGSuccess)
        assert len(embedder.calls) == 3

    @pytest.mark.asyncio
    async def test_related_labs_join_the_sources(self, store, repository, provider, indexed):
        older = make_observation("a1c-old", text="Glycated protein", loinc=["4548-4"], date="2023-01-01")
        await repository.upsert_many([older])

        context = _context(store, repository, provider, related_fetcher=RepositoryRelatedFetcher(repository))
        result = await perform_rag(context)

        assert "a1c-old" in {d.id for d in result.sources}

    @pytest.mark.asyncio
    async def test_reranking_uses_the_provider(self, store, repository, indexed):
        provider = FakeProvider(json_responses=[{"1": 9, "2": 1}])
        result = await perform_rag(_context(store, repository, provider, options=RAGOptions()))

        assert isinstance(result, RAGSuccess)
        assert len(provider.json_calls) == 1


class TestStreaming:

    @pytest.mark.asyncio
    async def test_chunks_are_forwarded_in_order(self, store, repository, provider, indexed):
        chunks = []
        result = await perform_rag_with_streaming(_context(store, repository, provider), chunks.append)

        assert isinstance(result, RAGSuccess)
        assert chunks == ["Your A1C ", "was 6.5%."]
        assert result.response == "Your A1C was 6.5%."

    @pytest.mark.asyncio
    async def test_failure_after_first_chunk_is_partial(self, store, repository, indexed):
        provider = FakeProvider(fail_after_chunks=1)
        chunks = []
        result = await perform_rag_with_streaming(_context(store, repository, provider), chunks.append)

        assert isinstance(result, RAGPartial)
        assert result.response == "Your A1C "
        assert result.errors[0].code is RAGErrorCode.AI_PROVIDER
        assert result.sources

    @pytest.mark.asyncio
    async def test_failure_before_any_chunk_is_failure(self, store, repository, indexed):
        provider = FakeProvider(fail_after_chunks=0)
        result = await perform_rag_with_streaming(_context(store, repository, provider), lambda c: None)
        assert isinstance(result, RAGFailure)

    @pytest.mark.asyncio
    async def test_no_documents_never_starts_the_stream(self, store, repository, provider):
        chunks = []
        result = await perform_rag_with_streaming(_context(store, repository, provider), chunks.append)

        assert result.error.code is RAGErrorCode.NO_DOCUMENTS
        assert chunks == []


class TestResultToDict:

    def test_failure(self):
        failure = RAGFailure(RAGError("nothing", RAGErrorCode.NO_DOCUMENTS, True))
        assert result_to_dict(failure) == {
            "status": "error",
            "error": {"code": "NO_DOCUMENTS", "message": "nothing", "recoverable": True},
        }

    def test_success_sources_are_summarised(self):
        doc = make_observation("a1c")
        out = result_to_dict(RAGSuccess("ok", [doc], 1.0))

        assert out["status"] == "success"
        assert out["sources"] == [{"id": "a1c", "resource_type": "Observation", "date": "2024-01-01", "display_name": doc.display_name}]


class TestSessionGuard:

    @pytest.mark.asyncio
    async def test_same_key_runs_one_at_a_time(self):
        guard = SessionGuard()
        events = []

        async def call(name):
            async with guard.hold("u1"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(call("first"), call("second"))

        assert events == ["first-start", "first-end", "second-start", "second-end"]
        assert not guard.is_busy("u1")

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self):
        guard = SessionGuard()
        events = []

        async def call(key):
            async with guard.hold(key):
                events.append(f"{key}-start")
                await asyncio.sleep(0.01)
                events.append(f"{key}-end")

        await asyncio.gather(call("u1"), call("u2"))

        assert events[:2] == ["u1-start", "u2-start"]

    @pytest.mark.asyncio
    async def test_is_busy_while_held(self):
        guard = SessionGuard()
        async with guard.hold("u1"):
            assert guard.is_busy("u1")
            assert not guard.is_busy("u2")
