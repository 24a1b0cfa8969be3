"""HTTP surface tests through FastAPI's TestClient."""

import asyncio
import json
import logging

import pytest
from fastapi.testclient import TestClient

from backend.api.chat import _log_stream_failure, _stream_tasks
from backend.main import create_app
from backend.services import Services
from conftest import FakeProvider, KeywordEmbedder
from rag_pipeline.documents import DocumentRepository
from rag_pipeline.orchestrator import STATUS_GENERATING, STATUS_SEARCHING
from rag_pipeline.settings import Settings
from vector_store import InMemoryPersistence, VectorStore

A1C_DOC = {
    "id": "a1c",
    "user_id": "u1",
    "resource_type": "observation",
    "raw": {"resource": {"resourceType": "Observation", "code": {"text": "Hemoglobin A1C 6.5%"}}},
    "display_name": "Hemoglobin A1C",
    "date": "2024-01-01",
    "fhir_url": "Observation/a1c",
    "loinc_coding": ["4548-4"],
}

NO_RERANK = {"enable_reranking": False, "max_search_iterations": 1}


def _services(provider=None):
    return Services(
        settings   = Settings(embedding_backend="hash"),
        store      = VectorStore(KeywordEmbedder(), InMemoryPersistence()),
        repository = DocumentRepository(),
        provider   = provider,
    )


@pytest.fixture
def services():
    return _services(FakeProvider())


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _ingest(client, *docs):
    return client.post("/api/documents", json={"documents": list(docs or [A1C_DOC])})


class TestHealth:

    def test_reports_component_state(self, client):
        body = client.get("/api/health").json()

        assert body["status"] == "ok"
        assert body["vector_store_ready"] is True
        assert body["vector_count"] == 0
        assert body["ai_provider"] == "openai"
        assert body["reranking_enabled"] is True


class TestDocuments:

    def test_ingest_indexes_chunks(self, client):
        response = _ingest(client)

        assert response.status_code == 200
        assert response.json() == {"stored_documents": 1, "added_chunks": 1, "total_chunks": 1}

    def test_reingest_adds_no_chunks(self, client):
        _ingest(client)
        assert _ingest(client).json()["added_chunks"] == 0

    def test_empty_batch_is_rejected(self, client):
        assert client.post("/api/documents", json={"documents": []}).status_code == 422


class TestSearch:

    def test_hits_are_scoped_to_user(self, client):
        _ingest(client)

        mine = client.post("/api/search", json={"user_id": "u1", "query": "A1C"}).json()
        theirs = client.post("/api/search", json={"user_id": "u2", "query": "A1C"}).json()

        assert [h["id"] for h in mine["similar_items"]] == ["a1c"]
        assert mine["similar_items"][0]["document_id"] == "a1c"
        assert theirs["similar_items"] == []

    def test_embedding_failure_is_bad_gateway(self, client, services):
        services.store._embed_texts.fail_with = RuntimeError("model offline")
        response = client.post("/api/search", json={"user_id": "u1", "query": "A1C"})
        assert response.status_code == 502


class TestChat:

    def test_no_documents_is_a_200_with_error_body(self, client):
        response = client.post("/api/chat", json={"user_id": "u1", "query": "What was my A1C?", "options": NO_RERANK})
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "error"
        assert body["error"]["code"] == "NO_DOCUMENTS"
        assert body["error"]["recoverable"] is True

    def test_answer_with_sources(self, client):
        _ingest(client)
        response = client.post("/api/chat", json={
            "user_id":  "u1",
            "query":    "What was my A1C?",
            "messages": [{"role": "user", "text": "hi"}, {"role": "ai", "text": "hello"}],
            "options":  NO_RERANK,
        })
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "success"
        assert body["response"] == "Your A1C was 6.5%."
        assert [s["id"] for s in body["sources"]] == ["a1c"]
        assert body["timestamp"].endswith("Z")

    def test_blank_query_is_unprocessable(self, client):
        response = client.post("/api/chat", json={"user_id": "u1", "query": "  ", "options": NO_RERANK})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    def test_missing_provider_is_bad_gateway(self):
        with TestClient(create_app(_services(provider=None))) as client:
            response = client.post("/api/chat", json={"user_id": "u1", "query": "A1C?"})

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "AI_PROVIDER"

    def test_stream_emits_status_chunk_and_result_events(self, client):
        _ingest(client)
        with client.stream("POST", "/api/chat/stream", json={
            "user_id": "u1", "query": "What was my A1C?", "options": NO_RERANK,
        }) as response:
            assert response.headers["content-type"].startswith("application/x-ndjson")
            events = [json.loads(line) for line in response.iter_lines() if line]

        assert events[0] == {"type": "status", "status": STATUS_SEARCHING}
        assert {"type": "status", "status": STATUS_GENERATING} in events
        assert [e["text"] for e in events if e["type"] == "chunk"] == ["Your A1C ", "was 6.5%."]
        assert events[-1]["type"] == "result"
        assert events[-1]["status"] == "success"


class TestStreamTaskCleanup:

    @pytest.mark.asyncio
    async def test_orphaned_stream_task_failure_is_logged(self, caplog):
        async def producer():
            raise RuntimeError("provider vanished")

        task = asyncio.get_running_loop().create_task(producer())
        _stream_tasks.add(task)
        task.add_done_callback(_log_stream_failure)

        with caplog.at_level(logging.ERROR, logger="backend.api.chat"):
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)

        assert "provider vanished" in caplog.text
        assert task not in _stream_tasks
