"""Tests for settings, the embedding backends and prompt assembly."""

import pytest

from conftest import make_observation
from rag_pipeline.embedder import HASH_DIMENSIONS, build_embedding_fn, embed_texts, embedding_model_name
from rag_pipeline.preparer import PipelineState, PreparedEntry, build
from rag_pipeline.prompts import build_rag_user_prompt, create_reranking_prompt, format_documents_for_prompt
from rag_pipeline.settings import Settings


class TestSettings:

    def test_from_env_strips_quotes(self, monkeypatch):
        monkeypatch.setenv("AI_PROVIDER", '"OpenAI"')
        monkeypatch.setenv("OPENAI_API_KEY", " 'sk-test' ")
        monkeypatch.setenv("MAX_SEARCH_ITERATIONS", "2")

        settings = Settings.from_env()

        assert settings.ai_provider == "openai"
        assert settings.openai_api_key == "sk-test"
        assert settings.max_search_iterations == 2

    def test_unknown_provider_is_rejected(self, monkeypatch):
        monkeypatch.setenv("AI_PROVIDER", "anthropic")
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_bad_integer_is_rejected(self, monkeypatch):
        monkeypatch.setenv("AI_PROVIDER", "ollama")
        monkeypatch.setenv("MAX_CONTEXT_DOCUMENTS", "many")
        with pytest.raises(ValueError, match="MAX_CONTEXT_DOCUMENTS"):
            Settings.from_env()


class TestEmbedder:

    def test_hash_backend_is_deterministic_and_normalised(self):
        settings = Settings(embedding_backend="hash")
        first, again = embed_texts(["glucose 130"], settings) + embed_texts(["glucose 130"], settings)

        assert first == again
        assert len(first) == HASH_DIMENSIONS
        assert sum(v * v for v in first) == pytest.approx(1.0)

    def test_empty_input(self):
        assert embed_texts([], Settings(embedding_backend="hash")) == []

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_embedding_fn(Settings(embedding_backend="word2vec"))

    def test_model_name_recorded_on_vectors(self):
        assert embedding_model_name(Settings(embedding_backend="hash")) == f"hash:{HASH_DIMENSIONS}"
        assert embedding_model_name(Settings(embedding_backend="openai")) == "text-embedding-3-large:512"

    @pytest.mark.asyncio
    async def test_async_embedding_fn(self):
        embed = build_embedding_fn(Settings(embedding_backend="hash"))
        vectors = await embed(["a", "b"])
        assert len(vectors) == 2


class TestPrompts:

    def test_user_prompt_numbers_sections(self):
        doc = make_observation("a1c")
        prepared = build(PipelineState(entries=(
            PreparedEntry(text="Hemoglobin A1C 6.5%", source_doc=doc),
            PreparedEntry(text="Glucose 130", source_doc=doc),
        )))

        prompt = build_rag_user_prompt("What was my A1C?", prepared)

        assert prompt.startswith("Patient Question: What was my A1C?")
        assert "(2 sections from 1 documents)" in prompt
        assert "[1] Date: 2024-01-01 | Observation\nHemoglobin A1C 6.5%" in prompt
        assert "[2] Date: 2024-01-01 | Observation\nGlucose 130" in prompt

    def test_reranking_prompt_quotes_the_query(self):
        assert 'relevance to: "last A1C"' in create_reranking_prompt("last A1C")

    def test_documents_are_labelled(self):
        assert format_documents_for_prompt(["x", "y"]) == "DOCUMENT 1:\nx\n\n---\n\nDOCUMENT 2:\ny"
