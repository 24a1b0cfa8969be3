"""
rag_pipeline — Retrieval-Augmented Generation over a patient's clinical records.

Components:
  settings         — environment configuration and pipeline constants
  errors           — RAGError and its codes
  documents        — ClinicalDocument model and DocumentRepository
  vectorizer       — clinical document → embeddable text chunks
  embedder         — text → vector (sentence-transformers / OpenAI / hash)
  indexer          — pages documents into the vector store
  retriever        — user-scoped similarity search, single pass or iterative
  related          — related observations for labs and diagnostic reports
  chunk_extractor  — matching sections of large attachments
  prompts          — system, answer and reranking prompts
  reranker         — LLM 0-10 relevance scoring with dynamic threshold
  preparer         — staged context preparation over an immutable state
  llm_engine       — OpenAI / Ollama completion providers (blocking + streaming)
  orchestrator     — perform_rag / perform_rag_with_streaming
"""
