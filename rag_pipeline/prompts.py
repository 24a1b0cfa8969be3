"""
prompts.py
==========
Prompt templates for answer generation and LLM reranking.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from rag_pipeline.preparer import PreparedDocuments


# ---------------------------------------------------------------------------
# Answer generation
# ---------------------------------------------------------------------------

MEDICAL_AI_SYSTEM_PROMPT = """You are a helpful medical AI assistant. You have access to the patient's medical records and should provide accurate, relevant information based on those records.

Important guidelines:
- Only reference information that is explicitly stated in the provided medical records
- Be clear when information is not available in the records
- Use simple, easy-to-understand language
- Cite specific dates or document types when referencing information
- Be empathetic and supportive in your responses"""


def build_rag_user_prompt(query: str, documents: "PreparedDocuments") -> str:
    sections: List[str] = []
    for index, doc in enumerate(documents.texts, start=1):
        date_label = f"Date: {doc.date}" if doc.date else "No date"
        kind = doc.resource_type or "Unknown type"
        sections.append(f"\n[{index}] {date_label} | {kind}\n{doc.text}\n")

    return (
        f"Patient Question: {query}\n\n"
        f"Relevant Medical Records ({len(documents.texts)} sections from "
        f"{len(documents.source_docs)} documents):\n\n"
        + "\n---\n".join(sections)
        + "\n\nPlease provide a helpful response to the patient's question based on these medical records."
    )


# ---------------------------------------------------------------------------
# Reranking
# ---------------------------------------------------------------------------

_RERANKING_PROMPT_TEMPLATE = """Rate each document's relevance to: "{query}"

You will receive documents labeled as DOCUMENT 1, DOCUMENT 2, etc.

Return a JSON object mapping document numbers to scores (0-10):
{{"1": 8, "2": 3, "3": 9, "4": 2, "5": 7}}

Scoring guidelines:
- 9-10: Document directly answers the query with specific medical data (exact test results, diagnoses, etc.)
- 7-8: Document is highly relevant and contains related medical information
- 5-6: Document is somewhat relevant but may be tangential
- 3-4: Document mentions related concepts but lacks specific relevance
- 0-2: Document is unrelated to the query

IMPORTANT:
- Use exactly this format
- Include ALL document numbers
- Scores must be 0-10
- Return ONLY the JSON object, nothing else"""


def create_reranking_prompt(query: str) -> str:
    return _RERANKING_PROMPT_TEMPLATE.format(query=query)


def format_documents_for_prompt(documents: List[str]) -> str:
    return "\n\n---\n\n".join(f"DOCUMENT {i}:\n{doc}" for i, doc in enumerate(documents, start=1))
