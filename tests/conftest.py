"""
Shared test fixtures.

The embedding fake maps text onto a small keyword vocabulary, so cosine
scores in tests are predictable without a model download.  The completion
provider fake records every call and replays scripted answers.
"""

import inspect
from typing import Any, Dict, List, Optional

import pytest

from rag_pipeline.documents import XML_CONTENT_TYPE, ClinicalDocument, DocumentRepository
from rag_pipeline.llm_engine import CompletionProvider, ProviderConfig
from vector_store import InMemoryPersistence, VectorStore

VOCABULARY = [
    "a1c", "diabetes", "hemoglobin", "glucose", "tetanus", "booster",
    "cholesterol", "potassium", "chest", "x-ray", "metformin", "panel",
]


class KeywordEmbedder:
    """Bag-of-keywords vectors; records each batch it was asked to embed."""

    def __init__(self, vocabulary: Optional[List[str]] = None):
        self.vocabulary = vocabulary or VOCABULARY
        self.calls: List[List[str]] = []
        self.fail_with: Optional[Exception] = None

    def vectorize(self, text: str) -> List[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in self.vocabulary]

    async def __call__(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vectorize(t) for t in texts]


class FakeProvider(CompletionProvider):
    def __init__(
        self,
        response: str = "Your A1C was 6.5%.",
        chunks: Optional[List[str]] = None,
        json_responses: Optional[List[Any]] = None,
        config: Optional[ProviderConfig] = None,
        fail_with: Optional[Exception] = None,
        fail_after_chunks: Optional[int] = None,
    ):
        self.response = response
        self.chunks = chunks if chunks is not None else ["Your A1C ", "was 6.5%."]
        self.json_responses = list(json_responses or [])
        self.config = config if config is not None else ProviderConfig(
            ai_provider="openai", model="fake-model", rerank_model="fake-rerank",
        )
        self.fail_with = fail_with
        self.fail_after_chunks = fail_after_chunks
        self.calls: List[Dict[str, Any]] = []
        self.json_calls: List[Dict[str, Any]] = []

    async def complete(self, system_prompt, user_prompt, messages=None, temperature=0.3):
        self.calls.append({
            "system_prompt": system_prompt, "user_prompt": user_prompt,
            "messages": messages, "temperature": temperature,
        })
        if self.fail_with is not None:
            raise self.fail_with
        return self.response

    async def stream_complete(self, system_prompt, user_prompt, on_chunk, messages=None, temperature=0.3):
        self.calls.append({
            "system_prompt": system_prompt, "user_prompt": user_prompt,
            "messages": messages, "temperature": temperature,
        })
        sent: List[str] = []
        for index, chunk in enumerate(self.chunks):
            if self.fail_after_chunks is not None and index == self.fail_after_chunks:
                raise RuntimeError("stream interrupted")
            result = on_chunk(chunk)
            if inspect.isawaitable(result):
                await result
            sent.append(chunk)
        if self.fail_with is not None:
            raise self.fail_with
        return "".join(sent)

    async def complete_json(self, system_prompt, user_prompt, temperature=0.1):
        self.json_calls.append({"system_prompt": system_prompt, "user_prompt": user_prompt})
        if not self.json_responses:
            raise ValueError("no scripted JSON response")
        answer = self.json_responses.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get_config(self):
        return self.config


def make_observation(
    doc_id: str,
    user_id: str = "u1",
    text: str = "Hemoglobin A1C 6.5%",
    loinc: Optional[List[str]] = None,
    date: Optional[str] = "2024-01-01",
    value: Optional[float] = None,
    interpretation: Optional[str] = None,
) -> ClinicalDocument:
    resource: Dict[str, Any] = {
        "resourceType": "Observation",
        "id": doc_id,
        "status": "final",
        "code": {"text": text},
        "subject": {"reference": f"Patient/{user_id}"},
    }
    if value is not None:
        resource["valueQuantity"] = {"value": value, "unit": "%"}
        resource["referenceRange"] = [{"low": {"value": 4.0}, "high": {"value": 5.6}}]
    if interpretation:
        resource["interpretation"] = {"coding": [{"code": interpretation}]}
    return ClinicalDocument(
        id            = doc_id,
        user_id       = user_id,
        resource_type = "observation",
        raw           = {"fullUrl": f"https://fhir.example/Observation/{doc_id}", "resource": resource},
        display_name  = text,
        date          = date,
        fhir_url      = f"Observation/{doc_id}",
        loinc_coding  = list(loinc or []),
    )


def make_report(doc_id: str, result_ids: List[str], user_id: str = "u1", text: str = "Lipid panel") -> ClinicalDocument:
    return ClinicalDocument(
        id            = doc_id,
        user_id       = user_id,
        resource_type = "diagnosticreport",
        raw           = {"resource": {
            "resourceType": "DiagnosticReport",
            "code": {"text": text},
            "result": [{"reference": f"Observation/{rid}"} for rid in result_ids],
        }},
        display_name  = text,
        date          = "2024-02-01",
        fhir_url      = f"DiagnosticReport/{doc_id}",
    )


def make_note(doc_id: str, text: str, user_id: str = "u1") -> ClinicalDocument:
    return ClinicalDocument(
        id            = doc_id,
        user_id       = user_id,
        resource_type = "documentreference_attachment",
        content_type  = XML_CONTENT_TYPE,
        raw           = text,
        display_name  = "Clinic note",
        date          = "2024-03-01",
    )


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def store(embedder, persistence):
    return VectorStore(embedder, persistence, embedding_model="keyword-test")


@pytest.fixture
def repository():
    return DocumentRepository()


@pytest.fixture
def provider():
    return FakeProvider()
