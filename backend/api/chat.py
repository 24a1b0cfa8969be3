"""
api/chat.py
===========
POST /api/chat
--------------
Blocking RAG answer for one user's question.

POST /api/chat/stream
---------------------
Same pipeline, streamed as newline-delimited JSON events:

  {"type": "status", "status": "Searching medical records"}
  {"type": "chunk",  "text": "..."}
  {"type": "result", ...ChatResponse}

Requests for the same user are served one at a time (SessionGuard); the
stream has no cancellation, a disconnected client does not abort generation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Set, Tuple

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from backend.schemas.response import ChatRequest, ChatResponse
from backend.services import Services, get_services
from rag_pipeline.errors import RAGError, RAGErrorCode
from rag_pipeline.llm_engine import ChatMessage
from rag_pipeline.orchestrator import (
    RAGContext,
    RAGFailure,
    RAGOptions,
    RAGResult,
    perform_rag,
    perform_rag_with_streaming,
    result_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_HTTP_STATUS_BY_CODE = {
    RAGErrorCode.NO_DOCUMENTS: 200,
    RAGErrorCode.INVALID_INPUT: 422,
}

# stream producers still running after their client disconnected
_stream_tasks: Set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_context(payload: ChatRequest, services: Services) -> RAGContext:
    options = payload.options
    settings = services.settings
    return RAGContext(
        query           = payload.query,
        user_id         = payload.user_id,
        store           = services.store,
        lookup          = services.repository,
        provider        = services.provider,
        messages        = [ChatMessage(role=m.role, text=m.text) for m in payload.messages],
        options         = RAGOptions(
            max_search_iterations = options.max_search_iterations or settings.max_search_iterations,
            max_documents         = options.max_documents or settings.max_context_documents,
            include_related       = options.include_related,
            enable_reranking      = options.enable_reranking,
            stop_on_stagnation    = options.stop_on_stagnation,
        ),
        related_fetcher = services.related_fetcher,
    )


def _provider_missing() -> RAGFailure:
    return RAGFailure(error=RAGError("No completion provider is configured", RAGErrorCode.AI_PROVIDER, False))


def _to_response(result: RAGResult) -> Tuple[int, Dict[str, Any]]:
    body = ChatResponse(**result_to_dict(result)).model_dump()
    if isinstance(result, RAGFailure):
        return _HTTP_STATUS_BY_CODE.get(result.error.code, 502), body
    return 200, body


def _ndjson(event: Dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False) + "\n"


def _log_stream_failure(task: asyncio.Task) -> None:
    """Collect the outcome of a stream task, also when the client went away before it finished."""
    _stream_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Chat stream task failed: %s", exc, exc_info=exc)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/api/chat", response_model=ChatResponse)
async def chat(
    payload: ChatRequest,
    services: Services = Depends(get_services),
):
    if services.provider is None:
        result: RAGResult = _provider_missing()
    else:
        async with services.session_guard.hold(payload.user_id):
            result = await perform_rag(_build_context(payload, services))

    status_code, body = _to_response(result)
    return JSONResponse(status_code=status_code, content=body)


@router.post("/api/chat/stream")
async def chat_stream(
    payload: ChatRequest,
    services: Services = Depends(get_services),
):
    queue: asyncio.Queue = asyncio.Queue()

    async def run() -> None:
        try:
            if services.provider is None:
                result: RAGResult = _provider_missing()
            else:
                context = _build_context(payload, services)
                context.on_status_update = lambda s: queue.put_nowait({"type": "status", "status": s})
                async with services.session_guard.hold(payload.user_id):
                    result = await perform_rag_with_streaming(
                        context,
                        lambda text: queue.put_nowait({"type": "chunk", "text": text}),
                    )
            _, body = _to_response(result)
            await queue.put({"type": "result", **body})
        finally:
            await queue.put(None)

    async def events() -> AsyncIterator[str]:
        task = asyncio.create_task(run())
        _stream_tasks.add(task)
        task.add_done_callback(_log_stream_failure)
        while True:
            event = await queue.get()
            if event is None:
                break
            yield _ndjson(event)
        await task

    return StreamingResponse(events(), media_type="application/x-ndjson")
