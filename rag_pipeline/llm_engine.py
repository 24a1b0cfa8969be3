"""
llm_engine.py
=============
Chat-completion providers for answer generation and reranking.

Both providers speak the OpenAI chat-completions protocol through the
``openai`` SDK:
  • OpenAIProvider : api.openai.com (or OPENAI_BASE_URL)
  • OllamaProvider : ``{OLLAMA_ENDPOINT}/v1``, Ollama's OpenAI-compatible API

The generation model answers the patient question; the rerank model (small
and cheap) scores candidate records as JSON.  Authorization failures are
raised as ``RAGError(AUTH)``; every other provider failure propagates as-is
and is classified by the orchestrator.
"""

from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from rag_pipeline.errors import RAGError, RAGErrorCode
from rag_pipeline.settings import GENERATION_TEMPERATURE, RERANK_TEMPERATURE, Settings

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]

_ROLE_MAP = {"user": "user", "ai": "assistant", "assistant": "assistant"}


@dataclass
class ChatMessage:
    role: str    # user | ai | system
    text: str


@dataclass
class ProviderConfig:
    ai_provider: str
    model: str
    rerank_model: Optional[str] = None
    skip_reranking: bool = False


def build_messages(
    system_prompt: str,
    user_prompt: str,
    history: Optional[List[ChatMessage]] = None,
) -> List[Dict[str, str]]:
    """System prompt, prior turns (system turns dropped), then the new user prompt."""
    messages = [{"role": "system", "content": system_prompt}]
    for message in history or []:
        role = _ROLE_MAP.get(message.role)
        if role is None:
            continue
        messages.append({"role": role, "content": message.text})
    messages.append({"role": "user", "content": user_prompt})
    return messages


def _is_auth_error(exc: Exception) -> bool:
    status_code = getattr(exc, "status_code", None)
    if status_code in (401, 403):
        return True

    response = getattr(exc, "response", None)
    if response is not None and getattr(response, "status_code", None) in (401, 403):
        return True

    text = str(exc).lower()
    return "401" in text or "403" in text or "forbidden" in text or "unauthor" in text


async def _emit(on_chunk: ChunkCallback, chunk: str) -> None:
    result = on_chunk(chunk)
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# Provider base
# ---------------------------------------------------------------------------

class CompletionProvider(ABC):
    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        messages: Optional[List[ChatMessage]] = None,
        temperature: float = GENERATION_TEMPERATURE,
    ) -> str:
        """Return the full completion text."""

    @abstractmethod
    async def stream_complete(
        self,
        system_prompt: str,
        user_prompt: str,
        on_chunk: ChunkCallback,
        messages: Optional[List[ChatMessage]] = None,
        temperature: float = GENERATION_TEMPERATURE,
    ) -> str:
        """Forward each text delta to ``on_chunk`` and return the concatenated text."""

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = RERANK_TEMPERATURE,
    ) -> Any:
        """Completion parsed as JSON (rerank model).  Malformed output raises ValueError."""
        raise NotImplementedError(f"{type(self).__name__} does not support JSON completions")

    def get_config(self) -> Optional[ProviderConfig]:
        return None


# ---------------------------------------------------------------------------
# OpenAI-protocol providers
# ---------------------------------------------------------------------------

class OpenAICompatibleProvider(CompletionProvider):
    provider_name = "openai"

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
        rerank_model: Optional[str] = None,
        timeout: float = 120.0,
        client: Any = None,
    ):
        self.model = model
        self.rerank_model = rerank_model or None
        if client is None:
            from openai import AsyncOpenAI  # type: ignore

            client = AsyncOpenAI(
                base_url = base_url or None,
                api_key  = api_key,
                timeout  = timeout,
            )
        self._client = client

    def _raise_typed(self, exc: Exception) -> None:
        if _is_auth_error(exc):
            raise RAGError(
                f"{self.provider_name} authorization failed: {exc}",
                RAGErrorCode.AUTH,
                False,
                exc,
            ) from exc
        raise exc

    async def complete(self, system_prompt, user_prompt, messages=None, temperature=GENERATION_TEMPERATURE) -> str:
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=build_messages(system_prompt, user_prompt, messages),
                temperature=temperature,
            )
        except Exception as exc:
            self._raise_typed(exc)
        content = completion.choices[0].message.content if completion.choices else None
        return (content or "").strip()

    async def stream_complete(
        self, system_prompt, user_prompt, on_chunk, messages=None, temperature=GENERATION_TEMPERATURE
    ) -> str:
        output_parts: List[str] = []
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=build_messages(system_prompt, user_prompt, messages),
                temperature=temperature,
                stream=True,
            )
            async for chunk in stream:
                if not getattr(chunk, "choices", None):
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue

                reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                if reasoning:
                    logger.debug("<thinking>%s", reasoning)

                content = getattr(delta, "content", None)
                if content:
                    output_parts.append(str(content))
                    await _emit(on_chunk, str(content))
        except RAGError:
            raise
        except Exception as exc:
            self._raise_typed(exc)
        return "".join(output_parts)

    async def complete_json(self, system_prompt, user_prompt, temperature=RERANK_TEMPERATURE) -> Any:
        try:
            completion = await self._client.chat.completions.create(
                model=self.rerank_model or self.model,
                messages=build_messages(system_prompt, user_prompt),
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            self._raise_typed(exc)
        content = (completion.choices[0].message.content if completion.choices else None) or ""
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON format: {exc}") from exc

    def get_config(self) -> ProviderConfig:
        return ProviderConfig(
            ai_provider    = self.provider_name,
            model          = self.model,
            rerank_model   = self.rerank_model,
            skip_reranking = False,
        )


class OpenAIProvider(OpenAICompatibleProvider):
    provider_name = "openai"

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIProvider":
        if not settings.openai_api_key or settings.openai_api_key.startswith("your_"):
            raise RAGError("OPENAI_API_KEY is not configured", RAGErrorCode.AUTH, False)
        return cls(
            model        = settings.openai_model,
            api_key      = settings.openai_api_key,
            base_url     = settings.openai_base_url or None,
            rerank_model = settings.openai_rerank_model,
        )


class OllamaProvider(OpenAICompatibleProvider):
    provider_name = "ollama"

    @classmethod
    def from_settings(cls, settings: Settings) -> "OllamaProvider":
        return cls(
            model        = settings.ollama_model,
            api_key      = "ollama",
            base_url     = f"{settings.ollama_endpoint.rstrip('/')}/v1",
            rerank_model = settings.ollama_rerank_model,
        )

    def get_config(self) -> ProviderConfig:
        config = super().get_config()
        # No dedicated rerank model configured: the chat model is not asked for JSON scores.
        config.skip_reranking = not self.rerank_model
        return config


def build_provider(settings: Settings) -> CompletionProvider:
    if settings.ai_provider == "openai":
        provider: CompletionProvider = OpenAIProvider.from_settings(settings)
    elif settings.ai_provider == "ollama":
        provider = OllamaProvider.from_settings(settings)
    else:
        raise ValueError(f"Unknown AI_PROVIDER: {settings.ai_provider!r}")
    logger.info("Completion provider: %s (%s)", settings.ai_provider, provider.get_config().model)
    return provider
