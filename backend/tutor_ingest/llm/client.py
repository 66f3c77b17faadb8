"""
Model client: generative + embedding calls routed through the KeyPool.

  ModelClient.generate_json(prompt) ──► KeyPool.with_retry(ChatOpenAI.ainvoke)
  ModelClient.embed(texts)          ──► KeyPool.with_retry(AsyncOpenAI.embeddings.create)

Provider SDK clients are built lazily, one per credential, and cached for the
process lifetime. SDK-level retries are switched off (max_retries=0) so that
retry and rotation decisions are made in exactly one place: the pool.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from openai import AsyncOpenAI

from tutor_ingest.llm.key_pool import Credential, KeyPool

if TYPE_CHECKING:
    from tutor_ingest.core.config import Settings

logger = logging.getLogger(__name__)

JSON_SYSTEM_PROMPT = (
    "You are a precise document-structuring assistant. "
    "Respond with valid JSON only. Do not wrap the JSON in markdown."
)


class ModelClient:
    def __init__(
        self,
        pool:                 KeyPool,
        *,
        model:                str,
        embedding_model:      str,
        embedding_dimensions: int | None = None,
        temperature:          float      = 0.0,
        max_tokens:           int        = 8192,
        timeout:              float      = 120.0,
        base_url:             str | None = None,
    ) -> None:
        self._pool                 = pool
        self._model                = model
        self._embedding_model      = embedding_model
        self._embedding_dimensions = embedding_dimensions
        self._temperature          = temperature
        self._max_tokens           = max_tokens
        self._timeout              = timeout
        self._base_url             = base_url or None

        self._chat_models:       dict[int, BaseChatModel] = {}
        self._embedding_clients: dict[int, AsyncOpenAI]   = {}

    @classmethod
    def from_settings(cls, pool: KeyPool, settings: "Settings") -> "ModelClient":
        return cls(
            pool,
            model=settings.llm_model,
            embedding_model=settings.embedding_model,
            embedding_dimensions=settings.embedding_dimensions,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_request_timeout,
            base_url=settings.llm_base_url,
        )

    @property
    def pool(self) -> KeyPool:
        return self._pool

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_json(self, prompt: str, system_prompt: str = JSON_SYSTEM_PROMPT) -> str:
        """Return the raw text of a JSON-only completion for `prompt`."""
        messages: list[BaseMessage] = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=prompt),
        ]

        async def _call(credential: Credential) -> str:
            t0       = time.perf_counter()
            response = await self._chat_model(credential).ainvoke(messages)
            logger.debug(
                "ModelClient | generate key=%s model=%s latency=%.0fms",
                credential.masked_key, self._model, (time.perf_counter() - t0) * 1000,
            )
            return _message_text(response.content)

        return await self._pool.with_retry(_call)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed `texts` in one provider call; output order matches input order."""
        if not texts:
            return []

        kwargs: dict[str, Any] = {"model": self._embedding_model, "input": list(texts)}
        if self._embedding_dimensions and self._embedding_model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._embedding_dimensions

        async def _call(credential: Credential) -> list[list[float]]:
            response = await self._embedding_client(credential).embeddings.create(**kwargs)
            ordered  = sorted(response.data, key=lambda d: d.index)
            return [d.embedding for d in ordered]

        vectors = await self._pool.with_retry(_call)
        if len(vectors) != len(texts):
            raise ValueError(
                f"Embedding count mismatch: sent {len(texts)} texts, got {len(vectors)} vectors"
            )
        return vectors

    # ------------------------------------------------------------------
    # Per-credential SDK clients
    # ------------------------------------------------------------------

    def _chat_model(self, credential: Credential) -> BaseChatModel:
        model = self._chat_models.get(credential.id)
        if model is None:
            model = ChatOpenAI(
                model=self._model,
                api_key=credential.api_key,
                base_url=self._base_url,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                timeout=self._timeout,
                max_retries=0,
            )
            self._chat_models[credential.id] = model
        return model

    def _embedding_client(self, credential: Credential) -> AsyncOpenAI:
        client = self._embedding_clients.get(credential.id)
        if client is None:
            client = AsyncOpenAI(
                api_key=credential.api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
            self._embedding_clients[credential.id] = client
        return client


def _message_text(content: Any) -> str:
    """Flatten a LangChain message content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content)
