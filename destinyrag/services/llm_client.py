from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

from destinyrag.core.config import EMBED_DIM, Settings
from destinyrag.core.errors import InvalidRequestError, LLMResponseError
from destinyrag.providers.llm.base import LLMProvider
from destinyrag.providers.llm.factory import get_llm_provider
from destinyrag.services.resilience import RetryPolicy, retry_async, run_with_timeout


logger = logging.getLogger(__name__)


class LLMClient:
    """Retrying, deadline-aware facade over a text/embedding provider."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        policy: RetryPolicy,
        text_timeout_ms: int | None = None,
        embedding_timeout_ms: int | None = None,
    ) -> None:
        self._provider = provider
        self._policy = policy
        self._text_timeout_ms = text_timeout_ms
        self._embedding_timeout_ms = embedding_timeout_ms

    @property
    def text_model(self) -> str:
        return self._provider.text_model

    @property
    def embedding_model(self) -> str:
        return self._provider.embedding_model

    async def generate_text(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        generation_config: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        if not prompt or not prompt.strip():
            raise InvalidRequestError("generate_text expects a non-empty prompt.")
        operation = f"generateText[{self.text_model}]"
        deadline_ms = timeout_ms if timeout_ms is not None else self._text_timeout_ms

        async def _call() -> str:
            return await run_with_timeout(
                lambda: self._provider.generate(
                    prompt,
                    system_prompt=system_prompt,
                    generation_config=generation_config,
                ),
                operation=operation,
                timeout_ms=deadline_ms,
                cancel_event=cancel_event,
            )

        text = await retry_async(_call, operation=operation, policy=self._policy)
        if not isinstance(text, str) or not text.strip():
            raise LLMResponseError(f"{operation} returned an empty response.")
        return text.strip()

    async def generate_embedding(
        self,
        text: str,
        *,
        timeout_ms: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[float]:
        if not text or not text.strip():
            raise InvalidRequestError("generate_embedding expects a non-empty input string.")
        operation = f"generateEmbedding[{self.embedding_model}]"
        deadline_ms = timeout_ms if timeout_ms is not None else self._embedding_timeout_ms

        async def _call() -> list[float]:
            return await run_with_timeout(
                lambda: self._provider.embed(text),
                operation=operation,
                timeout_ms=deadline_ms,
                cancel_event=cancel_event,
            )

        values = await retry_async(_call, operation=operation, policy=self._policy)
        if not isinstance(values, (list, tuple)) or len(values) != EMBED_DIM:
            raise LLMResponseError(f"{operation} returned an invalid embedding payload.")
        vector = [float(value) for value in values]
        if not all(math.isfinite(value) for value in vector):
            raise LLMResponseError(f"{operation} returned non-finite embedding values.")
        return vector


def build_llm_client(settings: Settings, provider: LLMProvider | None = None) -> LLMClient:
    # Construct once per process and pass by reference; there is no shared module-level client.
    provider = provider or get_llm_provider(settings)
    logger.info(
        "llm_client_built provider=%s text_model=%s embedding_model=%s",
        settings.llm_provider,
        provider.text_model,
        provider.embedding_model,
    )
    return LLMClient(
        provider,
        policy=RetryPolicy(
            max_attempts=settings.llm_max_retries,
            base_delay_ms=settings.llm_retry_delay_ms,
        ),
        text_timeout_ms=settings.llm_text_timeout_ms,
        embedding_timeout_ms=settings.llm_embedding_timeout_ms,
    )
