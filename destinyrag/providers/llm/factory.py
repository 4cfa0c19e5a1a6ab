from __future__ import annotations

from destinyrag.core.config import Settings, get_settings
from destinyrag.providers.llm.base import LLMProvider
from destinyrag.providers.llm.fake import FakeLLMProvider
from destinyrag.providers.llm.gemini_vertex import GeminiVertexProvider


def get_llm_provider(settings: Settings | None = None) -> LLMProvider:
    settings = settings or get_settings()
    provider = (settings.llm_provider or "vertex").lower()

    if provider == "fake":
        return FakeLLMProvider()
    return GeminiVertexProvider(settings)
