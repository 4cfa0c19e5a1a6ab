from __future__ import annotations

from typing import Any, Protocol


class LLMProvider(Protocol):
    text_model: str
    embedding_model: str

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        generation_config: dict[str, Any] | None = None,
    ) -> str:
        ...

    async def embed(self, text: str) -> list[float]:
        ...
