from __future__ import annotations

import json
from typing import Any

from destinyrag.ingestion.embeddings import embed_text


_DEFAULT_RESPONSE = json.dumps(
    {
        "answer": "This is a fake response.",
        "citations": [],
        "followUps": [],
    }
)


class FakeLLMProvider:
    text_model = "fake-text"
    embedding_model = "fake-embedding"

    def __init__(self, response: str = _DEFAULT_RESPONSE) -> None:
        # Deterministic response keeps tests and local runs stable without external calls.
        self._response = response
        self.prompts: list[str] = []

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        generation_config: dict[str, Any] | None = None,
    ) -> str:
        _ = system_prompt, generation_config
        self.prompts.append(prompt)
        return self._response

    async def embed(self, text: str) -> list[float]:
        # Hash embedding keeps similarity search meaningful in dev without Vertex access.
        return embed_text(text)
