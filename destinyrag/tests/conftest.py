from __future__ import annotations

import pytest

from destinyrag.core.config import get_settings


@pytest.fixture(autouse=True)
def fake_llm_settings(monkeypatch) -> None:
    # Unit tests never reach Vertex; force the fake provider and fast worker pacing.
    monkeypatch.setenv("LLM_PROVIDER", "fake")
    monkeypatch.setenv("EMBEDDING_BATCH_DELAY_MS", "0")
    monkeypatch.setenv("WORKER_JOB_DELAY_MS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
