from __future__ import annotations

from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from destinyrag.core.errors import DatabaseError, LLMTimeoutError
from destinyrag.services import retrieval as retrieval_service
from destinyrag.services.retrieval import (
    ScoredChunk,
    extract_context_chunks,
    format_citations,
    validate_search_results,
)


class StubEmbeddingClient:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error

    async def generate_embedding(self, text: str, *, timeout_ms=None, cancel_event=None) -> list[float]:
        if self.error is not None:
            raise self.error
        return [0.1, 0.2]


def _row(chunk_id: int, content: str, section: str = "事业运"):
    return SimpleNamespace(id=chunk_id, content=content, metadata_json={"section": section})


def test_validate_rejects_non_list_input() -> None:
    assert validate_search_results(None) == []
    assert validate_search_results({"id": 1}) == []
    assert validate_search_results("rows") == []


def test_validate_drops_malformed_rows_and_sorts() -> None:
    rows = [
        None,
        "stray",
        {"content": "无编号"},
        {"id": 2, "content": "   "},
        {"id": 3, "content": "低相关", "similarity": 0.71},
        {"id": 4, "content": "无分数"},
        {"id": 5, "content": "高相关", "similarity": 0.93, "metadata": {"section": "财运"}},
    ]
    results = validate_search_results(rows)
    assert [chunk.id for chunk in results] == [5, 3, 4]
    assert results[2].similarity == 0.5
    assert results[0].section == "财运"
    assert results[1].section == "general"


def test_validate_accepts_attribute_objects() -> None:
    results = validate_search_results([SimpleNamespace(id=7, content="内容", similarity=0.8, metadata=None)])
    assert results == [ScoredChunk(id=7, content="内容", similarity=0.8, metadata={})]


def test_extract_truncates_to_limit() -> None:
    chunks = [ScoredChunk(id=i, content=str(i), similarity=i / 10) for i in range(8)]
    top = extract_context_chunks(chunks, 3)
    assert [chunk.id for chunk in top] == [7, 6, 5]
    assert extract_context_chunks(chunks, 0) == []


def test_format_citations_is_unique_and_ordered() -> None:
    chunks = [{"id": 4}, {"id": 2}, {"id": 4}, {"content": "no id"}, SimpleNamespace(id=9)]
    assert format_citations(chunks) == [4, 2, 9]


@pytest.mark.asyncio
async def test_search_filters_by_threshold(monkeypatch) -> None:
    captured: dict = {}

    async def _search(session, **kwargs):
        captured.update(kwargs)
        return [(_row(1, "甲"), 0.9), (_row(2, "乙"), 0.7), (_row(3, "丙"), 0.4)]

    monkeypatch.setattr(retrieval_service.chunks_repo, "search_chunks", _search)
    results = await retrieval_service.search_context_chunks(
        object(),
        "report-1",
        "今年事业如何？",
        llm_client=StubEmbeddingClient(),
        limit=5,
        similarity_threshold=0.6,
    )
    assert [chunk.id for chunk in results] == [1, 2]
    assert captured["report_id"] == "report-1"
    assert captured["query_embedding"] == [0.1, 0.2]
    assert captured["limit"] == 5


@pytest.mark.asyncio
async def test_search_wraps_database_errors(monkeypatch) -> None:
    async def _search(session, **kwargs):
        raise OperationalError("select", {}, Exception("connection reset"))

    monkeypatch.setattr(retrieval_service.chunks_repo, "search_chunks", _search)
    with pytest.raises(DatabaseError):
        await retrieval_service.search_context_chunks(
            object(), "report-1", "问题", llm_client=StubEmbeddingClient()
        )


@pytest.mark.asyncio
async def test_search_propagates_embedding_errors() -> None:
    with pytest.raises(LLMTimeoutError):
        await retrieval_service.search_context_chunks(
            object(), "report-1", "问题", llm_client=StubEmbeddingClient(error=LLMTimeoutError("slow"))
        )
