from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.core.config import get_settings
from destinyrag.core.errors import DatabaseError
from destinyrag.ingestion.chunking import DEFAULT_SECTION
from destinyrag.persistence.repos import chunks as chunks_repo
from destinyrag.services.llm_client import LLMClient


logger = logging.getLogger(__name__)

# Assumed similarity for rows that arrive without a score.
_DEFAULT_SIMILARITY = 0.5


@dataclass(frozen=True)
class ScoredChunk:
    id: int
    content: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def section(self) -> str:
        return str(self.metadata.get("section") or DEFAULT_SECTION)


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def validate_search_results(rows: Any) -> list[ScoredChunk]:
    # Drop malformed rows (no id, blank content) and return them best-first.
    if not isinstance(rows, (list, tuple)):
        return []
    valid: list[ScoredChunk] = []
    for row in rows:
        if row is None or isinstance(row, (str, bytes)):
            continue
        chunk_id = _field(row, "id")
        content = _field(row, "content")
        if chunk_id is None or not isinstance(content, str) or not content.strip():
            continue
        similarity = _field(row, "similarity")
        if not isinstance(similarity, (int, float)) or isinstance(similarity, bool):
            similarity = _DEFAULT_SIMILARITY
        metadata = _field(row, "metadata")
        valid.append(
            ScoredChunk(
                id=chunk_id,
                content=content,
                similarity=float(similarity),
                metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
            )
        )
    return sorted(valid, key=lambda chunk: chunk.similarity, reverse=True)


def extract_context_chunks(results: Iterable[ScoredChunk], limit: int = 5) -> list[ScoredChunk]:
    ranked = sorted(results, key=lambda chunk: chunk.similarity, reverse=True)
    return ranked[: max(0, limit)]


def format_citations(chunks: Iterable[Any]) -> list[int]:
    # Unique chunk ids in first-appearance order; chunks without an id are skipped.
    seen: set[Any] = set()
    citations: list[int] = []
    for chunk in chunks:
        chunk_id = _field(chunk, "id")
        if chunk_id is None or chunk_id in seen:
            continue
        seen.add(chunk_id)
        citations.append(chunk_id)
    return citations


async def search_context_chunks(
    session: AsyncSession,
    report_id: str,
    query: str,
    *,
    llm_client: LLMClient,
    limit: int | None = None,
    similarity_threshold: float | None = None,
) -> list[ScoredChunk]:
    settings = get_settings()
    limit = limit or settings.retrieval_top_k
    threshold = (
        settings.retrieval_similarity_threshold
        if similarity_threshold is None
        else similarity_threshold
    )
    query_embedding = await llm_client.generate_embedding(
        query, timeout_ms=settings.llm_embedding_timeout_ms
    )
    try:
        rows = await chunks_repo.search_chunks(
            session,
            report_id=report_id,
            query_embedding=query_embedding,
            similarity_threshold=threshold,
            limit=limit,
        )
    except SQLAlchemyError as exc:
        # Convert DB errors into a controlled error for the API envelope.
        raise DatabaseError("pgvector query failed") from exc

    results = validate_search_results(
        [
            {
                "id": chunk.id,
                "content": chunk.content,
                "similarity": similarity,
                "metadata": chunk.metadata_json or {},
            }
            for chunk, similarity in rows
        ]
    )
    results = [chunk for chunk in results if chunk.similarity > threshold]
    logger.info(
        "context_search report_id=%s results=%s threshold=%s", report_id, len(results), threshold
    )
    return extract_context_chunks(results, limit)
