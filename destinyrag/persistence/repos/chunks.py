from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.domain.models import ReportChunk


async def insert_chunks(session: AsyncSession, records: Sequence[dict[str, Any]]) -> int:
    # One executemany round trip for the whole report keeps indexing writes batched.
    if not records:
        return 0
    await session.execute(insert(ReportChunk), list(records))
    await session.commit()
    return len(records)


async def search_chunks(
    session: AsyncSession,
    *,
    report_id: str,
    query_embedding: list[float],
    similarity_threshold: float,
    limit: int,
) -> list[tuple[ReportChunk, float]]:
    # Use cosine distance from pgvector; lower is more similar.
    distance_expr = ReportChunk.embedding.cosine_distance(query_embedding)
    stmt = (
        select(ReportChunk, distance_expr.label("distance"))
        .where(
            ReportChunk.report_id == report_id,
            ReportChunk.embedding.is_not(None),
            # Zero-vector fallbacks have an undefined (NaN) cosine distance.
            func.vector_norm(ReportChunk.embedding) > 0,
            (1 - distance_expr) > similarity_threshold,
        )
        # Secondary ordering keeps tie-breaking deterministic.
        .order_by(distance_expr.asc(), ReportChunk.id.asc())
        .limit(max(1, limit))
    )
    result = await session.execute(stmt)
    return [(chunk, 1.0 - float(distance)) for chunk, distance in result.all()]
