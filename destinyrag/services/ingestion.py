from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.core.config import get_settings
from destinyrag.ingestion.chunking import build_content_chunks
from destinyrag.ingestion.embeddings import generate_embeddings, zero_vector
from destinyrag.persistence.db import SessionLocal
from destinyrag.persistence.repos import chunks as chunks_repo
from destinyrag.services.llm_client import LLMClient


logger = logging.getLogger(__name__)


async def _store(session: AsyncSession, records: list[dict[str, Any]]) -> int:
    try:
        return await chunks_repo.insert_chunks(session, records)
    except Exception:
        await session.rollback()
        raise


async def process_report_chunks(
    report_id: str,
    text: str,
    *,
    llm_client: LLMClient,
    session: AsyncSession | None = None,
    on_batch: Callable[[], Awaitable[None]] | None = None,
) -> int:
    """Chunk, embed and store a generated report for retrieval.

    Best-effort: every failure is logged and swallowed so a report whose
    indexing failed still counts as generated. Returns the number of chunk
    rows written.
    """
    if not text or not text.strip():
        logger.info("report_chunking_skipped report_id=%s reason=empty_text", report_id)
        return 0

    settings = get_settings()
    try:
        chunks = build_content_chunks(
            text,
            chunk_size=settings.chunk_size_chars,
            overlap=settings.chunk_overlap_chars,
            min_chunk=settings.chunk_min_chars,
        )
        logger.info(
            "report_chunking_start report_id=%s chars=%s chunks=%s",
            report_id,
            len(text),
            len(chunks),
        )
        # Seed with placeholders so a record exists even if its embedding never arrives.
        records: list[dict[str, Any]] = [
            {
                "report_id": report_id,
                "chunk_index": chunk.chunk_index,
                "content": chunk.content,
                "embedding": zero_vector(),
                "metadata_json": chunk.metadata(),
            }
            for chunk in chunks
        ]
        embeddings = await generate_embeddings(
            [chunk.content for chunk in chunks], llm_client=llm_client, on_batch=on_batch
        )
        for record, embedding in zip(records, embeddings):
            record["embedding"] = embedding

        if session is not None:
            written = await _store(session, records)
        else:
            async with SessionLocal() as own_session:
                written = await _store(own_session, records)
        logger.info("report_chunking_completed report_id=%s chunks=%s", report_id, written)
        return written
    except Exception as exc:  # noqa: BLE001 - indexing must never fail the parent job
        logger.exception("report_chunking_failed report_id=%s error=%s", report_id, exc)
        return 0
