from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

from destinyrag.core.config import EMBED_DIM, get_settings

if TYPE_CHECKING:
    from destinyrag.services.llm_client import LLMClient


logger = logging.getLogger(__name__)

# Latin words stay whole; each CJK ideograph is its own token.
_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+|[㐀-鿿]")


def zero_vector() -> list[float]:
    # Placeholder for chunks whose embedding failed; excluded from similarity search.
    return [0.0] * EMBED_DIM


def is_zero_vector(vector: Sequence[float]) -> bool:
    return not any(vector)


def _hash_token(token: str) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    # Hash to a stable index within the fixed embedding dimension.
    idx = int(digest[:8], 16) % EMBED_DIM
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def embed_text(text: str) -> list[float]:
    # Deterministic offline embedding used by the fake provider.
    vector = zero_vector()
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        return vector

    for token in tokens:
        idx, value = _hash_token(token)
        vector[idx] += value

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


async def generate_embeddings(
    texts: Sequence[str],
    *,
    llm_client: "LLMClient",
    batch_size: int | None = None,
    batch_delay_ms: int | None = None,
    on_batch: Callable[[], Awaitable[None]] | None = None,
) -> list[list[float]]:
    """Embed texts in order, one call at a time, pausing between batches.

    A failed embedding is replaced by a zero vector so the output always
    lines up index-for-index with the input. `on_batch` runs after every
    batch that has another one after it; its errors propagate.
    """
    settings = get_settings()
    batch_size = max(1, batch_size or settings.embedding_batch_size)
    delay_ms = settings.embedding_batch_delay_ms if batch_delay_ms is None else batch_delay_ms
    embeddings: list[list[float]] = []
    for offset in range(0, len(texts), batch_size):
        batch = texts[offset : offset + batch_size]
        for text in batch:
            try:
                embeddings.append(
                    await llm_client.generate_embedding(
                        text, timeout_ms=settings.llm_embedding_timeout_ms
                    )
                )
            except Exception as exc:  # noqa: BLE001 - one failed chunk must not abort the batch
                logger.warning(
                    "embedding_failed chunk_prefix=%r error=%s", text[:50], exc
                )
                embeddings.append(zero_vector())
        if offset + batch_size < len(texts):
            if on_batch is not None:
                await on_batch()
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000.0)
    return embeddings
