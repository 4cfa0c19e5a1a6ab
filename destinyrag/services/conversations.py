from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.core.errors import NotFoundError
from destinyrag.domain.models import Conversation
from destinyrag.domain.tiers import get_retention_days, normalize_tier
from destinyrag.persistence.repos import conversations as conversations_repo


logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 10


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retention_until_for(tier: str, now: datetime) -> datetime | None:
    # VIP history never expires; NULL keeps it out of every cleanup sweep.
    days = get_retention_days(tier)
    if days is None:
        return None
    return now + timedelta(days=days)


def retention_cutoff(tier: str, now: datetime) -> datetime | None:
    days = get_retention_days(tier)
    if days is None:
        return None
    return now - timedelta(days=days)


def is_conversation_visible(conversation: Conversation, tier: str, now: datetime) -> bool:
    cutoff = retention_cutoff(tier, now)
    if cutoff is None:
        return True
    if conversation.retention_until is not None and conversation.retention_until < now:
        return False
    return conversation.last_message_at >= cutoff


def build_message(
    role: str,
    content: str,
    *,
    now: datetime | None = None,
    sources: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "role": role,
        "content": content,
        "timestamp": (now or _utc_now()).isoformat(),
    }
    if sources is not None:
        message["sources"] = sources
    return message


def trim_conversation_messages(
    messages: Sequence[dict[str, Any]], context_limit: int = DEFAULT_CONTEXT_LIMIT
) -> list[dict[str, Any]]:
    """Keep the most recent ``context_limit - 1`` messages plus the first user question.

    The opening question is re-attached at the front when trimming would drop
    it, so the model keeps the original framing of the conversation.
    """
    if len(messages) <= context_limit:
        return list(messages)
    if context_limit <= 0:
        return []
    recent = list(messages[-(context_limit - 1) :]) if context_limit > 1 else []
    first_user = next((m for m in messages if m.get("role") == "user"), None)
    if first_user is not None and not any(m is first_user for m in recent):
        return [first_user, *recent]
    return recent


async def get_or_create_conversation(
    session: AsyncSession,
    *,
    user_id: str | None,
    report_id: str,
    tier: str,
    now: datetime | None = None,
) -> Conversation:
    now = now or _utc_now()
    tier = normalize_tier(tier)
    existing = await conversations_repo.get_latest_conversation(
        session, report_id=report_id, user_id=user_id
    )
    # An expired thread is hidden from history and queued for cleanup; start a fresh one.
    if existing is not None and is_conversation_visible(existing, tier, now):
        return existing
    conversation = await conversations_repo.create_conversation(
        session,
        report_id=report_id,
        user_id=user_id,
        subscription_tier=tier,
        last_message_at=now,
        retention_until=retention_until_for(tier, now),
    )
    logger.info(
        "conversation_created conversation_id=%s report_id=%s tier=%s",
        conversation.id,
        report_id,
        tier,
    )
    return conversation


async def add_message_to_conversation(
    session: AsyncSession,
    conversation_id: UUID,
    *messages: dict[str, Any],
    now: datetime | None = None,
) -> Conversation:
    conversation = await conversations_repo.get_conversation(session, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    updated = [*(conversation.messages or []), *messages]
    total_questions = sum(1 for message in updated if message.get("role") == "user")
    return await conversations_repo.save_messages(
        session,
        conversation,
        messages=updated,
        last_message_at=now or _utc_now(),
        metadata={"total_questions": total_questions},
    )


async def get_conversations_for_report(
    session: AsyncSession,
    *,
    user_id: str | None,
    report_id: str,
    tier: str,
    limit: int = 20,
    now: datetime | None = None,
) -> list[Conversation]:
    now = now or _utc_now()
    tier = normalize_tier(tier)
    rows = await conversations_repo.list_conversations(
        session,
        report_id=report_id,
        user_id=user_id,
        now=now,
        active_since=retention_cutoff(tier, now),
        limit=limit,
    )
    return [row for row in rows if is_conversation_visible(row, tier, now)]


async def cleanup_expired_conversations(
    session: AsyncSession, *, now: datetime | None = None
) -> int:
    deleted = await conversations_repo.delete_expired_conversations(session, now=now or _utc_now())
    if deleted:
        logger.info("expired_conversations_deleted count=%s", deleted)
    return deleted
