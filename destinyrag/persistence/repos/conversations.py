from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.domain.models import Conversation


def _owner_clause(user_id: str | None):
    # Anonymous conversations are keyed by a NULL user_id.
    if user_id is None:
        return Conversation.user_id.is_(None)
    return Conversation.user_id == user_id


async def get_latest_conversation(
    session: AsyncSession, *, report_id: str, user_id: str | None
) -> Conversation | None:
    result = await session.execute(
        select(Conversation)
        .where(Conversation.report_id == report_id, _owner_clause(user_id))
        .order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_conversation(session: AsyncSession, conversation_id: UUID) -> Conversation | None:
    result = await session.execute(select(Conversation).where(Conversation.id == conversation_id))
    return result.scalar_one_or_none()


async def create_conversation(
    session: AsyncSession,
    *,
    report_id: str,
    user_id: str | None,
    subscription_tier: str,
    last_message_at: datetime,
    retention_until: datetime | None,
) -> Conversation:
    conversation = Conversation(
        report_id=report_id,
        user_id=user_id,
        subscription_tier=subscription_tier,
        messages=[],
        last_message_at=last_message_at,
        retention_until=retention_until,
        metadata_json={"total_questions": 0},
    )
    session.add(conversation)
    await session.commit()
    return conversation


async def save_messages(
    session: AsyncSession,
    conversation: Conversation,
    *,
    messages: list[dict[str, Any]],
    last_message_at: datetime,
    metadata: dict[str, Any],
) -> Conversation:
    # Assign fresh containers so SQLAlchemy detects the JSONB change.
    conversation.messages = list(messages)
    conversation.last_message_at = last_message_at
    conversation.metadata_json = {**(conversation.metadata_json or {}), **metadata}
    await session.commit()
    return conversation


async def list_conversations(
    session: AsyncSession,
    *,
    report_id: str,
    user_id: str | None,
    now: datetime,
    active_since: datetime | None,
    limit: int,
) -> list[Conversation]:
    stmt = select(Conversation).where(Conversation.report_id == report_id, _owner_clause(user_id))
    if active_since is not None:
        # NULL retention_until never expires; otherwise both windows must still be open.
        stmt = stmt.where(
            or_(Conversation.retention_until.is_(None), Conversation.retention_until >= now),
            Conversation.last_message_at >= active_since,
        )
    result = await session.execute(
        stmt.order_by(Conversation.last_message_at.desc(), Conversation.id.asc()).limit(limit)
    )
    return list(result.scalars().all())


async def delete_expired_conversations(session: AsyncSession, *, now: datetime) -> int:
    result = await session.execute(
        delete(Conversation)
        .where(Conversation.retention_until.is_not(None), Conversation.retention_until < now)
        .returning(Conversation.id)
    )
    deleted = len(result.scalars().all())
    await session.commit()
    return deleted
