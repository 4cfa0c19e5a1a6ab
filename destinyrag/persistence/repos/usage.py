from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.core.errors import DatabaseError
from destinyrag.domain.models import UsageTracking


def _owner_clause(user_id: str | None):
    if user_id is None:
        return UsageTracking.user_id.is_(None)
    return UsageTracking.user_id == user_id


async def get_usage(
    session: AsyncSession, *, user_id: str | None, report_id: str, period_start: datetime
) -> UsageTracking | None:
    result = await session.execute(
        select(UsageTracking).where(
            _owner_clause(user_id),
            UsageTracking.report_id == report_id,
            UsageTracking.period_start == period_start,
        )
    )
    return result.scalar_one_or_none()


async def get_or_create_usage(
    session: AsyncSession,
    *,
    user_id: str | None,
    report_id: str,
    plan_tier: str,
    period_start: datetime,
    period_end: datetime,
) -> UsageTracking:
    # Insert-or-ignore keeps concurrent first questions from creating duplicate buckets.
    await session.execute(
        pg_insert(UsageTracking)
        .values(
            user_id=user_id,
            report_id=report_id,
            plan_tier=plan_tier,
            period_start=period_start,
            period_end=period_end,
            questions_used=0,
            extra_questions=0,
            last_reset_at=period_start,
        )
        .on_conflict_do_nothing(constraint="uq_qa_usage_tracking_period")
    )
    await session.commit()
    usage = await get_usage(
        session, user_id=user_id, report_id=report_id, period_start=period_start
    )
    if usage is None:
        raise DatabaseError("usage bucket missing after upsert")
    return usage


async def try_increment_usage(
    session: AsyncSession, *, usage_id: UUID, limit: int | None
) -> UsageTracking | None:
    # Check and increment in one statement; None means the bucket was already full.
    condition = UsageTracking.id == usage_id
    if limit is not None:
        condition = and_(
            condition,
            UsageTracking.questions_used + UsageTracking.extra_questions < limit,
        )
    result = await session.execute(
        update(UsageTracking)
        .where(condition)
        .values(questions_used=UsageTracking.questions_used + 1)
        .returning(UsageTracking)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    usage = result.scalar_one_or_none()
    await session.commit()
    return usage


async def add_extra_questions(
    session: AsyncSession, *, usage_id: UUID, amount: int
) -> UsageTracking:
    result = await session.execute(
        update(UsageTracking)
        .where(UsageTracking.id == usage_id)
        .values(extra_questions=UsageTracking.extra_questions + amount)
        .returning(UsageTracking)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    usage = result.scalar_one()
    await session.commit()
    return usage


async def refund_usage(session: AsyncSession, *, usage_id: UUID) -> UsageTracking | None:
    # Return a reserved question when the answer could not be produced.
    result = await session.execute(
        update(UsageTracking)
        .where(UsageTracking.id == usage_id, UsageTracking.questions_used > 0)
        .values(questions_used=UsageTracking.questions_used - 1)
        .returning(UsageTracking)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    usage = result.scalar_one_or_none()
    await session.commit()
    return usage
