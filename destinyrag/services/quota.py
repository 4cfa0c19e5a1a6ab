from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.core.errors import InvalidRequestError, QuotaExceededError
from destinyrag.domain.models import UsageTracking
from destinyrag.domain.tiers import get_question_limit, normalize_tier
from destinyrag.persistence.repos import usage as usage_repo


logger = logging.getLogger(__name__)

_UPGRADE_HINTS: dict[str, str] = {
    "free": "本月免费提问次数已用完，升级到基础版每月可提问 15 次，或单独购买追加提问。",
    "basic": "本月提问次数已用完，升级到高级版每月可提问 50 次，或单独购买追加提问。",
    "premium": "本月提问次数已用完，升级到 VIP 即可无限提问，或单独购买追加提问。",
}


@dataclass(frozen=True)
class QuotaStatus:
    # Snapshot of one (user, report, month) usage bucket; limit None means unlimited.
    tier: str
    has_quota: bool
    questions_used: int
    extra_questions: int
    limit: int | None
    remaining: int | None
    can_purchase: bool
    usage_id: UUID | None = None

    @property
    def upgrade_hint(self) -> str | None:
        return get_upgrade_hint(self.tier)


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def _month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def current_period(now: datetime | None = None) -> tuple[datetime, datetime]:
    # Billing periods are UTC calendar months; the end bound is exclusive.
    start = _month_start(now or _utc_now())
    if start.month == 12:
        end = datetime(start.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(start.year, start.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def get_upgrade_hint(tier: str) -> str | None:
    return _UPGRADE_HINTS.get(normalize_tier(tier))


def quota_status(
    *, tier: str, questions_used: int, extra_questions: int, usage_id: UUID | None = None
) -> QuotaStatus:
    tier = normalize_tier(tier)
    limit = get_question_limit(tier)
    total = questions_used + extra_questions
    if limit is None:
        return QuotaStatus(
            tier=tier,
            has_quota=True,
            questions_used=questions_used,
            extra_questions=extra_questions,
            limit=None,
            remaining=None,
            can_purchase=False,
            usage_id=usage_id,
        )
    return QuotaStatus(
        tier=tier,
        has_quota=total < limit,
        questions_used=questions_used,
        extra_questions=extra_questions,
        limit=limit,
        remaining=max(limit - total, 0),
        can_purchase=True,
        usage_id=usage_id,
    )


def _status_from_row(usage: UsageTracking, tier: str) -> QuotaStatus:
    return quota_status(
        tier=tier,
        questions_used=int(usage.questions_used or 0),
        extra_questions=int(usage.extra_questions or 0),
        usage_id=usage.id,
    )


async def _current_usage(
    session: AsyncSession, *, user_id: str | None, report_id: str, tier: str, now: datetime | None
) -> UsageTracking:
    period_start, period_end = current_period(now)
    return await usage_repo.get_or_create_usage(
        session,
        user_id=user_id,
        report_id=report_id,
        plan_tier=tier,
        period_start=period_start,
        period_end=period_end,
    )


async def check_question_quota(
    session: AsyncSession,
    *,
    user_id: str | None,
    report_id: str,
    tier: str,
    now: datetime | None = None,
) -> QuotaStatus:
    tier = normalize_tier(tier)
    usage = await _current_usage(session, user_id=user_id, report_id=report_id, tier=tier, now=now)
    return _status_from_row(usage, tier)


async def increment_question_usage(
    session: AsyncSession,
    *,
    user_id: str | None,
    report_id: str,
    tier: str,
    now: datetime | None = None,
) -> QuotaStatus:
    """Consume one question, atomically refusing once the bucket is full.

    Raises QuotaExceededError without modifying anything when the limit is
    already reached. VIP buckets always increment.
    """
    tier = normalize_tier(tier)
    usage = await _current_usage(session, user_id=user_id, report_id=report_id, tier=tier, now=now)
    limit = get_question_limit(tier)
    updated = await usage_repo.try_increment_usage(session, usage_id=usage.id, limit=limit)
    if updated is None:
        status = _status_from_row(usage, tier)
        logger.info(
            "question_quota_exceeded report_id=%s user_id=%s tier=%s used=%s limit=%s",
            report_id,
            user_id,
            tier,
            status.questions_used,
            limit,
        )
        raise QuotaExceededError(
            f"Question quota exhausted for tier {tier}",
            used=status.questions_used,
            limit=limit,
            upgrade_hint=get_upgrade_hint(tier),
        )
    return _status_from_row(updated, tier)


async def refund_question_usage(
    session: AsyncSession, *, usage_id: UUID, tier: str
) -> QuotaStatus | None:
    updated = await usage_repo.refund_usage(session, usage_id=usage_id)
    if updated is None:
        return None
    return _status_from_row(updated, normalize_tier(tier))


async def add_extra_questions(
    session: AsyncSession,
    *,
    user_id: str | None,
    report_id: str,
    amount: int,
    tier: str = "free",
    now: datetime | None = None,
) -> QuotaStatus:
    # Purchased top-ups land in the current period's bucket regardless of tier.
    if amount <= 0:
        raise InvalidRequestError("amount must be a positive integer")
    tier = normalize_tier(tier)
    usage = await _current_usage(session, user_id=user_id, report_id=report_id, tier=tier, now=now)
    updated = await usage_repo.add_extra_questions(session, usage_id=usage.id, amount=amount)
    logger.info(
        "extra_questions_added report_id=%s user_id=%s amount=%s total_extra=%s",
        report_id,
        user_id,
        amount,
        updated.extra_questions,
    )
    return _status_from_row(updated, tier)
