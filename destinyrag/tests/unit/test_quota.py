from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from destinyrag.core.errors import InvalidRequestError, QuotaExceededError
from destinyrag.domain.models import UsageTracking
from destinyrag.services import quota as quota_service
from destinyrag.services.quota import current_period, quota_status


def _usage(*, used: int = 0, extra: int = 0) -> UsageTracking:
    start, end = current_period(datetime(2026, 5, 10, tzinfo=timezone.utc))
    return UsageTracking(
        id=uuid4(),
        user_id="user-1",
        report_id="report-1",
        plan_tier="free",
        period_start=start,
        period_end=end,
        questions_used=used,
        extra_questions=extra,
    )


def test_free_tier_is_exhausted_at_limit() -> None:
    status = quota_status(tier="free", questions_used=5, extra_questions=0)
    assert status.has_quota is False
    assert status.limit == 5
    assert status.remaining == 0
    assert status.can_purchase is True
    assert status.upgrade_hint is not None


def test_extra_questions_count_against_the_limit() -> None:
    status = quota_status(tier="basic", questions_used=10, extra_questions=3)
    assert status.has_quota is True
    assert status.remaining == 2


def test_vip_is_unlimited() -> None:
    status = quota_status(tier="vip", questions_used=10_000, extra_questions=0)
    assert status.has_quota is True
    assert status.limit is None
    assert status.remaining is None
    assert status.can_purchase is False
    assert status.upgrade_hint is None


def test_unknown_tier_is_treated_as_free() -> None:
    status = quota_status(tier="gold", questions_used=1, extra_questions=0)
    assert status.tier == "free"
    assert status.limit == 5


def test_current_period_is_calendar_month() -> None:
    start, end = current_period(datetime(2026, 5, 31, 23, 59, tzinfo=timezone.utc))
    assert start == datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert end == datetime(2026, 6, 1, tzinfo=timezone.utc)


def test_current_period_rolls_over_december() -> None:
    start, end = current_period(datetime(2026, 12, 15, tzinfo=timezone.utc))
    assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_increment_refuses_when_bucket_is_full(monkeypatch) -> None:
    usage = _usage(used=5)

    async def _get_or_create(session, **kwargs):
        return usage

    async def _try_increment(session, *, usage_id, limit):
        assert limit == 5
        return None

    monkeypatch.setattr(quota_service.usage_repo, "get_or_create_usage", _get_or_create)
    monkeypatch.setattr(quota_service.usage_repo, "try_increment_usage", _try_increment)
    with pytest.raises(QuotaExceededError) as exc_info:
        await quota_service.increment_question_usage(
            object(), user_id="user-1", report_id="report-1", tier="free"
        )
    error = exc_info.value
    assert error.used == 5
    assert error.limit == 5
    assert error.remaining == 0
    assert error.upgrade_hint


@pytest.mark.asyncio
async def test_increment_returns_updated_status(monkeypatch) -> None:
    usage = _usage(used=2)
    incremented = _usage(used=3)

    async def _get_or_create(session, **kwargs):
        return usage

    async def _try_increment(session, *, usage_id, limit):
        assert usage_id == usage.id
        return incremented

    monkeypatch.setattr(quota_service.usage_repo, "get_or_create_usage", _get_or_create)
    monkeypatch.setattr(quota_service.usage_repo, "try_increment_usage", _try_increment)
    status = await quota_service.increment_question_usage(
        object(), user_id="user-1", report_id="report-1", tier="free"
    )
    assert status.questions_used == 3
    assert status.remaining == 2
    assert status.usage_id == incremented.id


@pytest.mark.asyncio
async def test_extra_questions_require_positive_amount() -> None:
    with pytest.raises(InvalidRequestError):
        await quota_service.add_extra_questions(
            object(), user_id="user-1", report_id="report-1", amount=0
        )


@pytest.mark.asyncio
async def test_extra_questions_extend_the_bucket(monkeypatch) -> None:
    usage = _usage(used=5)

    async def _get_or_create(session, **kwargs):
        return usage

    async def _add(session, *, usage_id, amount):
        usage.extra_questions = (usage.extra_questions or 0) + amount
        return usage

    monkeypatch.setattr(quota_service.usage_repo, "get_or_create_usage", _get_or_create)
    monkeypatch.setattr(quota_service.usage_repo, "add_extra_questions", _add)
    status = await quota_service.add_extra_questions(
        object(), user_id="user-1", report_id="report-1", amount=10
    )
    assert status.extra_questions == 10
    # has_quota compares questions_used + extra_questions against the tier limit.
    assert status.has_quota is False
