from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.apps.api.deps import get_db, get_llm_client
from destinyrag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from destinyrag.apps.api.response import SuccessEnvelope, success_response
from destinyrag.core.errors import ReportNotFoundError
from destinyrag.domain.tiers import SubscriptionTier
from destinyrag.persistence.repos import reports as reports_repo
from destinyrag.services import qa as qa_service
from destinyrag.services import quota as quota_service
from destinyrag.services.llm_client import LLMClient


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/qa", tags=["qa"], responses=DEFAULT_ERROR_RESPONSES)

_DISCONNECT_POLL_S = 0.5


class AskRequest(BaseModel):
    report_id: str = Field(min_length=1)
    question: str = Field(min_length=1, max_length=500)
    subscription_tier: SubscriptionTier = "free"
    user_id: str | None = None


class CitationResponse(BaseModel):
    chunk_id: int
    content: str
    section: str
    similarity: float


class QuotaUsedResponse(BaseModel):
    used: int
    limit: int | None
    remaining: int | None


class AskResponse(BaseModel):
    answer: str
    citations: list[CitationResponse]
    followUps: list[str]
    conversationId: str | None
    quotaUsed: QuotaUsedResponse
    upgradeHint: str | None = None


class HistoryResponse(BaseModel):
    conversations: list[dict[str, Any]]
    retention_days: int | None
    message: str | None = None


class QuotaResponse(BaseModel):
    tier: str
    has_quota: bool
    questions_used: int
    extra_questions: int
    limit: int | None
    remaining: int | None
    can_purchase: bool
    upgradeHint: str | None = None


class ExtraQuestionsRequest(BaseModel):
    report_id: str = Field(min_length=1)
    amount: int = Field(gt=0, le=1000)
    subscription_tier: SubscriptionTier = "free"
    user_id: str | None = None


async def _require_report(db: AsyncSession, report_id: str) -> None:
    if await reports_repo.get_report(db, report_id) is None:
        raise ReportNotFoundError(f"Report {report_id} not found")


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    # Abort upstream generation once the caller has gone away.
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("qa_client_disconnected path=%s", request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(_DISCONNECT_POLL_S)


def _quota_payload(status: quota_service.QuotaStatus) -> QuotaResponse:
    return QuotaResponse(
        tier=status.tier,
        has_quota=status.has_quota,
        questions_used=status.questions_used,
        extra_questions=status.extra_questions,
        limit=status.limit,
        remaining=status.remaining,
        can_purchase=status.can_purchase,
        upgradeHint=status.upgrade_hint if not status.has_quota else None,
    )


@router.post("/ask", response_model=SuccessEnvelope[AskResponse])
async def ask(
    request: Request,
    payload: AskRequest,
    db: AsyncSession = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
) -> dict:
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        result = await qa_service.answer_question(
            db,
            llm_client=llm_client,
            report_id=payload.report_id,
            question=payload.question,
            tier=payload.subscription_tier,
            user_id=payload.user_id,
            cancel_event=cancel_event,
        )
    finally:
        watcher.cancel()
    data = AskResponse(
        answer=result.answer,
        citations=[
            CitationResponse(
                chunk_id=c.chunk_id, content=c.content, section=c.section, similarity=c.similarity
            )
            for c in result.citations
        ],
        followUps=result.follow_ups,
        conversationId=result.conversation_id,
        quotaUsed=QuotaUsedResponse(
            used=result.quota_used.used,
            limit=result.quota_used.limit,
            remaining=result.quota_used.remaining,
        ),
        upgradeHint=result.upgrade_hint,
    )
    return success_response(request=request, data=data)


@router.get("/history/{report_id}", response_model=SuccessEnvelope[HistoryResponse])
async def history(
    request: Request,
    report_id: str,
    subscription_tier: SubscriptionTier = Query(default="free"),
    user_id: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await qa_service.get_history(
        db, report_id=report_id, tier=subscription_tier, user_id=user_id, limit=limit
    )
    data = HistoryResponse(
        conversations=result.conversations,
        retention_days=result.retention_days,
        message=result.message,
    )
    return success_response(request=request, data=data)


@router.get("/quota/{report_id}", response_model=SuccessEnvelope[QuotaResponse])
async def quota(
    request: Request,
    report_id: str,
    subscription_tier: SubscriptionTier = Query(default="free"),
    user_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_report(db, report_id)
    status = await quota_service.check_question_quota(
        db, user_id=user_id, report_id=report_id, tier=subscription_tier
    )
    return success_response(request=request, data=_quota_payload(status))


@router.post("/extra-questions", response_model=SuccessEnvelope[QuotaResponse])
async def extra_questions(
    request: Request,
    payload: ExtraQuestionsRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Payment is settled upstream; this only records the purchased top-up.
    await _require_report(db, payload.report_id)
    status = await quota_service.add_extra_questions(
        db,
        user_id=payload.user_id,
        report_id=payload.report_id,
        amount=payload.amount,
        tier=payload.subscription_tier,
    )
    return success_response(request=request, data=_quota_payload(status))
