from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.agent.prompts import QA_SYSTEM_PROMPT, build_qa_prompt
from destinyrag.core.config import get_settings
from destinyrag.core.errors import (
    DatabaseError,
    InvalidRequestError,
    LLMError,
    LLMResponseError,
    NotFoundError,
    ReportNotFoundError,
)
from destinyrag.domain.models import Conversation
from destinyrag.domain.schemas import QaAnswerPayload
from destinyrag.domain.tiers import get_retention_days, normalize_tier
from destinyrag.persistence.repos import reports as reports_repo
from destinyrag.services import conversations as conversation_service
from destinyrag.services import quota as quota_service
from destinyrag.services.llm_client import LLMClient
from destinyrag.services.parsing import ParseFailure, parse_json_response
from destinyrag.services.retrieval import ScoredChunk, format_citations, search_context_chunks


logger = logging.getLogger(__name__)

NO_RELEVANT_CONTENT_ANSWER = (
    "抱歉，在这份报告中没有找到与您的问题直接相关的内容。"
    "您可以换一种问法，或围绕报告中的性格、事业、财运、感情、健康等主题提问。"
)
GENERIC_FOLLOW_UPS = (
    "能详细解释一下刚才提到的内容吗？",
    "基于这个分析，我有什么需要注意的地方吗？",
)
# Topic keyword -> suggested follow-up, checked in order.
_TOPIC_FOLLOW_UPS: tuple[tuple[str, str], ...] = (
    ("事业", "关于我的事业发展，有什么具体的建议吗？"),
    ("财", "我的财运状况如何？如何改善？"),
    ("感情", "我的感情运势有哪些需要留意的时间点？"),
    ("健康", "在健康方面我应该注意些什么？"),
    ("五行", "我的五行平衡情况如何？该如何调理？"),
)
_MAX_FOLLOW_UPS = 3
_QA_GENERATION_CONFIG = {"temperature": 0.4, "top_p": 0.9, "max_output_tokens": 1024}
_HISTORY_NOTICE = "历史记录保留 {days} 天，升级到 VIP 可永久保存所有对话"


@dataclass(frozen=True)
class Citation:
    chunk_id: int
    content: str
    section: str
    similarity: float


@dataclass(frozen=True)
class QuotaUsage:
    used: int
    limit: int | None
    remaining: int | None


@dataclass(frozen=True)
class QaAnswer:
    answer: str
    citations: list[Citation]
    follow_ups: list[str]
    conversation_id: str | None
    quota_used: QuotaUsage
    upgrade_hint: str | None = None


@dataclass(frozen=True)
class QaHistory:
    conversations: list[dict[str, Any]]
    retention_days: int | None
    message: str | None = None


@dataclass
class _Turn:
    answer: str
    citations: list[Citation] = field(default_factory=list)
    follow_ups: list[str] = field(default_factory=list)


def suggest_follow_ups(
    question: str, answer: str, context_topics: Sequence[str] | None = None
) -> list[str]:
    text = f"{question} {answer} {' '.join(context_topics or ())}"
    suggestions = [follow_up for topic, follow_up in _TOPIC_FOLLOW_UPS if topic in text]
    for generic in GENERIC_FOLLOW_UPS:
        if len(suggestions) >= 2:
            break
        suggestions.append(generic)
    return suggestions[:_MAX_FOLLOW_UPS]


def _map_citations(cited: Sequence[int | str], chunks: Sequence[ScoredChunk]) -> list[Citation]:
    by_id = {str(chunk.id): chunk for chunk in chunks}
    # Fall back to every retrieved chunk when the model cites nothing usable.
    resolved = [by_id[str(ref).lstrip("#")] for ref in cited if str(ref).lstrip("#") in by_id]
    if not resolved:
        resolved = list(chunks)
    ordered = format_citations(resolved)
    return [
        Citation(
            chunk_id=by_id[str(chunk_id)].id,
            content=by_id[str(chunk_id)].content,
            section=by_id[str(chunk_id)].section,
            similarity=by_id[str(chunk_id)].similarity,
        )
        for chunk_id in ordered
    ]


def validate_question(question: str) -> str:
    settings = get_settings()
    cleaned = (question or "").strip()
    if not cleaned:
        raise InvalidRequestError("question must not be empty")
    if len(cleaned) > settings.qa_max_question_chars:
        raise InvalidRequestError(
            f"question must be at most {settings.qa_max_question_chars} characters"
        )
    return cleaned


async def _load_conversation(
    session: AsyncSession, *, user_id: str | None, report_id: str, tier: str
) -> Conversation | None:
    try:
        return await conversation_service.get_or_create_conversation(
            session, user_id=user_id, report_id=report_id, tier=tier
        )
    except SQLAlchemyError as exc:
        # Answering does not depend on history; continue without it.
        await session.rollback()
        logger.warning("conversation_load_failed report_id=%s error=%s", report_id, exc)
        return None


async def _record_turn(
    session: AsyncSession, conversation: Conversation | None, question: str, turn: _Turn
) -> None:
    if conversation is None:
        return
    sources = [{"chunk_id": c.chunk_id, "similarity": c.similarity} for c in turn.citations]
    try:
        await conversation_service.add_message_to_conversation(
            session,
            conversation.id,
            conversation_service.build_message("user", question),
            conversation_service.build_message("assistant", turn.answer, sources=sources),
        )
    except (SQLAlchemyError, NotFoundError) as exc:
        await session.rollback()
        logger.warning(
            "conversation_persist_failed conversation_id=%s error=%s", conversation.id, exc
        )


async def _generate_turn(
    *,
    llm_client: LLMClient,
    question: str,
    chunks: list[ScoredChunk],
    history: list[dict[str, Any]],
    cancel_event: asyncio.Event | None,
) -> _Turn:
    settings = get_settings()
    prompt = build_qa_prompt(chunks, history, question)
    raw = await llm_client.generate_text(
        prompt,
        system_prompt=QA_SYSTEM_PROMPT,
        generation_config=_QA_GENERATION_CONFIG,
        timeout_ms=settings.llm_qa_timeout_ms,
        cancel_event=cancel_event,
    )
    parsed = parse_json_response(raw, QaAnswerPayload, label="QA answer")
    if isinstance(parsed, ParseFailure):
        logger.warning("qa_answer_unparseable error=%s snippet=%r", parsed.error, parsed.snippet)
        raise LLMResponseError(parsed.error)
    payload = parsed.value
    return _Turn(
        answer=payload.answer.strip(),
        citations=_map_citations(payload.citations, chunks),
        follow_ups=payload.followUps
        or suggest_follow_ups(question, payload.answer, [c.section for c in chunks]),
    )


async def answer_question(
    session: AsyncSession,
    *,
    llm_client: LLMClient,
    report_id: str,
    question: str,
    tier: str,
    user_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> QaAnswer:
    question = validate_question(question)
    tier = normalize_tier(tier)
    settings = get_settings()

    report = await reports_repo.get_report(session, report_id)
    if report is None:
        raise ReportNotFoundError(f"Report {report_id} not found")

    status = await _reserve_question(session, user_id=user_id, report_id=report_id, tier=tier)
    conversation = await _load_conversation(
        session, user_id=user_id, report_id=report_id, tier=tier
    )
    history = conversation_service.trim_conversation_messages(
        list(conversation.messages or []) if conversation is not None else [],
        settings.qa_context_limit,
    )

    try:
        chunks = await search_context_chunks(
            session, report_id, question, llm_client=llm_client
        )
        if not chunks:
            # Short-circuit without text generation; the reserved question stays consumed.
            logger.info("qa_no_relevant_content report_id=%s", report_id)
            turn = _Turn(
                answer=NO_RELEVANT_CONTENT_ANSWER,
                follow_ups=suggest_follow_ups(question, ""),
            )
        else:
            turn = await _generate_turn(
                llm_client=llm_client,
                question=question,
                chunks=chunks,
                history=history,
                cancel_event=cancel_event,
            )
    except DatabaseError:
        # The failed vector search leaves the transaction aborted; the reservation is already committed.
        await session.rollback()
        await _refund(session, status, report_id)
        raise
    except LLMError:
        await _refund(session, status, report_id)
        raise

    await _record_turn(session, conversation, question, turn)
    logger.info(
        "qa_answered report_id=%s conversation_id=%s citations=%s used=%s",
        report_id,
        conversation.id if conversation is not None else None,
        len(turn.citations),
        status.questions_used,
    )
    return QaAnswer(
        answer=turn.answer,
        citations=turn.citations,
        follow_ups=turn.follow_ups[:_MAX_FOLLOW_UPS],
        conversation_id=str(conversation.id) if conversation is not None else None,
        quota_used=QuotaUsage(
            used=status.questions_used, limit=status.limit, remaining=status.remaining
        ),
        upgrade_hint=status.upgrade_hint if status.remaining == 0 else None,
    )


async def _reserve_question(
    session: AsyncSession, *, user_id: str | None, report_id: str, tier: str
) -> quota_service.QuotaStatus:
    # QuotaExceededError propagates and leaves every row untouched.
    try:
        return await quota_service.increment_question_usage(
            session, user_id=user_id, report_id=report_id, tier=tier
        )
    except SQLAlchemyError as exc:
        # Usage tracking outages must not block answering.
        await session.rollback()
        logger.warning("question_usage_reserve_failed report_id=%s error=%s", report_id, exc)
        return quota_service.quota_status(tier=tier, questions_used=0, extra_questions=0)


async def _refund(session: AsyncSession, status: quota_service.QuotaStatus, report_id: str) -> None:
    if status.usage_id is None:
        return
    try:
        await quota_service.refund_question_usage(
            session, usage_id=status.usage_id, tier=status.tier
        )
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("question_refund_failed report_id=%s error=%s", report_id, exc)


def _serialize_conversation(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": str(conversation.id),
        "report_id": conversation.report_id,
        "user_id": conversation.user_id,
        "subscription_tier": conversation.subscription_tier,
        "messages": list(conversation.messages or []),
        "last_message_at": conversation.last_message_at.isoformat()
        if conversation.last_message_at
        else None,
        "retention_until": conversation.retention_until.isoformat()
        if conversation.retention_until
        else None,
        "metadata": dict(conversation.metadata_json or {}),
    }


async def get_history(
    session: AsyncSession,
    *,
    report_id: str,
    tier: str,
    user_id: str | None = None,
    limit: int = 20,
) -> QaHistory:
    if limit < 1 or limit > 50:
        raise InvalidRequestError("limit must be between 1 and 50")
    tier = normalize_tier(tier)
    conversations = await conversation_service.get_conversations_for_report(
        session, user_id=user_id, report_id=report_id, tier=tier, limit=limit
    )
    retention_days = get_retention_days(tier)
    return QaHistory(
        conversations=[_serialize_conversation(c) for c in conversations],
        retention_days=retention_days,
        message=_HISTORY_NOTICE.format(days=retention_days) if retention_days is not None else None,
    )
