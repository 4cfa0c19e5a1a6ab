from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from destinyrag.core.errors import (
    DatabaseError,
    InvalidRequestError,
    LLMResponseError,
    LLMTimeoutError,
    QuotaExceededError,
    ReportNotFoundError,
)
from destinyrag.domain.models import Conversation
from destinyrag.services import qa as qa_service
from destinyrag.services.quota import quota_status
from destinyrag.services.retrieval import ScoredChunk


CHUNKS = [
    ScoredChunk(id=11, content="事业宫得力，宜稳中求进。", similarity=0.91, metadata={"section": "事业运"}),
    ScoredChunk(id=12, content="财星透出，正财稳定。", similarity=0.84, metadata={"section": "财运"}),
]


class StubSession:
    def __init__(self) -> None:
        self.rollbacks = 0

    async def rollback(self) -> None:
        self.rollbacks += 1


class StubLLMClient:
    text_model = "fake-text"

    def __init__(self, response: str | None = None, *, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.prompts: list[str] = []

    async def generate_text(self, prompt: str, **kwargs) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response or ""


class QaHarness:
    """Patches every collaborator of answer_question and records what happened."""

    def __init__(self, monkeypatch, *, chunks=CHUNKS, status=None, report=True) -> None:
        self.conversation = Conversation(
            id=uuid4(),
            report_id="report-1",
            user_id="user-1",
            subscription_tier="free",
            messages=[],
        )
        self.status = status or quota_status(
            tier="free", questions_used=1, extra_questions=0, usage_id=uuid4()
        )
        self.recorded: list[tuple] = []
        self.refunds: list = []
        self.conversation_loads = 0
        self.searches = 0

        async def _get_report(session, report_id):
            return SimpleNamespace(id=report_id) if report else None

        async def _increment(session, **kwargs):
            if isinstance(self.status, Exception):
                raise self.status
            return self.status

        async def _refund(session, *, usage_id, tier):
            self.refunds.append(usage_id)
            return None

        async def _get_conversation(session, **kwargs):
            self.conversation_loads += 1
            return self.conversation

        async def _add_messages(session, conversation_id, *messages, now=None):
            self.recorded.append((conversation_id, messages))
            return self.conversation

        async def _search(session, report_id, query, *, llm_client, **kwargs):
            self.searches += 1
            return list(chunks)

        monkeypatch.setattr(qa_service.reports_repo, "get_report", _get_report)
        monkeypatch.setattr(qa_service.quota_service, "increment_question_usage", _increment)
        monkeypatch.setattr(qa_service.quota_service, "refund_question_usage", _refund)
        monkeypatch.setattr(
            qa_service.conversation_service, "get_or_create_conversation", _get_conversation
        )
        monkeypatch.setattr(
            qa_service.conversation_service, "add_message_to_conversation", _add_messages
        )
        monkeypatch.setattr(qa_service, "search_context_chunks", _search)


def _answer_json(**overrides) -> str:
    payload = {
        "promptVersion": "qa_answer_v1",
        "answer": "您今年事业稳中有升 [#11]。",
        "citations": [11],
        "followUps": ["下半年适合换工作吗？"],
    }
    payload.update(overrides)
    return json.dumps(payload, ensure_ascii=False)


async def _ask(llm_client, question: str = "我今年的事业运怎么样？"):
    return await qa_service.answer_question(
        StubSession(),
        llm_client=llm_client,
        report_id="report-1",
        question=question,
        tier="free",
        user_id="user-1",
    )


@pytest.mark.asyncio
async def test_answer_maps_citations_and_records_turn(monkeypatch) -> None:
    harness = QaHarness(monkeypatch)
    llm = StubLLMClient(_answer_json())
    result = await _ask(llm)

    assert result.answer == "您今年事业稳中有升 [#11]。"
    assert [c.chunk_id for c in result.citations] == [11]
    assert result.citations[0].section == "事业运"
    assert result.follow_ups == ["下半年适合换工作吗？"]
    assert result.conversation_id == str(harness.conversation.id)
    assert result.quota_used.used == 1
    assert result.quota_used.remaining == 4
    assert result.upgrade_hint is None
    assert len(llm.prompts) == 1
    assert "#11（相似度 0.910）｜事业运" in llm.prompts[0]

    [(conversation_id, messages)] = harness.recorded
    assert conversation_id == harness.conversation.id
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["sources"] == [{"chunk_id": 11, "similarity": 0.91}]


@pytest.mark.asyncio
async def test_unmatched_citations_fall_back_to_retrieved_chunks(monkeypatch) -> None:
    QaHarness(monkeypatch)
    result = await _ask(StubLLMClient(_answer_json(citations=["#99"], followUps=[])))
    assert [c.chunk_id for c in result.citations] == [11, 12]
    # Empty followUps from the model are replaced by topic suggestions.
    assert result.follow_ups
    assert len(result.follow_ups) <= 3


@pytest.mark.asyncio
async def test_no_relevant_content_skips_generation(monkeypatch) -> None:
    harness = QaHarness(monkeypatch, chunks=[])
    llm = StubLLMClient(_answer_json())
    result = await _ask(llm)

    assert result.answer == qa_service.NO_RELEVANT_CONTENT_ANSWER
    assert result.citations == []
    assert llm.prompts == []
    assert result.quota_used.used == 1
    assert harness.refunds == []
    assert len(harness.recorded) == 1


@pytest.mark.asyncio
async def test_quota_exceeded_has_no_side_effects(monkeypatch) -> None:
    harness = QaHarness(
        monkeypatch,
        status=QuotaExceededError("exhausted", used=5, limit=5, upgrade_hint="升级"),
    )
    llm = StubLLMClient(_answer_json())
    with pytest.raises(QuotaExceededError):
        await _ask(llm)
    assert llm.prompts == []
    assert harness.conversation_loads == 0
    assert harness.searches == 0
    assert harness.recorded == []


@pytest.mark.asyncio
async def test_llm_failure_refunds_reserved_question(monkeypatch) -> None:
    harness = QaHarness(monkeypatch)
    with pytest.raises(LLMTimeoutError):
        await _ask(StubLLMClient(error=LLMTimeoutError("deadline")))
    assert harness.refunds == [harness.status.usage_id]
    assert harness.recorded == []


@pytest.mark.asyncio
async def test_vector_search_failure_refunds_reserved_question(monkeypatch) -> None:
    harness = QaHarness(monkeypatch)

    async def _failing_search(session, report_id, query, *, llm_client, **kwargs):
        raise DatabaseError("pgvector query failed")

    monkeypatch.setattr(qa_service, "search_context_chunks", _failing_search)
    session = StubSession()
    with pytest.raises(DatabaseError):
        await qa_service.answer_question(
            session,
            llm_client=StubLLMClient(_answer_json()),
            report_id="report-1",
            question="我今年的事业运怎么样？",
            tier="free",
            user_id="user-1",
        )
    assert harness.refunds == [harness.status.usage_id]
    assert session.rollbacks == 1
    assert harness.recorded == []


@pytest.mark.asyncio
async def test_unparseable_answer_is_a_response_error(monkeypatch) -> None:
    harness = QaHarness(monkeypatch)
    with pytest.raises(LLMResponseError):
        await _ask(StubLLMClient("我觉得您的事业不错。"))
    assert harness.refunds == [harness.status.usage_id]


@pytest.mark.asyncio
async def test_last_question_carries_upgrade_hint(monkeypatch) -> None:
    QaHarness(
        monkeypatch,
        status=quota_status(tier="free", questions_used=5, extra_questions=0, usage_id=uuid4()),
    )
    result = await _ask(StubLLMClient(_answer_json()))
    assert result.quota_used.remaining == 0
    assert result.upgrade_hint


@pytest.mark.asyncio
async def test_missing_report_is_rejected_before_quota(monkeypatch) -> None:
    harness = QaHarness(monkeypatch, report=False)
    with pytest.raises(ReportNotFoundError):
        await _ask(StubLLMClient(_answer_json()))
    assert harness.conversation_loads == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("question", ["", "   ", "问" * 501])
async def test_invalid_questions_are_rejected(monkeypatch, question: str) -> None:
    QaHarness(monkeypatch)
    with pytest.raises(InvalidRequestError):
        await _ask(StubLLMClient(_answer_json()), question)


def test_follow_ups_prefer_topics_then_pad() -> None:
    suggestions = qa_service.suggest_follow_ups("我的事业和财运如何？", "")
    assert suggestions[:2] == [
        "关于我的事业发展，有什么具体的建议吗？",
        "我的财运状况如何？如何改善？",
    ]
    generic = qa_service.suggest_follow_ups("你好", "")
    assert generic == list(qa_service.GENERIC_FOLLOW_UPS)
    many = qa_service.suggest_follow_ups("事业 财 感情 健康 五行", "")
    assert len(many) == 3


@pytest.mark.asyncio
async def test_history_includes_retention_notice(monkeypatch) -> None:
    now = datetime.now(timezone.utc)
    conversation = Conversation(
        id=uuid4(),
        report_id="report-1",
        user_id="user-1",
        subscription_tier="free",
        messages=[{"role": "user", "content": "问"}],
        last_message_at=now,
        retention_until=now + timedelta(days=30),
        metadata_json={"total_questions": 1},
    )

    async def _list(session, **kwargs):
        return [conversation]

    monkeypatch.setattr(qa_service.conversation_service, "get_conversations_for_report", _list)
    history = await qa_service.get_history(StubSession(), report_id="report-1", tier="free")
    assert history.retention_days == 30
    assert history.message == "历史记录保留 30 天，升级到 VIP 可永久保存所有对话"
    assert history.conversations[0]["id"] == str(conversation.id)
    assert history.conversations[0]["metadata"] == {"total_questions": 1}

    vip = await qa_service.get_history(StubSession(), report_id="report-1", tier="vip")
    assert vip.retention_days is None
    assert vip.message is None


@pytest.mark.asyncio
async def test_history_limit_is_bounded() -> None:
    with pytest.raises(InvalidRequestError):
        await qa_service.get_history(StubSession(), report_id="report-1", tier="free", limit=51)
