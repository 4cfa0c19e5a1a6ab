from __future__ import annotations

import json

from destinyrag.domain.schemas import QaAnswerPayload, YearlyFlowPayload
from destinyrag.services.parsing import (
    ParseFailure,
    ParseSuccess,
    extract_json_candidate,
    parse_json_response,
)


def _qa(**overrides) -> dict:
    payload = {
        "promptVersion": "qa_answer_v1",
        "answer": "您的事业运整体向好 [#12]。",
        "citations": [12],
        "followUps": ["今年适合跳槽吗？"],
    }
    payload.update(overrides)
    return payload


def test_parses_fenced_json() -> None:
    raw = "好的，以下是结果：\n```json\n" + json.dumps(_qa(), ensure_ascii=False) + "\n```\n"
    result = parse_json_response(raw, QaAnswerPayload)
    assert isinstance(result, ParseSuccess)
    assert result.ok is True
    assert result.value.citations == [12]


def test_extracts_object_from_surrounding_prose() -> None:
    raw = "结果如下 " + json.dumps(_qa(), ensure_ascii=False) + " 希望对您有帮助"
    result = parse_json_response(raw, QaAnswerPayload)
    assert isinstance(result, ParseSuccess)
    assert result.value.answer.startswith("您的事业运")


def test_braces_inside_strings_do_not_end_the_object() -> None:
    raw = json.dumps(_qa(answer="使用 {五行} 调和 }"), ensure_ascii=False) + " trailing }"
    candidate = extract_json_candidate(raw)
    assert candidate is not None
    assert json.loads(candidate)["answer"] == "使用 {五行} 调和 }"


def test_trailing_commas_and_curly_quotes_are_normalized() -> None:
    raw = '{“answer”: “可以”, “citations”: [1, 2,], “followUps”: [],}'
    result = parse_json_response(raw, QaAnswerPayload)
    assert isinstance(result, ParseSuccess)
    assert result.value.citations == [1, 2]


def test_curly_quotes_inside_valid_json_are_preserved() -> None:
    raw = json.dumps(_qa(answer="他说“稳中求进”"), ensure_ascii=False)
    result = parse_json_response(raw, QaAnswerPayload)
    assert isinstance(result, ParseSuccess)
    assert result.value.answer == "他说“稳中求进”"


def test_missing_json_is_a_failure_with_snippet() -> None:
    result = parse_json_response("抱歉，我无法回答。", QaAnswerPayload, label="QA answer")
    assert isinstance(result, ParseFailure)
    assert result.ok is False
    assert "QA answer" in result.error
    assert result.snippet == "抱歉，我无法回答。"


def test_empty_response_is_a_failure() -> None:
    result = parse_json_response("  ", QaAnswerPayload)
    assert isinstance(result, ParseFailure)
    assert result.snippet == ""


def test_schema_violations_are_reported_by_path() -> None:
    raw = json.dumps(_qa(answer="", followUps=["a", "b", "c", "d"]), ensure_ascii=False)
    result = parse_json_response(raw, QaAnswerPayload)
    assert isinstance(result, ParseFailure)
    assert "answer" in result.error
    assert "followUps" in result.error


def test_yearly_flow_payload_requires_structure() -> None:
    raw = json.dumps({"targetYear": 2026, "natalAnalysis": "原局"}, ensure_ascii=False)
    result = parse_json_response(raw, YearlyFlowPayload, label="yearly flow report")
    assert isinstance(result, ParseFailure)
    assert "energyIndex" in result.error
