from __future__ import annotations

import json
import re
from typing import Any, Iterable, Sequence

from destinyrag.domain.schemas import QA_PROMPT_VERSION, YEARLY_FLOW_PROMPT_VERSION


REPORT_SYSTEM_PROMPT = (
    "你是一位东方命理领域的资深分析师，擅长结合四柱、五行与十神为用户撰写结构清晰、语气温暖的报告。"
)
QA_SYSTEM_PROMPT = "你是东方命盘智能问答助手，只依据提供的报告片段回答问题。"

# History lines replayed into the QA prompt after trimming.
_HISTORY_LINES = 6


def _chart_block(chart_json: dict[str, Any]) -> str:
    # Chart data is opaque here; pass it through verbatim with stable key order.
    return json.dumps(chart_json, ensure_ascii=False, sort_keys=True, indent=2)


def _json_instruction(schema_name: str, fields: Sequence[str], text_range_hint: str) -> str:
    field_lines = "\n  - ".join(fields)
    return (
        "输出规则：\n"
        "- 仅输出 Markdown 代码块包裹的 JSON（使用```json，勿添加额外文字）。\n"
        f"- JSON 必须符合 {schema_name} 定义，字段如下：\n  - {field_lines}\n"
        f"- 所有文本字段使用自然、具有温度的中文，保持 {text_range_hint} 的篇幅。\n"
        "- promptVersion 字段固定为当前版本号。"
    )


def build_deep_report_prompt(chart_json: dict[str, Any]) -> str:
    return (
        "请根据以下命盘数据生成一份 1200 字左右的深度命盘分析报告。\n"
        "使用 Markdown 二级标题分节，依次包含：## 命理分析、## 性格特征、## 事业运、## 财运、"
        "## 感情运、## 健康运、## 人际关系、## 大运、## 建议、## 总结。\n"
        "每节以完整句子结尾，引用具体干支或五行作为依据。\n\n"
        f"### 命盘数据\n{_chart_block(chart_json)}"
    )


def build_yearly_flow_prompt(chart_json: dict[str, Any], target_year: int) -> str:
    instructions = _json_instruction(
        "YearlyFlowPayload",
        [
            f"promptVersion: 固定为 {YEARLY_FLOW_PROMPT_VERSION}",
            "targetYear: 目标年份整数",
            "natalAnalysis: 原局结构解析（120-160字，引用干支+五行）",
            "decadeLuckAnalysis: 所处大运与交替提示（120-160字）",
            "annualFlowAnalysis: 流年结构与核心命题（150-200字）",
            "energyIndex: 12 个节点，按月份顺序，字段 { month, score, narrative }，score 0-100",
            "keyDomains: { career, wealth, relationship, health }，每项含 theme/opportunity/precaution/ritual",
            "monthlyTimeline: 至少 6 条 { month, headline, action, warning }",
            "doList: 3-5 条，使用动词开头",
            "dontList: 3-5 条，提醒需避免的行为",
            'decisionTree: 至少 3 个节点 { id, scenario, choice, outcome }，id 使用 "node-1" 形式',
            "scorecard: { overall, career, wealth, relationship, health, mindset } 0-100，整数",
        ],
        "依照上方字段说明控制字数",
    )
    return (
        f"你是东方命盘 AI 年运规划师，需要为 {target_year} 年生成一份结构化流年导航。\n\n"
        f"### 原始命局数据\n{_chart_block(chart_json)}\n\n"
        "### 编写规范\n"
        "- 明确引用命盘来源。\n"
        "- energyIndex 覆盖 12 个月，按时间顺序排列，narrative 控制在 20-40 字。\n"
        "- 如信息不足，需在 narrative 中说明。\n\n"
        f"{instructions}\n\n"
        "最终仅输出满足 YearlyFlowPayload 的 JSON。"
    )


def _format_history(messages: Iterable[dict[str, Any]]) -> str:
    recent = list(messages)[-_HISTORY_LINES:]
    if not recent:
        return "无既往对话，可直接回答当前问题。"
    lines = []
    for index, message in enumerate(recent, start=1):
        role = "AI" if message.get("role") == "assistant" else "用户"
        condensed = re.sub(r"\s+", " ", str(message.get("content", ""))).strip()
        lines.append(f"{index}. {role}: {condensed}")
    return "\n".join(lines)


def _format_chunks(chunks: Iterable[Any]) -> str:
    blocks = []
    for chunk in chunks:
        blocks.append(
            f"#{chunk.id}（相似度 {chunk.similarity:.3f}）｜{chunk.section}\n{chunk.content.strip()}"
        )
    if not blocks:
        return "未检索到相关内容，请在回答中说明信息不足。"
    return "\n\n".join(blocks)


def build_qa_prompt(
    context_chunks: Sequence[Any],
    history: Sequence[dict[str, Any]],
    question: str,
) -> str:
    instructions = _json_instruction(
        "QaAnswerPayload",
        [
            f"promptVersion: 固定为 {QA_PROMPT_VERSION}",
            "answer: 160-220 字中文，先给总体判断，再列举关键依据，每条依据后以 [#chunkId] 引用",
            "citations: chunk id 数组，按引用先后排序，不重复",
            "followUps: 给出 2-3 条，引导用户继续提问",
        ],
        "160-220 字",
    )
    return (
        "请根据提供的上下文回答用户问题并生成结构化 JSON。\n\n"
        f"### 上下文片段\n{_format_chunks(context_chunks)}\n\n"
        f"### 对话历史\n{_format_history(history)}\n\n"
        f"### 当前问题\n{question}\n\n"
        "### 回答原则\n"
        "- 只依赖上下文内容，不可虚构。\n"
        "- 引用内容时使用 [#chunkId] 标注。\n\n"
        f"{instructions}\n\n"
        "最终仅输出符合 QaAnswerPayload 的 JSON。"
    )
