from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


QA_PROMPT_VERSION = "qa_answer_v1"
YEARLY_FLOW_PROMPT_VERSION = "yearly_flow_v1"
DEEP_REPORT_PROMPT_VERSION = "v1"


class _Payload(BaseModel):
    # Models add stray keys now and then; only the named fields are contractual.
    model_config = ConfigDict(extra="ignore")


class QaAnswerPayload(_Payload):
    promptVersion: str = Field(default=QA_PROMPT_VERSION, pattern=r"^qa_answer_v\d+$")
    answer: str = Field(min_length=1)
    citations: list[int | str] = Field(default_factory=list)
    followUps: list[str] = Field(default_factory=list, max_length=3)


class EnergyIndexNode(_Payload):
    month: str = Field(min_length=1)
    score: float = Field(ge=0, le=100)
    narrative: str = Field(min_length=1)


class FocusQuadrant(_Payload):
    theme: str = Field(min_length=1)
    opportunity: str = Field(min_length=1)
    precaution: str = Field(min_length=1)
    ritual: str = Field(min_length=1)


class KeyDomains(_Payload):
    career: FocusQuadrant
    wealth: FocusQuadrant
    relationship: FocusQuadrant
    health: FocusQuadrant


class MonthlyTimelineNode(_Payload):
    month: str = Field(min_length=1)
    headline: str = Field(min_length=1)
    action: str = Field(min_length=1)
    warning: str | None = None


class DecisionTreeNode(_Payload):
    id: str = Field(min_length=1)
    scenario: str = Field(min_length=1)
    choice: str = Field(min_length=1)
    outcome: str = Field(min_length=1)


class Scorecard(_Payload):
    overall: float = Field(ge=0, le=100)
    career: float = Field(ge=0, le=100)
    wealth: float = Field(ge=0, le=100)
    relationship: float = Field(ge=0, le=100)
    health: float = Field(ge=0, le=100)
    mindset: float = Field(ge=0, le=100)


class YearlyFlowPayload(_Payload):
    promptVersion: str = Field(default=YEARLY_FLOW_PROMPT_VERSION, pattern=r"^yearly_flow_v\d+$")
    targetYear: int
    natalAnalysis: str = Field(min_length=1)
    decadeLuckAnalysis: str = Field(min_length=1)
    annualFlowAnalysis: str = Field(min_length=1)
    energyIndex: list[EnergyIndexNode] = Field(min_length=4)
    keyDomains: KeyDomains
    monthlyTimeline: list[MonthlyTimelineNode] = Field(min_length=6)
    doList: list[str] = Field(min_length=3)
    dontList: list[str] = Field(min_length=3)
    decisionTree: list[DecisionTreeNode] = Field(min_length=3)
    scorecard: Scorecard

    def analysis_text(self) -> str:
        # The narrative sections are what gets chunked for retrieval.
        return "\n\n".join(
            [self.natalAnalysis, self.decadeLuckAnalysis, self.annualFlowAnalysis]
        )
