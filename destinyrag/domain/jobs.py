from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from destinyrag.core.errors import UnknownJobTypeError
from destinyrag.domain.tiers import SubscriptionTier


JOB_TYPE_DEEP_REPORT = "deep_report"
JOB_TYPE_YEARLY_FLOW = "yearly_flow_report"

# Stage names surfaced to polling clients, in execution order.
STAGE_QUEUED = "queued"
STAGE_LOADING_CHART = "loading_chart"
STAGE_BUILDING_PROMPT = "building_prompt"
STAGE_GENERATING = "generating"
STAGE_PERSISTING_REPORT = "persisting_report"
STAGE_INDEXING = "indexing"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"

STAGE_PROGRESS: dict[str, int] = {
    STAGE_QUEUED: 0,
    STAGE_LOADING_CHART: 10,
    STAGE_BUILDING_PROMPT: 20,
    STAGE_GENERATING: 30,
    STAGE_PERSISTING_REPORT: 70,
    STAGE_INDEXING: 80,
    STAGE_COMPLETED: 100,
}


class DeepReportJob(BaseModel):
    kind: Literal["deep_report"] = JOB_TYPE_DEEP_REPORT
    job_id: str
    chart_id: str
    user_id: str | None = None


class YearlyFlowReportJob(BaseModel):
    kind: Literal["yearly_flow_report"] = JOB_TYPE_YEARLY_FLOW
    job_id: str
    chart_id: str
    user_id: str | None = None
    target_year: int
    subscription_tier: SubscriptionTier = "free"


JobSpec = Annotated[Union[DeepReportJob, YearlyFlowReportJob], Field(discriminator="kind")]

SUPPORTED_JOB_TYPES: tuple[str, ...] = (JOB_TYPE_DEEP_REPORT, JOB_TYPE_YEARLY_FLOW)

_job_spec_adapter: TypeAdapter[JobSpec] = TypeAdapter(JobSpec)


def job_spec_from_row(
    *,
    job_id: str,
    job_type: str,
    chart_id: str,
    user_id: str | None,
    metadata: dict[str, Any] | None,
) -> DeepReportJob | YearlyFlowReportJob:
    # Lift a loosely-typed job row into its variant; stage payload comes from metadata.
    if job_type not in SUPPORTED_JOB_TYPES:
        raise UnknownJobTypeError(f"Unknown job type: {job_type}")
    metadata = metadata or {}
    payload: dict[str, Any] = {
        "kind": job_type,
        "job_id": job_id,
        "chart_id": chart_id,
        "user_id": user_id,
    }
    if job_type == JOB_TYPE_YEARLY_FLOW:
        payload["target_year"] = metadata.get("target_year") or datetime.now(timezone.utc).year
        payload["subscription_tier"] = metadata.get("subscription_tier") or "free"
    return _job_spec_adapter.validate_python(payload)
