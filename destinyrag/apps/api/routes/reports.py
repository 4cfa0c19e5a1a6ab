from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.apps.api.deps import get_db
from destinyrag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from destinyrag.apps.api.response import SuccessEnvelope, success_response
from destinyrag.core.errors import NotFoundError
from destinyrag.domain.jobs import JOB_TYPE_DEEP_REPORT, JOB_TYPE_YEARLY_FLOW
from destinyrag.domain.models import Job
from destinyrag.domain.tiers import SubscriptionTier
from destinyrag.persistence.repos import jobs as jobs_repo
from destinyrag.services.jobs import queue


router = APIRouter(tags=["reports"], responses=DEFAULT_ERROR_RESPONSES)


class GenerateReportRequest(BaseModel):
    chart_id: str = Field(min_length=1)
    job_type: Literal["deep_report", "yearly_flow_report"] = JOB_TYPE_DEEP_REPORT
    user_id: str | None = None
    target_year: int | None = None
    subscription_tier: SubscriptionTier = "free"


class GenerateReportResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    status_url: str
    estimated_time: int | None = None
    target_year: int | None = None


class JobStatusResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    progress: int
    stage: str | None = None
    result_url: str | None = None
    report_id: str | None = None
    error: str | None = None
    attempts: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _status_url(job_id: str) -> str:
    return f"/v1/jobs/{job_id}"


def _job_status(job: Job) -> JobStatusResponse:
    metadata = job.metadata_json or {}
    return JobStatusResponse(
        job_id=job.id,
        job_type=job.job_type,
        status=job.status,
        progress=job.progress or 0,
        stage=metadata.get("stage"),
        result_url=job.result_url,
        report_id=metadata.get("report_id"),
        error=metadata.get("error"),
        attempts=job.attempts or 0,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post(
    "/reports/generate",
    status_code=202,
    response_model=SuccessEnvelope[GenerateReportResponse],
)
async def generate_report(
    request: Request,
    payload: GenerateReportRequest,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    job = await queue.enqueue_report_job(
        db,
        chart_id=payload.chart_id,
        job_type=payload.job_type,
        user_id=payload.user_id,
        target_year=payload.target_year,
        subscription_tier=payload.subscription_tier,
    )
    metadata = job.metadata_json or {}
    data = GenerateReportResponse(
        job_id=job.id,
        job_type=job.job_type,
        status=job.status,
        status_url=_status_url(job.id),
        estimated_time=metadata.get("estimated_time"),
        target_year=metadata.get("target_year") if job.job_type == JOB_TYPE_YEARLY_FLOW else None,
    )
    return JSONResponse(content=success_response(request=request, data=data), status_code=202)


@router.get("/jobs/{job_id}", response_model=SuccessEnvelope[JobStatusResponse])
async def get_job_status(
    request: Request,
    job_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await jobs_repo.get_job(db, job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return success_response(request=request, data=_job_status(job))
