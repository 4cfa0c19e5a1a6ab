from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.agent.prompts import (
    REPORT_SYSTEM_PROMPT,
    build_deep_report_prompt,
    build_yearly_flow_prompt,
)
from destinyrag.core.errors import (
    ChartNotFoundError,
    LLMResponseError,
    NotFoundError,
    UnknownJobTypeError,
)
from destinyrag.domain.jobs import (
    STAGE_BUILDING_PROMPT,
    STAGE_COMPLETED,
    STAGE_GENERATING,
    STAGE_INDEXING,
    STAGE_LOADING_CHART,
    STAGE_PERSISTING_REPORT,
    DeepReportJob,
    YearlyFlowReportJob,
    job_spec_from_row,
)
from destinyrag.domain.models import Chart, Job
from destinyrag.domain.schemas import (
    DEEP_REPORT_PROMPT_VERSION,
    YEARLY_FLOW_PROMPT_VERSION,
    YearlyFlowPayload,
)
from destinyrag.persistence.repos import charts as charts_repo
from destinyrag.persistence.repos import reports as reports_repo
from destinyrag.services.ingestion import process_report_chunks
from destinyrag.services.jobs import queue
from destinyrag.services.llm_client import LLMClient
from destinyrag.services.parsing import ParseFailure, parse_json_response


logger = logging.getLogger(__name__)

DEEP_REPORT_TITLE = "深度命盘分析报告"
DEEP_REPORT_TYPE = "character_profile"
YEARLY_FLOW_REPORT_TYPE = "yearly_flow"

_DEEP_REPORT_CONFIG = {"temperature": 0.7, "top_p": 0.95, "max_output_tokens": 8192}
_YEARLY_FLOW_CONFIG = {
    "temperature": 0.6,
    "top_p": 0.9,
    "max_output_tokens": 8192,
    "response_mime_type": "application/json",
}


class LeaseLostError(Exception):
    """The claiming worker no longer owns the job; stop without writing terminal state."""


@dataclass(frozen=True)
class GeneratedReport:
    report_type: str
    title: str
    body: dict[str, Any]
    prompt_version: str
    # Plain text handed to chunking and embedding.
    index_text: str
    extra_metadata: dict[str, Any]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def result_url_for(report_id: str) -> str:
    return f"report://{report_id}"


async def _advance(
    session: AsyncSession, job_id: str, worker_id: str, stage: str, **metadata: Any
) -> None:
    if not await queue.advance_stage(session, job_id, worker_id, stage, metadata=metadata or None):
        raise LeaseLostError(f"Lease for job {job_id} lost at stage {stage}")


async def _load_chart(session: AsyncSession, chart_id: str) -> Chart:
    chart = await charts_repo.get_chart(session, chart_id)
    if chart is None:
        raise ChartNotFoundError(f"Chart {chart_id} not found")
    return chart


async def _generate_deep_report(
    session: AsyncSession,
    spec: DeepReportJob,
    chart: Chart,
    *,
    worker_id: str,
    llm_client: LLMClient,
    cancel_event: asyncio.Event | None,
) -> GeneratedReport:
    prompt = build_deep_report_prompt(chart.chart_json)
    await _advance(session, spec.job_id, worker_id, STAGE_GENERATING)
    text = await llm_client.generate_text(
        prompt,
        system_prompt=REPORT_SYSTEM_PROMPT,
        generation_config=_DEEP_REPORT_CONFIG,
        cancel_event=cancel_event,
    )
    logger.info("deep_report_generated job_id=%s chars=%s", spec.job_id, len(text))
    return GeneratedReport(
        report_type=DEEP_REPORT_TYPE,
        title=DEEP_REPORT_TITLE,
        body={"text": text, "sections": [{"title": "命盘分析", "content": text}]},
        prompt_version=DEEP_REPORT_PROMPT_VERSION,
        index_text=text,
        extra_metadata={},
    )


async def _generate_yearly_flow_report(
    session: AsyncSession,
    spec: YearlyFlowReportJob,
    chart: Chart,
    *,
    worker_id: str,
    llm_client: LLMClient,
    cancel_event: asyncio.Event | None,
) -> GeneratedReport:
    prompt = build_yearly_flow_prompt(chart.chart_json, spec.target_year)
    await _advance(session, spec.job_id, worker_id, STAGE_GENERATING)
    raw = await llm_client.generate_text(
        prompt,
        system_prompt=REPORT_SYSTEM_PROMPT,
        generation_config=_YEARLY_FLOW_CONFIG,
        cancel_event=cancel_event,
    )
    parsed = parse_json_response(raw, YearlyFlowPayload, label="yearly flow report")
    if isinstance(parsed, ParseFailure):
        logger.warning(
            "yearly_flow_unparseable job_id=%s error=%s snippet=%r",
            spec.job_id,
            parsed.error,
            parsed.snippet,
        )
        raise LLMResponseError(parsed.error)
    payload = parsed.value
    if payload.targetYear != spec.target_year:
        logger.warning(
            "yearly_flow_year_mismatch job_id=%s requested=%s returned=%s",
            spec.job_id,
            spec.target_year,
            payload.targetYear,
        )
        payload = payload.model_copy(update={"targetYear": spec.target_year})
    return GeneratedReport(
        report_type=YEARLY_FLOW_REPORT_TYPE,
        title=f"{spec.target_year}年流年运势报告",
        body=payload.model_dump(mode="json"),
        prompt_version=YEARLY_FLOW_PROMPT_VERSION,
        index_text=payload.analysis_text(),
        extra_metadata={
            "target_year": spec.target_year,
            "subscription_tier": spec.subscription_tier,
        },
    )


async def execute_job(
    session: AsyncSession,
    job: Job,
    *,
    worker_id: str,
    llm_client: LLMClient,
    cancel_event: asyncio.Event | None = None,
) -> str:
    """Run a claimed job through every stage and return the new report id.

    Stage exceptions propagate to the caller, which owns the failed
    transition. Indexing is the exception: it logs and swallows its own
    failures so a generated report is never lost.
    """
    started = time.monotonic()
    spec = job_spec_from_row(
        job_id=job.id,
        job_type=job.job_type,
        chart_id=job.chart_id,
        user_id=job.user_id,
        metadata=job.metadata_json,
    )

    await _advance(session, spec.job_id, worker_id, STAGE_LOADING_CHART)
    chart = await _load_chart(session, spec.chart_id)
    await _advance(session, spec.job_id, worker_id, STAGE_BUILDING_PROMPT)

    match spec:
        case DeepReportJob():
            generated = await _generate_deep_report(
                session,
                spec,
                chart,
                worker_id=worker_id,
                llm_client=llm_client,
                cancel_event=cancel_event,
            )
        case YearlyFlowReportJob():
            generated = await _generate_yearly_flow_report(
                session,
                spec,
                chart,
                worker_id=worker_id,
                llm_client=llm_client,
                cancel_event=cancel_event,
            )
        case _:
            assert_never(spec)

    await _advance(session, spec.job_id, worker_id, STAGE_PERSISTING_REPORT)
    report = await reports_repo.create_report(
        session,
        report_id=str(uuid.uuid4()),
        chart_id=spec.chart_id,
        user_id=spec.user_id,
        report_type=generated.report_type,
        title=generated.title,
        body=generated.body,
        model=llm_client.text_model,
        prompt_version=generated.prompt_version,
    )
    logger.info("report_persisted job_id=%s report_id=%s", spec.job_id, report.id)

    await _advance(session, spec.job_id, worker_id, STAGE_INDEXING, report_id=report.id)
    lease_held = True

    async def _renew_indexing_lease() -> None:
        nonlocal lease_held
        # Embedding a long report can outlast a single lease.
        lease_held = await queue.advance_stage(session, spec.job_id, worker_id, STAGE_INDEXING)
        if not lease_held:
            raise LeaseLostError(f"Lease for job {spec.job_id} lost while indexing")

    chunk_count = await process_report_chunks(
        report.id,
        generated.index_text,
        llm_client=llm_client,
        session=session,
        on_batch=_renew_indexing_lease,
    )
    if not lease_held:
        raise LeaseLostError(f"Lease for job {spec.job_id} lost while indexing")

    await queue.mark_done(
        session,
        spec.job_id,
        worker_id,
        report_id=report.id,
        result_url=result_url_for(report.id),
        metadata={
            "stage": STAGE_COMPLETED,
            "completed_at": _utc_now().isoformat(),
            "generation_time_ms": int((time.monotonic() - started) * 1000),
            "chunk_count": chunk_count,
            **generated.extra_metadata,
        },
    )
    return report.id


def _is_non_retryable(exc: Exception) -> bool:
    return isinstance(exc, (NotFoundError, UnknownJobTypeError))


async def process_job(
    session: AsyncSession,
    job: Job,
    *,
    worker_id: str,
    llm_client: LLMClient,
    cancel_event: asyncio.Event | None = None,
) -> str | None:
    """Execute a claimed job and record its terminal state; returns the report id on success."""
    try:
        return await execute_job(
            session, job, worker_id=worker_id, llm_client=llm_client, cancel_event=cancel_event
        )
    except LeaseLostError as exc:
        logger.warning("job_abandoned job_id=%s worker_id=%s reason=%s", job.id, worker_id, exc)
        return None
    except Exception as exc:  # noqa: BLE001 - every stage failure becomes a failed job
        logger.exception("job_execution_failed job_id=%s job_type=%s", job.id, job.job_type)
        await session.rollback()
        await queue.mark_failed(
            session,
            job.id,
            worker_id,
            error=str(exc) or exc.__class__.__name__,
            metadata={
                "error_type": exc.__class__.__name__,
                "is_non_retryable": _is_non_retryable(exc),
            },
        )
        return None
