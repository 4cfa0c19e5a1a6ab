from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.core.config import get_settings
from destinyrag.core.errors import ChartNotFoundError, InvalidRequestError
from destinyrag.domain.jobs import (
    JOB_TYPE_DEEP_REPORT,
    JOB_TYPE_YEARLY_FLOW,
    STAGE_FAILED,
    STAGE_PROGRESS,
    STAGE_QUEUED,
    SUPPORTED_JOB_TYPES,
)
from destinyrag.domain.models import Job
from destinyrag.domain.schemas import DEEP_REPORT_PROMPT_VERSION, YEARLY_FLOW_PROMPT_VERSION
from destinyrag.domain.tiers import normalize_tier
from destinyrag.persistence.repos import charts as charts_repo
from destinyrag.persistence.repos import jobs as jobs_repo


logger = logging.getLogger(__name__)

# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "destinyrag:worker:heartbeat"
# Rough wall-clock estimates surfaced to polling clients.
ESTIMATED_TIME_S: dict[str, int] = {
    JOB_TYPE_DEEP_REPORT: 180,
    JOB_TYPE_YEARLY_FLOW: 120,
}
MIN_TARGET_YEAR = 1900
MAX_TARGET_YEAR = 2100

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def lease_deadline(now: datetime | None = None) -> datetime:
    settings = get_settings()
    return (now or _utc_now()) + timedelta(seconds=settings.job_lease_seconds)


async def get_redis() -> Redis:
    # Cache the Redis client per event loop to avoid cross-loop errors in tests.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


async def set_worker_heartbeat(*, worker_id: str, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the ops health endpoint.
    redis = await get_redis()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, f"{heartbeat_time.isoformat()}|{worker_id}")


async def get_worker_heartbeat() -> tuple[datetime, str | None] | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    try:
        redis = await get_redis()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    timestamp, _, worker_id = value.partition("|")
    try:
        return datetime.fromisoformat(timestamp), worker_id or None
    except ValueError:
        return None


def _validate_target_year(target_year: int | None) -> int:
    year = target_year if target_year is not None else _utc_now().year
    if year < MIN_TARGET_YEAR or year > MAX_TARGET_YEAR:
        raise InvalidRequestError("target_year must be a valid year")
    return year


async def enqueue_report_job(
    session: AsyncSession,
    *,
    chart_id: str,
    job_type: str,
    user_id: str | None = None,
    target_year: int | None = None,
    subscription_tier: str | None = None,
) -> Job:
    """Insert a pending report job for the worker to pick up.

    Raises ChartNotFoundError before writing anything when the chart is
    unknown, so clients never poll a job that can only fail.
    """
    if job_type not in SUPPORTED_JOB_TYPES:
        raise InvalidRequestError(f"Unsupported job type: {job_type}")
    chart = await charts_repo.get_chart(session, chart_id)
    if chart is None:
        raise ChartNotFoundError(f"Chart {chart_id} not found")

    metadata: dict[str, Any] = {
        "stage": STAGE_QUEUED,
        "estimated_time": ESTIMATED_TIME_S[job_type],
        "requested_at": _utc_now().isoformat(),
    }
    if job_type == JOB_TYPE_YEARLY_FLOW:
        metadata["target_year"] = _validate_target_year(target_year)
        metadata["subscription_tier"] = normalize_tier(subscription_tier)
        metadata["prompt_version"] = YEARLY_FLOW_PROMPT_VERSION
    else:
        metadata["prompt_version"] = DEEP_REPORT_PROMPT_VERSION

    job = await jobs_repo.create_job(
        session,
        job_id=str(uuid.uuid4()),
        chart_id=chart_id,
        user_id=user_id,
        job_type=job_type,
        metadata=metadata,
    )
    await session.commit()
    logger.info("report_job_enqueued job_id=%s job_type=%s chart_id=%s", job.id, job_type, chart_id)
    return job


async def fetch_claimable_job_ids(
    session: AsyncSession, *, limit: int | None = None, now: datetime | None = None
) -> list[str]:
    settings = get_settings()
    return await jobs_repo.list_claimable_job_ids(
        session,
        job_types=SUPPORTED_JOB_TYPES,
        now=now or _utc_now(),
        max_attempts=settings.job_max_attempts,
        limit=limit or settings.worker_batch_size,
    )


async def claim_job(
    session: AsyncSession, job_id: str, worker_id: str, *, now: datetime | None = None
) -> Job | None:
    settings = get_settings()
    now = now or _utc_now()
    job = await jobs_repo.claim_job(
        session,
        job_id=job_id,
        worker_id=worker_id,
        now=now,
        lease_expires_at=lease_deadline(now),
        max_attempts=settings.job_max_attempts,
    )
    if job is None:
        logger.info("job_claim_skipped job_id=%s worker_id=%s", job_id, worker_id)
    else:
        logger.info(
            "job_claimed job_id=%s worker_id=%s attempt=%s", job_id, worker_id, job.attempts
        )
    return job


async def advance_stage(
    session: AsyncSession,
    job_id: str,
    worker_id: str,
    stage: str,
    *,
    metadata: dict[str, Any] | None = None,
) -> bool:
    advanced = await jobs_repo.advance_job_stage(
        session,
        job_id=job_id,
        worker_id=worker_id,
        stage=stage,
        progress=STAGE_PROGRESS[stage],
        lease_expires_at=lease_deadline(),
        metadata=metadata,
    )
    if not advanced:
        # Another worker reclaimed the job after our lease lapsed.
        logger.warning("job_stage_lost_lease job_id=%s worker_id=%s stage=%s", job_id, worker_id, stage)
    return advanced


async def mark_done(
    session: AsyncSession,
    job_id: str,
    worker_id: str,
    *,
    report_id: str,
    result_url: str | None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    done = await jobs_repo.mark_job_done(
        session,
        job_id=job_id,
        worker_id=worker_id,
        result_url=result_url,
        metadata={"report_id": report_id, **(metadata or {})},
    )
    logger.info("job_done job_id=%s report_id=%s applied=%s", job_id, report_id, done)
    return done


async def mark_failed(
    session: AsyncSession,
    job_id: str,
    worker_id: str,
    *,
    error: str,
    metadata: dict[str, Any] | None = None,
) -> bool:
    failed = await jobs_repo.mark_job_failed(
        session,
        job_id=job_id,
        worker_id=worker_id,
        metadata={
            "stage": STAGE_FAILED,
            "error": error,
            "failed_at": _utc_now().isoformat(),
            **(metadata or {}),
        },
    )
    logger.info("job_failed job_id=%s applied=%s error=%s", job_id, failed, error)
    return failed


async def requeue_expired_jobs(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    """Fail jobs whose lease lapsed after their final attempt.

    Jobs with attempts left need no write: an expired lease already makes
    them claimable again, with status staying ``processing``.
    """
    settings = get_settings()
    now = now or _utc_now()
    job_ids = await jobs_repo.fail_exhausted_jobs(
        session,
        now=now,
        max_attempts=settings.job_max_attempts,
        metadata={
            "stage": STAGE_FAILED,
            "error": "Job lease expired after the final attempt",
            "failed_at": now.isoformat(),
        },
    )
    if job_ids:
        logger.warning("stuck_jobs_failed count=%s job_ids=%s", len(job_ids), ",".join(job_ids))
    return job_ids
