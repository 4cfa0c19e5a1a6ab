from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import and_, literal, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.domain.models import (
    JOB_STATUS_DONE,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    Job,
)


def _claimable(now: datetime, max_attempts: int):
    # Pending jobs, or processing jobs whose lease lapsed (worker crash) with attempts left.
    return and_(
        or_(
            Job.status == JOB_STATUS_PENDING,
            and_(Job.status == JOB_STATUS_PROCESSING, Job.lease_expires_at < now),
        ),
        Job.attempts < max_attempts,
    )


def _merge_metadata(patch: dict[str, Any]):
    # JSONB concatenation keeps unrelated metadata keys written by request handlers.
    return Job.metadata_json.op("||")(literal(patch, type_=JSONB))


async def get_job(session: AsyncSession, job_id: str) -> Job | None:
    result = await session.execute(select(Job).where(Job.id == job_id))
    return result.scalar_one_or_none()


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    chart_id: str,
    user_id: str | None,
    job_type: str,
    metadata: dict[str, Any],
) -> Job:
    job = Job(
        id=job_id,
        chart_id=chart_id,
        user_id=user_id,
        job_type=job_type,
        status=JOB_STATUS_PENDING,
        metadata_json=metadata,
        progress=0,
        attempts=0,
    )
    session.add(job)
    return job


async def list_claimable_job_ids(
    session: AsyncSession,
    *,
    job_types: Sequence[str],
    now: datetime,
    max_attempts: int,
    limit: int,
) -> list[str]:
    result = await session.execute(
        select(Job.id)
        .where(Job.job_type.in_(list(job_types)), _claimable(now, max_attempts))
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(max(1, limit))
    )
    return [str(row) for row in result.scalars().all()]


async def claim_job(
    session: AsyncSession,
    *,
    job_id: str,
    worker_id: str,
    now: datetime,
    lease_expires_at: datetime,
    max_attempts: int,
) -> Job | None:
    # Single conditional UPDATE; a losing worker sees zero rows and moves on.
    stmt = (
        update(Job)
        .where(Job.id == job_id, _claimable(now, max_attempts))
        .values(
            status=JOB_STATUS_PROCESSING,
            lease_owner=worker_id,
            lease_expires_at=lease_expires_at,
            attempts=Job.attempts + 1,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    job = result.scalar_one_or_none()
    await session.commit()
    return job


async def advance_job_stage(
    session: AsyncSession,
    *,
    job_id: str,
    worker_id: str,
    stage: str,
    progress: int,
    lease_expires_at: datetime,
    metadata: dict[str, Any] | None = None,
) -> bool:
    # Renew the lease alongside every stage update so long jobs are not reclaimed.
    patch = {"stage": stage, **(metadata or {})}
    result = await session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JOB_STATUS_PROCESSING,
            Job.lease_owner == worker_id,
        )
        .values(
            metadata_json=_merge_metadata(patch),
            progress=progress,
            lease_expires_at=lease_expires_at,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def mark_job_done(
    session: AsyncSession,
    *,
    job_id: str,
    worker_id: str,
    result_url: str | None,
    metadata: dict[str, Any],
) -> bool:
    result = await session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JOB_STATUS_PROCESSING,
            Job.lease_owner == worker_id,
        )
        .values(
            status=JOB_STATUS_DONE,
            result_url=result_url,
            progress=100,
            metadata_json=_merge_metadata(metadata),
            lease_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def mark_job_failed(
    session: AsyncSession,
    *,
    job_id: str,
    worker_id: str,
    metadata: dict[str, Any],
) -> bool:
    result = await session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JOB_STATUS_PROCESSING,
            Job.lease_owner == worker_id,
        )
        .values(
            status=JOB_STATUS_FAILED,
            metadata_json=_merge_metadata(metadata),
            lease_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def fail_exhausted_jobs(
    session: AsyncSession,
    *,
    now: datetime,
    max_attempts: int,
    metadata: dict[str, Any],
) -> list[str]:
    # Terminal sweep for jobs whose lease lapsed after the last permitted attempt.
    result = await session.execute(
        update(Job)
        .where(
            Job.status == JOB_STATUS_PROCESSING,
            Job.lease_expires_at < now,
            Job.attempts >= max_attempts,
        )
        .values(
            status=JOB_STATUS_FAILED,
            metadata_json=_merge_metadata(metadata),
            lease_expires_at=None,
        )
        .returning(Job.id)
        .execution_options(synchronize_session=False)
    )
    job_ids = [str(row) for row in result.scalars().all()]
    await session.commit()
    return job_ids
