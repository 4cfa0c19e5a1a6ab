from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.domain.models import Report


async def create_report(
    session: AsyncSession,
    *,
    report_id: str,
    chart_id: str,
    user_id: str | None,
    report_type: str,
    title: str,
    body: dict[str, Any],
    model: str,
    prompt_version: str,
) -> Report:
    # Reports are written once by the worker and never updated afterwards.
    report = Report(
        id=report_id,
        chart_id=chart_id,
        user_id=user_id,
        report_type=report_type,
        title=title,
        body=body,
        model=model,
        prompt_version=prompt_version,
    )
    session.add(report)
    await session.commit()
    return report


async def get_report(session: AsyncSession, report_id: str) -> Report | None:
    result = await session.execute(select(Report).where(Report.id == report_id))
    return result.scalar_one_or_none()
