from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.domain.models import Chart


async def get_chart(session: AsyncSession, chart_id: str) -> Chart | None:
    result = await session.execute(select(Chart).where(Chart.id == chart_id))
    return result.scalar_one_or_none()
