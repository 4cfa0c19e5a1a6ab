from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.apps.api.deps import get_db
from destinyrag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from destinyrag.apps.api.response import SuccessEnvelope, success_response
from destinyrag.core.config import get_settings
from destinyrag.services.jobs import queue


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class WorkerStatusResponse(BaseModel):
    status: str
    db: str
    worker_id: str | None = None
    last_heartbeat_at: datetime | None = None
    worker_heartbeat_age_s: float | None = None
    timestamp: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _check_db_health(db: AsyncSession) -> bool:
    # Lightweight connectivity probe for ops reporting.
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("ops_db_check_failed error=%s", exc)
        return False
    return True


@router.get("/worker", response_model=SuccessEnvelope[WorkerStatusResponse])
async def worker_status(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    settings = get_settings()
    now = _utc_now()
    db_ok = await _check_db_health(db)
    heartbeat = await queue.get_worker_heartbeat()
    last_heartbeat_at, worker_id = heartbeat if heartbeat is not None else (None, None)
    heartbeat_age_s = (now - last_heartbeat_at).total_seconds() if last_heartbeat_at else None
    heartbeat_stale = heartbeat_age_s is None or heartbeat_age_s > settings.worker_heartbeat_stale_after_s
    data = WorkerStatusResponse(
        status="ok" if db_ok and not heartbeat_stale else "degraded",
        db="ok" if db_ok else "degraded",
        worker_id=worker_id,
        last_heartbeat_at=last_heartbeat_at,
        worker_heartbeat_age_s=heartbeat_age_s,
        timestamp=now,
    )
    return success_response(request=request, data=data)
