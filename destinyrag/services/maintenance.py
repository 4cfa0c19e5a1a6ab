from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.services.conversations import cleanup_expired_conversations
from destinyrag.services.jobs.queue import requeue_expired_jobs


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["cleanup_conversations", "requeue_stuck_jobs"]
MAINTENANCE_TASKS: tuple[str, ...] = ("cleanup_conversations", "requeue_stuck_jobs")


async def run_maintenance_task(
    session: AsyncSession, task: MaintenanceTask, *, now: datetime | None = None
) -> int:
    # Return the number of affected rows so schedulers can log a single figure.
    now = now or datetime.now(timezone.utc)
    if task == "cleanup_conversations":
        affected = await cleanup_expired_conversations(session, now=now)
    elif task == "requeue_stuck_jobs":
        affected = len(await requeue_expired_jobs(session, now=now))
    else:
        raise ValueError(f"Unknown maintenance task: {task}")
    logger.info("maintenance_task_completed task=%s affected=%s", task, affected)
    return affected


async def run_all_maintenance(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    return {task: await run_maintenance_task(session, task, now=now) for task in MAINTENANCE_TASKS}
