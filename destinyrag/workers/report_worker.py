from __future__ import annotations

import asyncio
import logging
import os
import socket
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from destinyrag.core.config import get_settings
from destinyrag.persistence.db import SessionLocal
from destinyrag.services.jobs.pipelines import process_job
from destinyrag.services.jobs.queue import (
    claim_job,
    fetch_claimable_job_ids,
    requeue_expired_jobs,
    set_worker_heartbeat,
)
from destinyrag.services.llm_client import LLMClient


logger = logging.getLogger(__name__)


def build_worker_id() -> str:
    # Hostname plus pid keeps lease owners distinct across containers and local processes.
    return f"{socket.gethostname()}:{os.getpid()}"


def _is_missing_table_error(exc: Exception) -> bool:
    # Let the worker boot before the schema exists and wait instead of crash-looping.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message


async def _publish_heartbeat(worker_id: str) -> None:
    try:
        await set_worker_heartbeat(worker_id=worker_id)
    except Exception as exc:  # noqa: BLE001 - heartbeat is advisory; Redis outages must not stop jobs
        logger.warning("worker_heartbeat_failed worker_id=%s error=%s", worker_id, exc)


async def run_report_worker_cycle(
    *,
    llm_client: LLMClient,
    worker_id: str,
    limit: int | None = None,
    job_delay_ms: int | None = None,
) -> dict[str, Any]:
    """Sweep stuck jobs, then claim and run up to ``limit`` claimable jobs in order."""
    settings = get_settings()
    delay_ms = settings.worker_job_delay_ms if job_delay_ms is None else job_delay_ms
    await _publish_heartbeat(worker_id)
    try:
        async with SessionLocal() as session:
            await requeue_expired_jobs(session)
            job_ids = await fetch_claimable_job_ids(session, limit=limit)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_schema", "found": 0, "claimed": 0, "completed": 0}
        raise

    if not job_ids:
        logger.debug("report_worker_idle worker_id=%s", worker_id)
        return {"status": "idle", "found": 0, "claimed": 0, "completed": 0}

    logger.info("report_worker_found_jobs worker_id=%s count=%s", worker_id, len(job_ids))
    claimed = 0
    completed = 0
    for index, job_id in enumerate(job_ids):
        async with SessionLocal() as session:
            job = await claim_job(session, job_id, worker_id)
            if job is None:
                continue
            claimed += 1
            report_id = await process_job(
                session, job, worker_id=worker_id, llm_client=llm_client
            )
            if report_id is not None:
                completed += 1
        await _publish_heartbeat(worker_id)
        # Space out upstream calls between consecutive jobs.
        if index < len(job_ids) - 1 and delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
    return {"status": "ok", "found": len(job_ids), "claimed": claimed, "completed": completed}


async def run_report_worker_loop(
    *,
    llm_client: LLMClient,
    worker_id: str | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    # Poll on a fixed cadence and keep going after failures so one bad cycle cannot stall the queue.
    settings = get_settings()
    worker_id = worker_id or build_worker_id()
    interval = max(1, int(settings.worker_poll_interval_s))
    logger.info("report_worker_started worker_id=%s poll_interval_s=%s", worker_id, interval)
    while stop_event is None or not stop_event.is_set():
        try:
            await run_report_worker_cycle(llm_client=llm_client, worker_id=worker_id)
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("report worker cycle failed worker_id=%s", worker_id)
        if stop_event is None:
            await asyncio.sleep(interval)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("report_worker_stopped worker_id=%s", worker_id)
