from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import ProgrammingError

from destinyrag.domain.models import Job
from destinyrag.services import maintenance
from destinyrag.workers import report_worker


class StubSession:
    async def __aenter__(self) -> "StubSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class WorkerHarness:
    def __init__(self, monkeypatch, *, job_ids: list[str], claimable: set[str]) -> None:
        self.heartbeats: list[str] = []
        self.sleeps: list[float] = []
        self.processed: list[str] = []
        self.requeued = 0
        real_sleep = asyncio.sleep

        async def _heartbeat(*, worker_id, timestamp=None):
            self.heartbeats.append(worker_id)

        async def _requeue(session, *, now=None):
            self.requeued += 1
            return []

        async def _fetch(session, *, limit=None, now=None):
            return list(job_ids)

        async def _claim(session, job_id, worker_id, *, now=None):
            if job_id not in claimable:
                return None
            return Job(id=job_id, chart_id="chart-1", job_type="deep_report", metadata_json={})

        async def _process(session, job, *, worker_id, llm_client, cancel_event=None):
            self.processed.append(job.id)
            return f"report-{job.id}"

        async def _sleep(seconds: float) -> None:
            self.sleeps.append(seconds)
            await real_sleep(0)

        monkeypatch.setattr(report_worker, "SessionLocal", StubSession)
        monkeypatch.setattr(report_worker, "set_worker_heartbeat", _heartbeat)
        monkeypatch.setattr(report_worker, "requeue_expired_jobs", _requeue)
        monkeypatch.setattr(report_worker, "fetch_claimable_job_ids", _fetch)
        monkeypatch.setattr(report_worker, "claim_job", _claim)
        monkeypatch.setattr(report_worker, "process_job", _process)
        monkeypatch.setattr(report_worker.asyncio, "sleep", _sleep)


@pytest.mark.asyncio
async def test_cycle_processes_jobs_with_delay_between(monkeypatch) -> None:
    harness = WorkerHarness(monkeypatch, job_ids=["a", "b", "c"], claimable={"a", "b", "c"})
    result = await report_worker.run_report_worker_cycle(
        llm_client=object(), worker_id="worker-a", job_delay_ms=1000
    )
    assert result == {"status": "ok", "found": 3, "claimed": 3, "completed": 3}
    assert harness.processed == ["a", "b", "c"]
    assert harness.requeued == 1
    # Pause between jobs only, never after the last one.
    assert harness.sleeps == [1.0, 1.0]
    assert len(harness.heartbeats) == 4


@pytest.mark.asyncio
async def test_cycle_skips_jobs_claimed_elsewhere(monkeypatch) -> None:
    harness = WorkerHarness(monkeypatch, job_ids=["a", "b"], claimable={"b"})
    result = await report_worker.run_report_worker_cycle(
        llm_client=object(), worker_id="worker-a", job_delay_ms=0
    )
    assert result == {"status": "ok", "found": 2, "claimed": 1, "completed": 1}
    assert harness.processed == ["b"]
    assert harness.sleeps == []


@pytest.mark.asyncio
async def test_cycle_reports_idle(monkeypatch) -> None:
    harness = WorkerHarness(monkeypatch, job_ids=[], claimable=set())
    result = await report_worker.run_report_worker_cycle(llm_client=object(), worker_id="worker-a")
    assert result["status"] == "idle"
    assert harness.processed == []


@pytest.mark.asyncio
async def test_cycle_waits_for_missing_schema(monkeypatch) -> None:
    WorkerHarness(monkeypatch, job_ids=[], claimable=set())

    async def _fetch(session, *, limit=None, now=None):
        raise ProgrammingError("select", {}, Exception('relation "jobs" does not exist'))

    monkeypatch.setattr(report_worker, "fetch_claimable_job_ids", _fetch)
    result = await report_worker.run_report_worker_cycle(llm_client=object(), worker_id="worker-a")
    assert result["status"] == "waiting_for_schema"


@pytest.mark.asyncio
async def test_heartbeat_failure_does_not_stop_cycle(monkeypatch) -> None:
    harness = WorkerHarness(monkeypatch, job_ids=["a"], claimable={"a"})

    async def _heartbeat(*, worker_id, timestamp=None):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(report_worker, "set_worker_heartbeat", _heartbeat)
    result = await report_worker.run_report_worker_cycle(llm_client=object(), worker_id="worker-a")
    assert result["completed"] == 1
    assert harness.processed == ["a"]


@pytest.mark.asyncio
async def test_loop_stops_on_event(monkeypatch) -> None:
    cycles: list[str] = []
    stop_event = asyncio.Event()

    async def _cycle(*, llm_client, worker_id, limit=None, job_delay_ms=None):
        cycles.append(worker_id)
        if len(cycles) == 1:
            raise RuntimeError("transient failure")
        stop_event.set()
        return {"status": "idle"}

    monkeypatch.setattr(report_worker, "run_report_worker_cycle", _cycle)
    monkeypatch.setenv("WORKER_POLL_INTERVAL_S", "1")
    report_worker.get_settings.cache_clear()
    await asyncio.wait_for(
        report_worker.run_report_worker_loop(
            llm_client=object(), worker_id="worker-a", stop_event=stop_event
        ),
        timeout=5,
    )
    assert cycles == ["worker-a", "worker-a"]


def test_worker_id_includes_pid() -> None:
    worker_id = report_worker.build_worker_id()
    host, _, pid = worker_id.rpartition(":")
    assert host
    assert pid.isdigit()


@pytest.mark.asyncio
async def test_maintenance_runs_every_task(monkeypatch) -> None:
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    seen: dict = {}

    async def _cleanup(session, *, now=None):
        seen["cleanup"] = now
        return 4

    async def _requeue(session, *, now=None):
        seen["requeue"] = now
        return ["job-1", "job-2"]

    monkeypatch.setattr(maintenance, "cleanup_expired_conversations", _cleanup)
    monkeypatch.setattr(maintenance, "requeue_expired_jobs", _requeue)
    counts = await maintenance.run_all_maintenance(object(), now=now)
    assert counts == {"cleanup_conversations": 4, "requeue_stuck_jobs": 2}
    assert seen == {"cleanup": now, "requeue": now}


@pytest.mark.asyncio
async def test_unknown_maintenance_task_is_rejected() -> None:
    with pytest.raises(ValueError):
        await maintenance.run_maintenance_task(object(), "vacuum")
