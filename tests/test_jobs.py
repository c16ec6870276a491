from __future__ import annotations

import asyncio
import threading
from dataclasses import fields

import pytest

from water_ai.jobs import JobManager, JobSpec, JobStatusSnapshot, QueueFullError
from water_ai.status import JobStatusQuery

MINUTE_MS = 60_000.0


class FakeClock:
    def __init__(self, now: float = 1_700_000_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _echo(payload):
    async def run(p):
        return {"echo": p}

    return JobSpec(payload=payload, processor=run, kind="echo")


def _blocking(gate: asyncio.Event, result=None):
    async def run(_):
        await gate.wait()
        return result

    return JobSpec(payload=None, processor=run, kind="blocking")


def _failing(message: str):
    async def run(_):
        raise ValueError(message)

    return JobSpec(payload=None, processor=run, kind="failing")


@pytest.mark.asyncio
async def test_lifecycle_pending_processing_complete() -> None:
    manager = JobManager()
    gate = asyncio.Event()

    assert manager.add_job("j1", _blocking(gate, {"ounces": 12})) == "j1"
    assert manager.get_job_status("j1").status == "pending"

    await asyncio.sleep(0)
    assert manager.get_job_status("j1").status == "processing"

    gate.set()
    await manager.wait_idle()

    snap = manager.get_job_status("j1")
    assert snap == JobStatusSnapshot(status="complete", result={"ounces": 12}, error=None)


@pytest.mark.asyncio
async def test_processor_failure_becomes_error_state() -> None:
    manager = JobManager()

    manager.add_job("bad", _failing("No water container detected in image"))
    await manager.wait_idle()

    snap = manager.get_job_status("bad")
    assert snap.status == "error"
    assert snap.error == "No water container detected in image"
    assert snap.result is None


@pytest.mark.asyncio
async def test_sync_processor_is_accepted() -> None:
    manager = JobManager()

    manager.add_job("s", JobSpec(payload=3, processor=lambda n: n * 2))
    await manager.wait_idle()

    assert manager.get_job_status("s").result == 6


@pytest.mark.asyncio
async def test_sync_processor_runs_off_the_event_loop() -> None:
    manager = JobManager()
    release = threading.Event()
    loop_thread = threading.get_ident()

    def slow(_):
        release.wait(timeout=5)
        return threading.get_ident()

    manager.add_job("slow", JobSpec(payload=None, processor=slow))
    manager.add_job("fast", _echo(1))

    for _ in range(100):
        if manager.get_job_status("fast").status == "complete":
            break
        await asyncio.sleep(0.01)

    assert manager.get_job_status("fast").status == "complete"
    assert manager.get_job_status("slow").status == "processing"

    release.set()
    await manager.wait_idle()
    assert manager.get_job_status("slow").result != loop_thread


@pytest.mark.asyncio
async def test_capacity_rejects_and_records_nothing() -> None:
    manager = JobManager(max_queue_size=2)
    gate = asyncio.Event()

    manager.add_job("a", _blocking(gate))
    manager.add_job("b", _blocking(gate))

    with pytest.raises(QueueFullError, match="queue is full"):
        manager.add_job("c", _blocking(gate))

    assert manager.get_job_status("c") is None
    assert len(manager) == 2

    gate.set()
    await manager.wait_idle()


@pytest.mark.asyncio
async def test_resubmitting_same_id_never_runs_concurrently() -> None:
    manager = JobManager()
    active = 0
    peak = 0
    runs = 0

    async def counted(_):
        nonlocal active, peak, runs
        active += 1
        runs += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return runs

    spec = JobSpec(payload=None, processor=counted)

    manager.add_job("dup", spec)
    await asyncio.sleep(0)
    assert manager.get_job_status("dup").status == "processing"

    # overwrites the record while the first execution is still in flight
    manager.add_job("dup", spec)
    assert manager.get_job_status("dup").status == "pending"

    await manager.wait_idle()

    assert peak == 1
    assert runs == 2
    assert manager.get_job_status("dup") == JobStatusSnapshot("complete", 2, None)


@pytest.mark.asyncio
async def test_terminal_job_is_not_rerun() -> None:
    manager = JobManager()
    calls = 0

    async def once(_):
        nonlocal calls
        calls += 1
        return calls

    manager.add_job("t", JobSpec(payload=None, processor=once))
    await manager.wait_idle()

    manager._trigger("t")
    await manager.wait_idle()

    assert calls == 1
    assert manager.get_job_status("t").status == "complete"


@pytest.mark.asyncio
async def test_completed_job_grace_period() -> None:
    clock = FakeClock()
    manager = JobManager(clock=clock)

    manager.add_job("ok", _echo(1))
    await manager.wait_idle()
    done_at = clock.now

    manager.reap(done_at + 4 * MINUTE_MS)
    assert manager.get_job_status("ok").status == "complete"

    manager.reap(done_at + 6 * MINUTE_MS)
    assert manager.get_job_status("ok") is None


@pytest.mark.asyncio
async def test_errored_job_grace_period() -> None:
    clock = FakeClock()
    manager = JobManager(clock=clock)

    manager.add_job("bad", _failing("boom"))
    await manager.wait_idle()
    done_at = clock.now

    manager.reap(done_at + 1 * MINUTE_MS)
    assert manager.get_job_status("bad").status == "error"

    manager.reap(done_at + 3 * MINUTE_MS)
    assert manager.get_job_status("bad") is None


@pytest.mark.asyncio
async def test_stale_job_is_swept_even_if_still_processing() -> None:
    clock = FakeClock()
    manager = JobManager(clock=clock)
    gate = asyncio.Event()

    manager.add_job("stuck", _blocking(gate))
    await asyncio.sleep(0)
    assert manager.get_job_status("stuck").status == "processing"

    assert manager.reap(clock.now + 9 * MINUTE_MS) == 0
    assert manager.reap(clock.now + 10 * MINUTE_MS + 1) == 1
    assert manager.get_job_status("stuck") is None
    assert manager.stats()["in_flight"] == 0

    # the processor was not aborted; letting it finish must not resurrect the record
    gate.set()
    await manager.wait_idle()
    assert manager.get_job_status("stuck") is None


@pytest.mark.asyncio
async def test_reported_timestamps_follow_wall_clock_not_scheduling_clock() -> None:
    clock = FakeClock(5_000.0)
    wall = FakeClock()
    manager = JobManager(clock=clock, wall_clock=wall)

    manager.add_job("w", _echo(1))
    await manager.wait_idle()

    job = manager._jobs["w"]
    assert job.created_at == wall.now
    assert job.completed_at == wall.now

    # a wall-clock jump in either direction does not move the grace deadline
    wall.now += 24 * 60 * MINUTE_MS
    assert manager.reap() == 0
    wall.now -= 48 * 60 * MINUTE_MS
    manager.reap(clock.now + 4 * MINUTE_MS)
    assert manager.get_job_status("w").status == "complete"

    manager.reap(clock.now + 6 * MINUTE_MS)
    assert manager.get_job_status("w") is None


@pytest.mark.asyncio
async def test_old_deadline_does_not_remove_resubmitted_record() -> None:
    clock = FakeClock()
    manager = JobManager(clock=clock)
    gate = asyncio.Event()

    manager.add_job("x", _echo("first"))
    await manager.wait_idle()
    first_done = clock.now

    clock.now += 1000
    manager.add_job("x", _blocking(gate, "second"))
    await asyncio.sleep(0)

    manager.reap(first_done + 6 * MINUTE_MS)
    assert manager.get_job_status("x").status == "processing"

    gate.set()
    await manager.wait_idle()
    assert manager.get_job_status("x").result == "second"


@pytest.mark.asyncio
async def test_delete_job_is_idempotent() -> None:
    manager = JobManager()
    manager.add_job("d", _echo(1))
    await manager.wait_idle()

    manager.delete_job("d")
    manager.delete_job("d")
    manager.delete_job("never-existed")

    assert manager.get_job_status("d") is None


@pytest.mark.asyncio
async def test_max_concurrent_keeps_waiting_jobs_pending() -> None:
    manager = JobManager(max_concurrent=1)
    gate = asyncio.Event()

    manager.add_job("first", _blocking(gate, 1))
    manager.add_job("second", _blocking(gate, 2))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert manager.get_job_status("first").status == "processing"
    assert manager.get_job_status("second").status == "pending"
    assert manager.stats()["processing"] == 1

    gate.set()
    await manager.wait_idle()
    assert manager.get_job_status("second").result == 2


@pytest.mark.asyncio
async def test_stats_counts_by_status() -> None:
    manager = JobManager()
    gate = asyncio.Event()

    manager.add_job("ok", _echo(1))
    manager.add_job("bad", _failing("x"))
    manager.add_job("wait", _blocking(gate))
    await asyncio.sleep(0.01)

    stats = manager.stats()
    assert stats["complete"] == 1
    assert stats["error"] == 1
    assert stats["processing"] == 1
    assert stats["in_flight"] == 1
    assert stats["total"] == 3

    gate.set()
    await manager.wait_idle()


@pytest.mark.asyncio
async def test_reaper_task_removes_jobs_after_grace() -> None:
    async with JobManager(complete_grace=0.05, sweep_interval=60) as manager:
        manager.add_job("quick", _echo(1))
        await manager.wait_idle()
        assert manager.get_job_status("quick").status == "complete"

        await asyncio.sleep(0.2)
        assert manager.get_job_status("quick") is None

    assert manager._reaper is None


@pytest.mark.asyncio
async def test_reaper_starts_with_first_job_without_explicit_start() -> None:
    manager = JobManager(complete_grace=0.05, sweep_interval=60)
    assert manager._reaper is None

    manager.add_job("quick", _echo(1))
    assert manager._reaper is not None
    await manager.wait_idle()
    assert manager.get_job_status("quick").status == "complete"

    await asyncio.sleep(0.3)
    assert manager.get_job_status("quick") is None

    await manager.stop()
    assert manager._reaper is None


@pytest.mark.asyncio
async def test_stop_cancels_running_processors() -> None:
    manager = JobManager()
    await manager.start()
    manager.add_job("forever", _blocking(asyncio.Event()))
    await asyncio.sleep(0)

    await manager.stop()

    assert manager.stats()["in_flight"] == 0


def test_add_job_outside_event_loop_records_nothing() -> None:
    manager = JobManager()
    with pytest.raises(RuntimeError):
        manager.add_job("x", _echo(1))
    assert len(manager) == 0


def test_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        JobManager(max_queue_size=0)
    with pytest.raises(ValueError):
        JobManager(max_concurrent=0)


@pytest.mark.asyncio
async def test_status_query_exposes_only_public_fields() -> None:
    manager = JobManager()
    query = JobStatusQuery(manager)

    manager.add_job("q", _echo("hi"))
    await manager.wait_idle()

    snap = query.get("q")
    assert {f.name for f in fields(snap)} == {"status", "result", "error"}
    assert snap.to_dict() == {"status": "complete", "result": {"echo": "hi"}, "error": None}
    assert query.get("missing") is None
