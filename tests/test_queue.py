from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from radar.core.errors import PayloadValidationError, QueueFullError
from radar.core.events import EventChannel
from radar.schemas.jobs import ClassifyPayload, DiscoverPayload, ExportPayload, QueueJob, RevalidatePayload
from radar.services.queue import CircuitBreaker, SmartQueueManager
from radar.services.store import InMemoryStore, StoreConflictError, StoreNotFoundError
from tests.fakes import FakeClock


async def _ok(job: QueueJob) -> dict[str, Any]:
    return {"handled": True, "kind": job.kind}


async def _boom(job: QueueJob) -> dict[str, Any]:
    raise RuntimeError("boom")


def _manager(store: InMemoryStore, clock: FakeClock, *, worker_id: str = "worker-a", **overrides) -> SmartQueueManager:
    options: dict[str, Any] = {"handler": _ok, "memory_sampler": lambda: 10.0}
    options.update(overrides)
    return SmartQueueManager(store, EventChannel(), worker_id=worker_id, clock=clock, **options)


def test_compute_priority(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)
    assert manager.compute_priority(DiscoverPayload(search_term="Revenue Operations Lead")) == 80
    assert manager.compute_priority(DiscoverPayload(search_term="Account Executive")) == 50
    assert manager.compute_priority(ClassifyPayload(company="Acme", is_new_company=True, job_title="VP Sales")) == 100
    assert manager.compute_priority(ClassifyPayload(company="Acme")) == 60
    assert manager.compute_priority(ExportPayload(urgency="high")) == 100
    assert manager.compute_priority(RevalidatePayload(company="Acme")) == 40


def test_compute_backoff_is_capped(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)
    assert [manager.compute_backoff(count) for count in range(8)] == [1, 2, 4, 8, 16, 32, 60, 60]


def test_add_job_rejects_when_full(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock, max_queue_size=2)

    async def fill() -> None:
        await manager.add_job("discover", {"search_term": "SDR"})
        await manager.add_job("discover", {"search_term": "BDR"})
        await manager.add_job("discover", {"search_term": "AE"})

    with pytest.raises(QueueFullError) as exc_info:
        asyncio.run(fill())

    assert exc_info.value.code == "QUEUE_FULL"
    assert exc_info.value.to_dict() == {"code": "QUEUE_FULL", "current_size": 2, "max_size": 2}
    assert len(store.jobs) == 2


def test_concurrent_producers_cannot_exceed_queue_cap(clock: FakeClock) -> None:
    class YieldingStore(InMemoryStore):
        async def count_jobs(self, *, status: str | None = None) -> int:
            await asyncio.sleep(0)
            return await super().count_jobs(status=status)

    store = YieldingStore()
    manager = _manager(store, clock, max_queue_size=3)

    async def run() -> list[Any]:
        return await asyncio.gather(
            *(manager.add_job("discover", {"search_term": f"term {index}"}) for index in range(5)),
            return_exceptions=True,
        )

    results = asyncio.run(run())

    accepted = [result for result in results if isinstance(result, QueueJob)]
    rejected = [result for result in results if isinstance(result, QueueFullError)]
    assert len(accepted) == 3
    assert len(rejected) == 2
    assert all(error.to_dict()["current_size"] == 3 for error in rejected)
    assert asyncio.run(store.count_jobs(status="pending")) == 3


def test_store_insert_enforces_pending_cap(store: InMemoryStore, clock: FakeClock) -> None:
    def job(job_id: str) -> QueueJob:
        return QueueJob(id=job_id, kind="export", payload={}, scheduled_for=clock.now, created_at=clock.now)

    asyncio.run(store.insert_job(job("job-1"), max_pending=1))
    with pytest.raises(QueueFullError):
        asyncio.run(store.insert_job(job("job-2"), max_pending=1))
    asyncio.run(store.insert_job(job("job-3")))
    assert sorted(store.jobs) == ["job-1", "job-3"]


def test_add_job_validates_payload(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)
    with pytest.raises(PayloadValidationError):
        asyncio.run(manager.add_job("classify", {"description": "missing company"}))
    assert store.jobs == {}


def test_add_job_explicit_priority_and_delay(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)
    job = asyncio.run(manager.add_job("export", {"tool": "outreach"}, priority=5, delay_seconds=30))
    assert job.priority == 5
    assert job.scheduled_for == clock.now + timedelta(seconds=30)
    assert job.payload == {"tool": "outreach", "limit": 1000, "urgency": "normal"}
    assert asyncio.run(manager.get_next_jobs(5)) == []


def test_claims_are_disjoint_and_ordered(store: InMemoryStore, clock: FakeClock) -> None:
    first = _manager(store, clock, worker_id="worker-a")
    second = _manager(store, clock, worker_id="worker-b")

    async def run() -> tuple[list[QueueJob], list[QueueJob]]:
        for priority in (10, 90, 50, 70, 30):
            await first.add_job("discover", {"search_term": f"term {priority}"}, priority=priority)
        return await asyncio.gather(first.get_next_jobs(3), second.get_next_jobs(3))

    claimed_a, claimed_b = asyncio.run(run())

    ids_a = {job.id for job in claimed_a}
    ids_b = {job.id for job in claimed_b}
    assert ids_a.isdisjoint(ids_b)
    assert len(ids_a | ids_b) == 5
    assert [job.priority for job in claimed_a] == [90, 70, 50]
    assert all(job.lock_owner == "worker-a" and job.status == "processing" for job in claimed_a)
    assert all(job.lock_owner == "worker-b" for job in claimed_b)


def test_circuit_breaker_lifecycle(clock: FakeClock) -> None:
    breaker = CircuitBreaker(threshold=5, cooldown_seconds=300, clock=clock)

    opened = [breaker.record_failure("discover") for _ in range(5)]
    assert opened == [False, False, False, False, True]
    assert breaker.is_open("discover") is True
    assert breaker.is_open("classify") is False

    clock.advance(299)
    assert breaker.is_open("discover") is True
    clock.advance(1)
    assert breaker.is_open("discover") is False

    assert breaker.record_failure("discover") is True
    assert breaker.is_open("discover") is True
    assert breaker.snapshot()["discover"]["opened_count"] == 2

    clock.advance(300)
    assert breaker.record_success("discover") is True
    assert breaker.is_open("discover") is False
    assert breaker.snapshot()["discover"]["failure_count"] == 0


def test_tick_completes_jobs(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)

    async def run() -> dict[str, Any]:
        job = await manager.add_job("export", {})
        summary = await manager.tick()
        return {"summary": summary, "job": await store.get_job(job.id)}

    outcome = asyncio.run(run())

    assert outcome["summary"]["processed"] == 1
    job = outcome["job"]
    assert job.status == "completed"
    assert job.result == {"handled": True, "kind": "export"}
    assert job.lock_owner is None
    kinds = [event.kind for event in manager.events.recent()]
    assert kinds == ["job:added", "job:started", "job:completed"]


def test_failed_job_retries_with_backoff_then_fails(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock, handler=_boom)

    async def run() -> list[QueueJob]:
        job = await manager.add_job("discover", {"search_term": "SDR"}, max_retries=1)
        snapshots = []
        await manager.tick()
        snapshots.append(await store.get_job(job.id))
        assert (await manager.tick())["claimed"] == 0
        clock.advance(1)
        await manager.tick()
        snapshots.append(await store.get_job(job.id))
        return snapshots

    retried, failed = asyncio.run(run())

    assert retried.status == "pending"
    assert retried.retry_count == 1
    assert retried.scheduled_for == clock.now
    assert retried.error == "RuntimeError: boom"
    assert failed.status == "failed"
    assert failed.error == "RuntimeError: boom"
    assert failed.completed_at is not None


def test_invalid_payload_is_not_retried(store: InMemoryStore, clock: FakeClock) -> None:
    async def strict(job: QueueJob) -> dict[str, Any]:
        job.typed_payload()
        return {}

    manager = _manager(store, clock, handler=strict)
    broken = QueueJob(id="job-1", kind="discover", payload={}, scheduled_for=clock.now, created_at=clock.now)

    async def run() -> QueueJob:
        await store.insert_job(broken)
        await manager.tick()
        return await store.get_job("job-1")

    job = asyncio.run(run())
    assert job.status == "failed"
    assert job.retry_count == 0
    assert job.error.startswith("PayloadValidationError")


def test_open_circuit_defers_claimed_jobs(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock, handler=_boom, breaker_threshold=1, breaker_timeout_seconds=300)

    async def run() -> QueueJob:
        await manager.add_job("discover", {"search_term": "SDR"}, max_retries=0)
        await manager.tick()
        deferred = await manager.add_job("discover", {"search_term": "BDR"})
        summary = await manager.tick()
        assert summary["deferred"] == 1
        assert summary["processed"] == 0
        return await store.get_job(deferred.id)

    job = asyncio.run(run())

    assert manager.is_circuit_open("discover") is True
    assert job.status == "pending"
    assert job.retry_count == 0
    assert job.scheduled_for == clock.now + timedelta(seconds=300)
    assert manager.events.counts()["circuit:opened"] == 1


def test_failure_after_lease_lost_is_not_counted(store: InMemoryStore, clock: FakeClock) -> None:
    async def stolen(job: QueueJob) -> dict[str, Any]:
        store.jobs[job.id].lock_owner = "worker-b"
        raise RuntimeError("late failure")

    manager = _manager(store, clock, handler=stolen, breaker_threshold=1, breaker_timeout_seconds=300)

    async def run() -> QueueJob:
        job = await manager.add_job("discover", {"search_term": "SDR"}, max_retries=0)
        await manager.tick()
        return await store.get_job(job.id)

    job = asyncio.run(run())

    assert job.status == "processing"
    assert job.lock_owner == "worker-b"
    assert manager.is_circuit_open("discover") is False
    assert list(manager._outcomes) == []
    counts = manager.events.counts()
    assert "circuit:opened" not in counts
    assert "job:failed" not in counts


def test_backpressure_skips_claim_cycle(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock, memory_sampler=lambda: 95.0)

    async def run() -> dict[str, Any]:
        await manager.add_job("export", {})
        return await manager.tick()

    summary = asyncio.run(run())

    assert summary["skipped"] == "backpressure"
    assert asyncio.run(store.count_jobs(status="pending")) == 1
    event = manager.events.recent(kind="queue:backpressure")[-1]
    assert event.payload["reasons"] == ["memory"]


def test_error_rate_triggers_backpressure(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)
    manager._outcomes.extend([False] * 6 + [True] * 4)
    status = asyncio.run(manager.check_backpressure())
    assert status.active is True
    assert status.reasons == ["error_rate"]
    assert manager.error_rate() == pytest.approx(0.6)


def test_stop_releases_held_locks(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)

    async def run() -> tuple[int, QueueJob]:
        job = await manager.add_job("export", {})
        await manager.get_next_jobs(1)
        released = await manager.stop()
        return released, await store.get_job(job.id)

    released, job = asyncio.run(run())

    assert released == 1
    assert job.status == "pending"
    assert job.lock_owner is None
    assert asyncio.run(manager.tick())["skipped"] == "stopping"


def test_run_loop_stops_cleanly(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock, poll_interval_seconds=0.01)

    async def run() -> QueueJob:
        job = await manager.add_job("export", {})
        loop_task = asyncio.create_task(manager.run())
        for _ in range(100):
            if (await store.get_job(job.id)).status == "completed":
                break
            await asyncio.sleep(0.01)
        await manager.stop()
        await loop_task
        return await store.get_job(job.id)

    assert asyncio.run(run()).status == "completed"
    assert manager.running is False


def test_cancel_job(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)
    job = asyncio.run(manager.add_job("export", {}))

    cancelled = asyncio.run(manager.cancel_job(job.id))
    assert cancelled.status == "cancelled"

    with pytest.raises(StoreConflictError):
        asyncio.run(manager.cancel_job(job.id))
    with pytest.raises(StoreNotFoundError):
        asyncio.run(manager.cancel_job("missing"))


def test_expired_leases_are_requeued(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock, lock_timeout_seconds=60)

    async def run() -> tuple[int, int, QueueJob]:
        job = await manager.add_job("export", {})
        await manager.get_next_jobs(1)
        early = await manager.reap_expired_leases()
        clock.advance(61)
        late = await manager.reap_expired_leases()
        return early, late, await store.get_job(job.id)

    early, late, job = asyncio.run(run())
    assert (early, late) == (0, 1)
    assert job.status == "pending"
    assert job.lock_expires_at is None


def test_stats_report_counts(store: InMemoryStore, clock: FakeClock) -> None:
    manager = _manager(store, clock)

    async def run() -> dict[str, Any]:
        await manager.add_job("export", {})
        await manager.tick()
        await manager.add_job("export", {})
        return await manager.get_stats()

    stats = asyncio.run(run())
    assert stats["completed"] == 1
    assert stats["pending"] == 1
    assert stats["queue_depth"] == pytest.approx(1 / 1000)
    assert stats["oldest_pending_age_seconds"] == 0.0
