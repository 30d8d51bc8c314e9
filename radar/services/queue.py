from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from opentelemetry import trace
import psutil

from radar.core.errors import PayloadValidationError
from radar.core.events import EventChannel
from radar.core.telemetry import bind_log_context
from radar.schemas.jobs import (
    ClassifyPayload,
    DiscoverPayload,
    JobKind,
    JobPayload,
    QueueJob,
    parse_payload,
)
from radar.services.store import Store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobHandler = Callable[[QueueJob], Awaitable[dict[str, Any]]]

KIND_PRIORITY_OFFSETS: dict[str, int] = {
    "export": 20,
    "classify": 10,
    "discover": 0,
    "revalidate": -10,
}
HIGH_VALUE_TERM_BOOST = 30
NEW_COMPANY_BOOST = 25
SENIOR_TITLE_BOOST = 15
URGENT_BOOST = 40
SENIOR_TITLE_MARKERS = ("Director", "VP")

_ERROR_WINDOW = 100
_MIN_ERROR_SAMPLES = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _memory_percent() -> float:
    return float(psutil.virtual_memory().percent)


@dataclass(slots=True)
class CircuitState:
    failure_count: int = 0
    cooldown_until: datetime | None = None
    opened_count: int = 0


class CircuitBreaker:
    """Per-job-kind failure isolation.

    A kind is open while its consecutive failure count is at or above the
    threshold and its cooldown has not elapsed. Once the cooldown passes, the
    next job runs as a trial: success resets the count, failure reopens the
    circuit with a fresh cooldown.
    """

    def __init__(
        self,
        *,
        threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.threshold = max(1, threshold)
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._states: dict[str, CircuitState] = {}

    def is_open(self, kind: str) -> bool:
        state = self._states.get(kind)
        if state is None or state.failure_count < self.threshold or state.cooldown_until is None:
            return False
        return self._clock() < state.cooldown_until

    def cooldown_until(self, kind: str) -> datetime | None:
        state = self._states.get(kind)
        return state.cooldown_until if state else None

    def record_success(self, kind: str) -> bool:
        """Returns True when this success closes a previously opened circuit."""
        state = self._states.setdefault(kind, CircuitState())
        was_tripped = state.failure_count >= self.threshold
        state.failure_count = 0
        state.cooldown_until = None
        return was_tripped

    def record_failure(self, kind: str) -> bool:
        """Returns True when this failure opens (or reopens) the circuit."""
        state = self._states.setdefault(kind, CircuitState())
        already_open = self.is_open(kind)
        state.failure_count += 1
        if state.failure_count < self.threshold:
            return False
        state.cooldown_until = self._clock() + timedelta(seconds=self.cooldown_seconds)
        if already_open:
            return False
        state.opened_count += 1
        return True

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            kind: {
                "is_open": self.is_open(kind),
                "failure_count": state.failure_count,
                "cooldown_until": state.cooldown_until.isoformat() if state.cooldown_until else None,
                "opened_count": state.opened_count,
            }
            for kind, state in self._states.items()
        }


@dataclass(slots=True)
class BackpressureStatus:
    active: bool
    reasons: list[str] = field(default_factory=list)
    memory_percent: float = 0.0
    error_rate: float = 0.0
    pending: int = 0


class SmartQueueManager:
    def __init__(
        self,
        store: Store,
        events: EventChannel,
        *,
        worker_id: str,
        handler: JobHandler | None = None,
        max_concurrent: int = 5,
        max_queue_size: int = 1000,
        default_priority: int = 50,
        default_max_retries: int = 3,
        lock_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        backoff_base_seconds: float = 1.0,
        backoff_multiplier: float = 2.0,
        max_backoff_seconds: float = 60.0,
        breaker_threshold: int = 5,
        breaker_timeout_seconds: float = 300.0,
        shutdown_timeout_seconds: float = 30.0,
        max_memory_percent: float = 90.0,
        max_error_rate: float = 0.5,
        max_depth_ratio: float = 0.9,
        high_value_terms: list[str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        memory_sampler: Callable[[], float] = _memory_percent,
    ) -> None:
        self.store = store
        self.events = events
        self.worker_id = worker_id
        self.handler = handler
        self.max_concurrent = max(1, max_concurrent)
        self.max_queue_size = max_queue_size
        self.default_priority = default_priority
        self.default_max_retries = default_max_retries
        self.lock_timeout_seconds = lock_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff_seconds = max_backoff_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.max_memory_percent = max_memory_percent
        self.max_error_rate = max_error_rate
        self.max_depth_ratio = max_depth_ratio
        self.high_value_terms = list(
            high_value_terms if high_value_terms is not None else ["Revenue Operations", "Sales Manager", "SDR Manager"]
        )
        self.breaker = CircuitBreaker(threshold=breaker_threshold, cooldown_seconds=breaker_timeout_seconds, clock=clock)
        self._clock = clock
        self._memory_sampler = memory_sampler
        self._outcomes: deque[bool] = deque(maxlen=_ERROR_WINDOW)
        self._durations_ms: deque[float] = deque(maxlen=_ERROR_WINDOW)
        self._in_flight: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._running = False
        self._stopping = False
        self._started_at = time.monotonic()
        self._completed = 0
        self._last_backpressure: BackpressureStatus | None = None

    @property
    def running(self) -> bool:
        return self._running and not self._stopping

    def compute_priority(self, payload: JobPayload, base: int | None = None) -> int:
        priority = self.default_priority if base is None else base
        priority += KIND_PRIORITY_OFFSETS.get(payload.kind, 0)

        if isinstance(payload, DiscoverPayload):
            term = payload.search_term.lower()
            if any(value.lower() in term for value in self.high_value_terms):
                priority += HIGH_VALUE_TERM_BOOST
        if isinstance(payload, ClassifyPayload):
            if payload.is_new_company:
                priority += NEW_COMPANY_BOOST
            if payload.job_title and any(marker in payload.job_title for marker in SENIOR_TITLE_MARKERS):
                priority += SENIOR_TITLE_BOOST
        if payload.urgency == "high":
            priority += URGENT_BOOST

        return max(0, min(100, priority))

    def compute_backoff(self, retry_count: int) -> float:
        delay = self.backoff_base_seconds * (self.backoff_multiplier**retry_count)
        return min(delay, self.max_backoff_seconds)

    async def add_job(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        *,
        priority: int | None = None,
        max_retries: int | None = None,
        delay_seconds: float = 0.0,
    ) -> QueueJob:
        typed = parse_payload(kind, payload)
        now = self._clock()
        job = QueueJob(
            id=str(uuid4()),
            kind=kind,
            priority=max(0, min(100, priority)) if priority is not None else self.compute_priority(typed),
            payload=typed.model_dump(mode="json", exclude={"kind"}),
            scheduled_for=now + timedelta(seconds=max(0.0, delay_seconds)),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            created_at=now,
        )
        job = await self.store.insert_job(job, max_pending=self.max_queue_size)
        self.events.publish("job:added", job_id=job.id, kind=kind, priority=job.priority)
        logger.info("job added id=%s kind=%s priority=%s", job.id, kind, job.priority)
        return job

    async def get_next_jobs(self, limit: int) -> list[QueueJob]:
        return await self.store.claim_jobs(
            worker_id=self.worker_id,
            limit=limit,
            lock_seconds=self.lock_timeout_seconds,
            now=self._clock(),
        )

    def is_circuit_open(self, kind: str) -> bool:
        return self.breaker.is_open(kind)

    def error_rate(self) -> float:
        if len(self._outcomes) < _MIN_ERROR_SAMPLES:
            return 0.0
        failures = sum(1 for ok in self._outcomes if not ok)
        return failures / len(self._outcomes)

    async def check_backpressure(self) -> BackpressureStatus:
        memory = self._memory_sampler()
        error_rate = self.error_rate()
        pending = await self.store.count_jobs(status="pending")
        reasons: list[str] = []
        if memory > self.max_memory_percent:
            reasons.append("memory")
        if error_rate > self.max_error_rate:
            reasons.append("error_rate")
        if pending > self.max_queue_size * self.max_depth_ratio:
            reasons.append("queue_depth")
        status = BackpressureStatus(
            active=bool(reasons),
            reasons=reasons,
            memory_percent=memory,
            error_rate=error_rate,
            pending=pending,
        )
        self._last_backpressure = status
        return status

    async def tick(self) -> dict[str, Any]:
        """Runs one claim cycle and waits for the jobs it started."""
        summary: dict[str, Any] = {"claimed": 0, "processed": 0, "deferred": 0, "skipped": None}
        if self._stopping:
            summary["skipped"] = "stopping"
            return summary

        with tracer.start_as_current_span("queue.tick") as span:
            pressure = await self.check_backpressure()
            if pressure.active:
                self.events.publish(
                    "queue:backpressure",
                    reasons=pressure.reasons,
                    memory_percent=pressure.memory_percent,
                    error_rate=pressure.error_rate,
                    pending=pressure.pending,
                )
                logger.warning("backpressure active reasons=%s; skipping claim cycle", ",".join(pressure.reasons))
                summary["skipped"] = "backpressure"
                return summary

            capacity = self.max_concurrent - len(self._in_flight)
            if capacity <= 0:
                summary["skipped"] = "at_capacity"
                return summary

            jobs = await self.get_next_jobs(capacity)
            summary["claimed"] = len(jobs)
            span.set_attribute("radar.jobs_claimed", len(jobs))

            runnable: list[QueueJob] = []
            for job in jobs:
                if self.is_circuit_open(job.kind):
                    await self._defer_for_circuit(job)
                    summary["deferred"] += 1
                else:
                    runnable.append(job)

            tasks = [asyncio.create_task(self._process(job)) for job in runnable]
            for task in tasks:
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
            if tasks:
                await asyncio.gather(*tasks)
            summary["processed"] = len(tasks)
            return summary

    async def run(self) -> None:
        self._running = True
        self._stop_event.clear()
        logger.info("queue manager started worker_id=%s", self.worker_id)
        try:
            while not self._stopping:
                try:
                    await self.tick()
                except Exception:
                    logger.exception("queue tick failed")
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
        finally:
            self._running = False

    async def stop(self) -> int:
        self._stopping = True
        self._stop_event.set()
        in_flight = set(self._in_flight)
        if in_flight:
            logger.info("waiting for %s in-flight jobs", len(in_flight))
            _, still_running = await asyncio.wait(in_flight, timeout=self.shutdown_timeout_seconds)
            if still_running:
                logger.warning("%s jobs still running after %.0fs; releasing their locks", len(still_running), self.shutdown_timeout_seconds)
        released = await self.store.release_locks(self.worker_id)
        if released:
            logger.info("released %s job locks held by worker_id=%s", released, self.worker_id)
        return released

    async def cancel_job(self, job_id: str) -> QueueJob:
        job = await self.store.cancel_job(job_id, now=self._clock())
        logger.info("job cancelled id=%s", job_id)
        return job

    async def reap_expired_leases(self, limit: int = 100) -> int:
        return await self.store.requeue_expired_jobs(now=self._clock(), limit=limit)

    async def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        stats = await self.store.job_stats(now=now)
        counts = stats["counts"]
        oldest = stats["oldest_pending_created_at"]
        uptime_minutes = max((time.monotonic() - self._started_at) / 60, 1e-9)
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "pending": counts["pending"],
            "processing": counts["processing"],
            "completed": counts["completed"],
            "failed": counts["failed"],
            "cancelled": counts["cancelled"],
            "in_flight": len(self._in_flight),
            "avg_processing_ms": round(stats["avg_processing_ms"], 3),
            "throughput_per_minute": round(self._completed / uptime_minutes, 3),
            "completed_last_hour": stats["completed_last_hour"],
            "error_rate": round(self.error_rate(), 4),
            "queue_depth": counts["pending"] / self.max_queue_size if self.max_queue_size else 0.0,
            "oldest_pending_age_seconds": (now - oldest).total_seconds() if oldest else None,
            "circuits": self.breaker.snapshot(),
            "backpressure": (
                {"active": self._last_backpressure.active, "reasons": self._last_backpressure.reasons}
                if self._last_backpressure
                else None
            ),
        }

    async def _process(self, job: QueueJob) -> None:
        with tracer.start_as_current_span("queue.process_job") as span, bind_log_context(job_kind=job.kind, job_id=job.id):
            span.set_attribute("radar.job.id", job.id)
            span.set_attribute("radar.job.kind", job.kind)
            self.events.publish("job:started", job_id=job.id, kind=job.kind)
            heartbeat = asyncio.create_task(self._renew_lock(job))
            started = time.perf_counter()
            try:
                if self.handler is None:
                    raise RuntimeError("queue manager has no job handler")
                result = await self.handler(job)
            except Exception as exc:
                span.record_exception(exc)
                await self._handle_failure(job, exc)
            else:
                await self._handle_success(job, result, (time.perf_counter() - started) * 1000)
            finally:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat

    async def _handle_success(self, job: QueueJob, result: dict[str, Any], duration_ms: float) -> None:
        now = self._clock()
        updated = await self.store.update_claimed_job(
            job.id,
            self.worker_id,
            {
                "status": "completed",
                "result": result,
                "error": None,
                "completed_at": now,
                "lock_owner": None,
                "lock_expires_at": None,
            },
        )
        if not updated:
            logger.warning("lost lock before completing job id=%s", job.id)
            return
        self._outcomes.append(True)
        self._durations_ms.append(duration_ms)
        self._completed += 1
        if self.breaker.record_success(job.kind):
            self.events.publish("circuit:closed", kind=job.kind)
            logger.info("circuit closed kind=%s", job.kind)
        self.events.publish("job:completed", job_id=job.id, kind=job.kind, duration_ms=round(duration_ms, 3))
        logger.info("job completed id=%s kind=%s duration_ms=%.1f", job.id, job.kind, duration_ms)

    async def _handle_failure(self, job: QueueJob, exc: Exception) -> None:
        now = self._clock()
        error = f"{type(exc).__name__}: {exc}"
        retryable = not isinstance(exc, PayloadValidationError)
        will_retry = retryable and job.retry_count < job.max_retries
        backoff = self.compute_backoff(job.retry_count) if will_retry else 0.0
        if will_retry:
            changes: dict[str, Any] = {
                "status": "pending",
                "retry_count": job.retry_count + 1,
                "scheduled_for": now + timedelta(seconds=backoff),
                "error": error,
                "lock_owner": None,
                "lock_expires_at": None,
            }
        else:
            changes = {
                "status": "failed",
                "error": error,
                "completed_at": now,
                "lock_owner": None,
                "lock_expires_at": None,
            }

        updated = await self.store.update_claimed_job(job.id, self.worker_id, changes)
        if not updated:
            logger.warning("lost lock before failing job id=%s", job.id)
            return

        self._outcomes.append(False)
        if self.breaker.record_failure(job.kind):
            cooldown = self.breaker.cooldown_until(job.kind)
            self.events.publish("circuit:opened", kind=job.kind, cooldown_until=cooldown.isoformat() if cooldown else None)
            logger.warning("circuit opened kind=%s until=%s", job.kind, cooldown)

        if will_retry:
            self.events.publish(
                "job:requeued", job_id=job.id, kind=job.kind, retry_count=job.retry_count + 1, backoff_seconds=backoff
            )
            logger.warning("job failed id=%s attempt=%s; retry in %.1fs: %s", job.id, job.retry_count + 1, backoff, error)
        else:
            self.events.publish("job:failed", job_id=job.id, kind=job.kind, error=error)
            logger.error("job failed permanently id=%s kind=%s: %s", job.id, job.kind, error)

    async def _defer_for_circuit(self, job: QueueJob) -> None:
        resume_at = self.breaker.cooldown_until(job.kind) or self._clock()
        await self.store.update_claimed_job(
            job.id,
            self.worker_id,
            {
                "status": "pending",
                "scheduled_for": resume_at,
                "lock_owner": None,
                "lock_expires_at": None,
            },
        )
        self.events.publish("job:requeued", job_id=job.id, kind=job.kind, reason="circuit_open")
        logger.info("job deferred id=%s kind=%s until=%s (circuit open)", job.id, job.kind, resume_at.isoformat())

    async def _renew_lock(self, job: QueueJob) -> None:
        interval = max(self.lock_timeout_seconds / 2, 0.01)
        while True:
            await asyncio.sleep(interval)
            renewed = await self.store.renew_lock(
                job.id,
                self.worker_id,
                lock_seconds=self.lock_timeout_seconds,
                now=self._clock(),
            )
            if not renewed:
                logger.warning("lock renewal failed for job id=%s", job.id)
                return
