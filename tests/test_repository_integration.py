from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
import pytest

from radar.core.errors import QueueFullError
from radar.schemas.companies import CompanyUpsert
from radar.schemas.jobs import QueueJob
from radar.services.dedupe import CompanyDeduplicator
from radar.services.repository import PostgresRepository

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("RADAR_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require RADAR_DATABASE_URL")
    _run(_apply_schema(url))
    return url


@pytest.fixture
def repository(database_url: str) -> PostgresRepository:
    _run(_truncate(database_url))
    return PostgresRepository(database_url, min_pool_size=1, max_pool_size=2)


def test_upsert_search_and_merge_companies(repository: PostgresRepository) -> None:
    async def run() -> None:
        acme = await repository.upsert_company(
            CompanyUpsert(name="Acme Corp", normalized_name="acme", uses_outreach=True, detection_signals=["outreach.io"])
        )
        again = await repository.upsert_company(
            CompanyUpsert(
                name="Acme",
                normalized_name="acme",
                uses_outreach=True,
                signal_strength=0.7,
                detection_signals=["outreach.io"],
            )
        )
        twin = await repository.upsert_company(
            CompanyUpsert(name="Acme Co", normalized_name="acme co", uses_salesloft=True, detection_signals=["salesloft"])
        )
        assert again.id == acme.id
        assert again.times_seen == 2

        similar = await repository.search_similar_companies("acme", threshold=0.3, limit=5)
        assert [row.id for row, _ in similar][0] == acme.id

        merged = await repository.merge_duplicate_companies(acme.id, [twin.id])
        assert merged.uses_outreach and merged.uses_salesloft
        assert merged.times_seen == 3
        assert sorted(merged.detection_signals) == ["outreach.io", "salesloft"]
        assert await repository.count_companies() == 1
        await repository.close()

    _run(run())


def test_deduplicator_uses_trigram_search(repository: PostgresRepository) -> None:
    async def run() -> None:
        await repository.upsert_company(
            CompanyUpsert(name="Initech Solutions", normalized_name="initech solutions", uses_outreach=True)
        )
        deduplicator = CompanyDeduplicator(repository)
        verdict = await deduplicator.deduplicate("Initech Solution")
        assert verdict.is_known
        assert deduplicator.get_stats()["trigram_search_available"] is True
        await repository.close()

    _run(run())


def test_claims_are_disjoint_and_expired_leases_requeue(repository: PostgresRepository) -> None:
    async def run() -> None:
        now = datetime.now(timezone.utc)
        for priority in (10, 90, 50):
            await repository.insert_job(
                QueueJob(id=str(uuid4()), kind="export", priority=priority, scheduled_for=now, created_at=now)
            )

        first = await repository.claim_jobs(worker_id="a", limit=2, lock_seconds=60, now=now)
        second = await repository.claim_jobs(worker_id="b", limit=2, lock_seconds=60, now=now)
        assert [job.priority for job in first] == [90, 50]
        assert [job.priority for job in second] == [10]

        requeued = await repository.requeue_expired_jobs(now=now + timedelta(seconds=120), limit=10)
        assert requeued == 3
        assert await repository.count_jobs(status="pending") == 3
        await repository.close()

    _run(run())


def test_capped_insert_holds_under_concurrent_producers(repository: PostgresRepository) -> None:
    async def run() -> tuple[list[Any], int]:
        now = datetime.now(timezone.utc)
        jobs = [QueueJob(id=str(uuid4()), kind="export", scheduled_for=now, created_at=now) for _ in range(6)]
        results = await asyncio.gather(
            *(repository.insert_job(job, max_pending=2) for job in jobs),
            return_exceptions=True,
        )
        pending = await repository.count_jobs(status="pending")
        await repository.close()
        return results, pending

    results, pending = _run(run())
    assert pending == 2
    assert sum(isinstance(result, QueueJob) for result in results) == 2
    assert sum(isinstance(result, QueueFullError) for result in results) == 4


async def _apply_schema(database_url: str) -> None:
    connection = await asyncpg.connect(database_url)
    try:
        await connection.execute(SCHEMA_PATH.read_text())
    finally:
        await connection.close()


async def _truncate(database_url: str) -> None:
    connection = await asyncpg.connect(database_url)
    try:
        await connection.execute(
            """
            truncate table
              companies,
              search_term_strategies,
              scrape_runs,
              processed_postings,
              classification_cache,
              queue_jobs
            """
        )
    finally:
        await connection.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)
