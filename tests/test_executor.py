from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from radar.jobs import executor
from radar.schemas.classification import ProviderVerdict
from radar.schemas.companies import CompanyUpsert
from radar.schemas.jobs import QueueJob
from tests.fakes import STRONG_OUTREACH, FakeClassificationProvider, make_runtime


def _job(kind: str, payload: dict[str, Any]) -> QueueJob:
    now = datetime.now(timezone.utc)
    return QueueJob(id="job-1", kind=kind, payload=payload, scheduled_for=now, created_at=now)


def test_execute_job_dispatches_discover(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_execute_discover(payload, *, runtime) -> dict[str, Any]:
        captured["payload"] = payload
        return {"handled": True}

    monkeypatch.setattr(executor, "execute_discover", fake_execute_discover)
    result = asyncio.run(
        executor.execute_job(_job("discover", {"search_term": "SDR", "force_refresh": True}), runtime=make_runtime())
    )

    assert result == {"handled": True}
    assert captured["payload"].search_term == "SDR"
    assert captured["payload"].force_refresh is True


def test_classify_job_persists_tool_user() -> None:
    runtime = make_runtime()
    result = asyncio.run(
        executor.execute_job(_job("classify", {"company": "Acme Inc.", "description": STRONG_OUTREACH}), runtime=runtime)
    )

    assert result["tool_detected"] == "outreach"
    assert result["job_id"] == "job-1"
    assert [row.normalized_name for row in runtime.store.companies.values()] == ["acme"]


def test_export_job_filters_by_tool() -> None:
    runtime = make_runtime()

    async def run() -> dict[str, Any]:
        await runtime.store.upsert_company(
            CompanyUpsert(name="Acme", normalized_name="acme", uses_outreach=True, signal_strength=0.9)
        )
        await runtime.store.upsert_company(
            CompanyUpsert(name="Globex", normalized_name="globex", uses_salesloft=True, signal_strength=0.8)
        )
        return await executor.execute_job(_job("export", {"tool": "outreach"}), runtime=runtime)

    result = asyncio.run(run())

    assert result["tool"] == "outreach"
    assert result["count"] == 1
    assert result["companies"][0]["name"] == "Acme"


def test_revalidate_without_description_uses_stored_signals() -> None:
    provider = FakeClassificationProvider(verdict=ProviderVerdict(tool_detected="salesloft", confidence="medium"))
    runtime = make_runtime(provider=provider)

    async def run() -> dict[str, Any]:
        record = await runtime.store.upsert_company(
            CompanyUpsert(
                name="Acme",
                normalized_name="acme",
                uses_outreach=True,
                detection_signals=["sales cadence"],
                keywords=["cadence"],
            )
        )
        return await executor.execute_job(
            _job("revalidate", {"company": "Acme", "company_id": record.id}), runtime=runtime
        )

    result = asyncio.run(run())

    assert provider.batches[0][0].description == "sales cadence cadence"
    assert result["tool_detected"] == "salesloft"
    row = next(iter(runtime.store.companies.values()))
    assert (row.uses_outreach, row.uses_salesloft) == (False, True)


def test_queue_runs_jobs_through_executor() -> None:
    runtime = make_runtime()

    async def run() -> None:
        job = await runtime.queue.add_job("export", {"tool": "salesloft"})
        summary = await runtime.queue.tick()
        assert summary["processed"] == 1
        stored = await runtime.store.get_job(job.id)
        assert stored.status == "completed"
        assert stored.result == {"tool": "salesloft", "count": 0, "companies": []}

    asyncio.run(run())
