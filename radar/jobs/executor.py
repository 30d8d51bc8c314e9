from __future__ import annotations

from typing import TYPE_CHECKING, Any

from radar.schemas.classification import ClassificationRequest
from radar.schemas.jobs import (
    ClassifyPayload,
    DiscoverPayload,
    ExportPayload,
    QueueJob,
    RevalidatePayload,
)

if TYPE_CHECKING:
    from radar.services.runtime import Runtime


async def execute_job(job: QueueJob, *, runtime: Runtime) -> dict[str, Any]:
    payload = job.typed_payload()
    if isinstance(payload, DiscoverPayload):
        return await execute_discover(payload, runtime=runtime)
    if isinstance(payload, ClassifyPayload):
        return await execute_classify(payload, runtime=runtime, job_id=job.id)
    if isinstance(payload, ExportPayload):
        return await execute_export(payload, runtime=runtime)
    if isinstance(payload, RevalidatePayload):
        return await execute_revalidate(payload, runtime=runtime)
    raise ValueError(f"unsupported job kind: {job.kind}")


async def execute_discover(payload: DiscoverPayload, *, runtime: Runtime) -> dict[str, Any]:
    result = await runtime.engine.orchestrate(
        payload.search_term,
        force_refresh=payload.force_refresh,
        max_items_per_platform=payload.max_items_per_platform,
    )
    return result.model_dump(mode="json")


async def execute_classify(payload: ClassifyPayload, *, runtime: Runtime, job_id: str | None = None) -> dict[str, Any]:
    results = await runtime.engine.classify_and_persist(
        [
            ClassificationRequest(
                company=payload.company,
                description=payload.description,
                job_title=payload.job_title,
                job_id=job_id,
            )
        ]
    )
    return results[0].model_dump(mode="json")


async def execute_export(payload: ExportPayload, *, runtime: Runtime) -> dict[str, Any]:
    companies = await runtime.store.list_companies(tool=payload.tool, limit=payload.limit)
    return {
        "tool": payload.tool,
        "count": len(companies),
        "companies": [company.model_dump(mode="json") for company in companies],
    }


async def execute_revalidate(payload: RevalidatePayload, *, runtime: Runtime) -> dict[str, Any]:
    description = payload.description
    if not description and payload.company_id:
        record = await runtime.store.get_company(payload.company_id)
        description = " ".join([*record.detection_signals, *record.keywords])
    result = await runtime.engine.revalidate_company(payload.company, description)
    return result.model_dump(mode="json")
