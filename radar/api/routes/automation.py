from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from radar.schemas.automation import (
    AutomationStatus,
    FullRunRequest,
    FullRunResponse,
    InsightsResponse,
    ProcessTermRequest,
)
from radar.schemas.strategy import PipelineResult
from radar.services.runtime import get_runtime
from radar.services.store import StoreUnavailableError

router = APIRouter()


@router.post("/process-term", response_model=PipelineResult)
async def process_term(payload: ProcessTermRequest, runtime=Depends(get_runtime)) -> PipelineResult:
    try:
        return await runtime.engine.orchestrate(
            payload.term,
            force_refresh=payload.force_refresh,
            max_items_per_platform=payload.max_items_per_platform,
        )
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/full-run", response_model=FullRunResponse)
async def full_run(payload: FullRunRequest | None = None, runtime=Depends(get_runtime)) -> FullRunResponse:
    max_items = payload.max_items_per_platform if payload else None
    try:
        results = await runtime.engine.run_full_cycle(max_items_per_platform=max_items)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    failed = sum(1 for result in results if result.reason == "failed")
    skipped = sum(1 for result in results if result.skipped)
    return FullRunResponse(
        processed=len(results) - failed - skipped,
        skipped=skipped,
        failed=failed,
        results=results,
    )


@router.get("/status", response_model=AutomationStatus)
async def automation_status(runtime=Depends(get_runtime)) -> AutomationStatus:
    return AutomationStatus(
        continuous_running=runtime.engine.continuous_running,
        queue_running=runtime.queue.running,
        classifier_degraded=runtime.classifier.degraded,
        due_terms=[strategy.term for strategy in runtime.scheduler.due_strategies()],
        rate_limiters=[runtime.discovery_limiter.get_status(), runtime.classifier_limiter.get_status()],
        event_counts=runtime.events.counts(),
    )


@router.get("/metrics")
async def automation_metrics(runtime=Depends(get_runtime)) -> dict[str, Any]:
    try:
        return {
            "engine": runtime.engine.get_metrics(),
            "scheduler": await runtime.scheduler.get_stats(),
            "deduplication": runtime.deduplicator.get_stats(),
            "queue": await runtime.queue.get_stats(),
        }
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/insights", response_model=InsightsResponse)
async def automation_insights(limit: int = 10, runtime=Depends(get_runtime)) -> InsightsResponse:
    return InsightsResponse(insights=runtime.engine.get_insights(limit=max(1, min(limit, 100))))


@router.get("/events")
async def automation_events(limit: int = 50, runtime=Depends(get_runtime)) -> list[dict[str, Any]]:
    return [event.to_dict() for event in runtime.events.recent(limit=max(1, min(limit, 200)))]
