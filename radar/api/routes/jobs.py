from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from radar.core.errors import PayloadValidationError, QueueFullError
from radar.schemas.jobs import EnqueueRequest, EnqueueResponse, JobStatus, QueueJob
from radar.services.runtime import get_runtime
from radar.services.store import StoreConflictError, StoreNotFoundError, StoreUnavailableError

router = APIRouter()


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(payload: EnqueueRequest, runtime=Depends(get_runtime)) -> EnqueueResponse:
    try:
        job = await runtime.queue.add_job(
            payload.kind,
            payload.payload,
            priority=payload.priority,
            max_retries=payload.max_retries,
            delay_seconds=payload.delay_seconds,
        )
    except QueueFullError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict()) from exc
    except PayloadValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EnqueueResponse(
        id=job.id,
        kind=job.kind,
        priority=job.priority,
        status=job.status,
        scheduled_for=job.scheduled_for,
    )


@router.get("", response_model=list[QueueJob])
async def list_jobs(status_filter: JobStatus | None = None, limit: int = 50, runtime=Depends(get_runtime)) -> list[QueueJob]:
    try:
        return await runtime.store.list_jobs(status=status_filter, limit=max(1, min(limit, 500)))
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/stats")
async def queue_stats(runtime=Depends(get_runtime)) -> dict[str, Any]:
    try:
        return await runtime.queue.get_stats()
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/{job_id}", response_model=QueueJob)
async def get_job(job_id: str, runtime=Depends(get_runtime)) -> QueueJob:
    try:
        return await runtime.store.get_job(job_id)
    except StoreNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/{job_id}/cancel", response_model=QueueJob)
async def cancel_job(job_id: str, runtime=Depends(get_runtime)) -> QueueJob:
    try:
        return await runtime.queue.cancel_job(job_id)
    except StoreNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StoreConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
