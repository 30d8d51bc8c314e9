from __future__ import annotations

from datetime import datetime, timezone

from radar.schemas.jobs import QueueJob


def lease_expired(job: QueueJob, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if job.lock_expires_at is None:
        return False
    return job.lock_expires_at <= now


def should_requeue(job: QueueJob, now: datetime | None = None) -> bool:
    return job.status == "processing" and lease_expired(job, now=now)
