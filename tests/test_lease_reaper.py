from datetime import datetime, timedelta, timezone

from radar.jobs.lease_reaper import lease_expired, should_requeue
from radar.schemas.jobs import QueueJob


def _job(status: str, lock_expires_at: datetime | None) -> QueueJob:
    now = datetime.now(timezone.utc)
    return QueueJob(
        id="job-1",
        kind="export",
        status=status,
        scheduled_for=now,
        created_at=now,
        lock_owner="worker-a",
        lock_expires_at=lock_expires_at,
    )


def test_should_requeue_when_expired() -> None:
    now = datetime.now(timezone.utc)
    job = _job("processing", now - timedelta(seconds=5))
    assert should_requeue(job, now=now)


def test_should_not_requeue_when_not_processing() -> None:
    now = datetime.now(timezone.utc)
    job = _job("completed", now - timedelta(seconds=5))
    assert not should_requeue(job, now=now)


def test_lease_without_expiry_never_expires() -> None:
    now = datetime.now(timezone.utc)
    assert not lease_expired(_job("processing", None), now=now)
    assert not should_requeue(_job("processing", now + timedelta(seconds=30)), now=now)
