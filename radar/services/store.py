from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from uuid import uuid4

from radar.core.errors import QueueFullError
from radar.jobs.lease_reaper import should_requeue
from radar.schemas.classification import CachedClassification
from radar.schemas.companies import CompanyRecord, CompanyUpsert, ToolDetected
from radar.schemas.jobs import JOB_STATUSES, QueueJob
from radar.schemas.strategy import ScrapeResult, SearchTermStrategy


class StoreError(Exception):
    """Base store error."""


class StoreUnavailableError(StoreError):
    """Raised when the backing database is unavailable or not configured."""


class StoreNotFoundError(StoreError):
    """Raised when the requested entity does not exist."""


class StoreConflictError(StoreError):
    """Raised when an operation violates state transition rules."""


class StoreFeatureUnavailableError(StoreError):
    """Raised when an optional capability (e.g. trigram search) is not installed."""


_JOB_UPDATABLE_FIELDS = {
    "status",
    "priority",
    "scheduled_for",
    "retry_count",
    "lock_owner",
    "lock_expires_at",
    "result",
    "error",
    "started_at",
    "completed_at",
}


class Store(Protocol):
    async def close(self) -> None: ...

    async def get_company(self, company_id: str) -> CompanyRecord: ...

    async def find_company_by_normalized_name(self, normalized_name: str) -> CompanyRecord | None: ...

    async def search_similar_companies(
        self, normalized_name: str, *, threshold: float, limit: int
    ) -> list[tuple[CompanyRecord, float]]: ...

    async def search_companies_by_pattern(self, tokens: list[str], *, limit: int) -> list[CompanyRecord]: ...

    async def find_companies_by_domain(self, domain: str, *, limit: int) -> list[CompanyRecord]: ...

    async def list_companies(
        self,
        *,
        min_signal_strength: float | None = None,
        tool: ToolDetected | None = None,
        limit: int | None = None,
    ) -> list[CompanyRecord]: ...

    async def count_companies(self) -> int: ...

    async def upsert_company(self, company: CompanyUpsert) -> CompanyRecord: ...

    async def merge_duplicate_companies(self, primary_id: str, duplicate_ids: list[str]) -> CompanyRecord: ...

    async def list_strategies(self) -> list[SearchTermStrategy]: ...

    async def save_strategy(self, strategy: SearchTermStrategy) -> None: ...

    async def record_scrape_run(self, result: ScrapeResult, *, run_at: datetime) -> None: ...

    async def list_scrape_runs(self, *, term: str | None = None, limit: int = 20) -> list[dict[str, Any]]: ...

    async def get_processed_posting_ids(self, posting_ids: list[str]) -> set[str]: ...

    async def mark_postings_processed(self, posting_ids: list[str], *, processed_at: datetime) -> None: ...

    async def load_classification_cache(self, *, now: datetime) -> list[CachedClassification]: ...

    async def save_classification(self, entry: CachedClassification) -> None: ...

    async def delete_expired_classifications(self, *, now: datetime) -> int: ...

    async def insert_job(self, job: QueueJob, *, max_pending: int | None = None) -> QueueJob: ...

    async def get_job(self, job_id: str) -> QueueJob: ...

    async def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[QueueJob]: ...

    async def count_jobs(self, *, status: str | None = None) -> int: ...

    async def claim_jobs(self, *, worker_id: str, limit: int, lock_seconds: float, now: datetime) -> list[QueueJob]: ...

    async def update_claimed_job(self, job_id: str, worker_id: str, changes: dict[str, Any]) -> bool: ...

    async def renew_lock(self, job_id: str, worker_id: str, *, lock_seconds: float, now: datetime) -> bool: ...

    async def release_locks(self, worker_id: str) -> int: ...

    async def requeue_expired_jobs(self, *, now: datetime, limit: int) -> int: ...

    async def cancel_job(self, job_id: str, *, now: datetime) -> QueueJob: ...

    async def job_stats(self, *, now: datetime) -> dict[str, Any]: ...


class InMemoryStore:
    """Single-process store; every mutation runs under one asyncio lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.companies: dict[str, CompanyRecord] = {}
        self.strategies: dict[str, SearchTermStrategy] = {}
        self.scrape_runs: list[dict[str, Any]] = []
        self.processed_postings: dict[str, datetime] = {}
        self.classifications: dict[str, CachedClassification] = {}
        self.jobs: dict[str, QueueJob] = {}

    async def close(self) -> None:
        return None

    async def get_company(self, company_id: str) -> CompanyRecord:
        company = self.companies.get(company_id)
        if company is None:
            raise StoreNotFoundError("company not found")
        return company.model_copy(deep=True)

    async def find_company_by_normalized_name(self, normalized_name: str) -> CompanyRecord | None:
        for company in self.companies.values():
            if company.normalized_name == normalized_name:
                return company.model_copy(deep=True)
        return None

    async def search_similar_companies(
        self, normalized_name: str, *, threshold: float, limit: int
    ) -> list[tuple[CompanyRecord, float]]:
        raise StoreFeatureUnavailableError("trigram search is not available in the in-memory store")

    async def search_companies_by_pattern(self, tokens: list[str], *, limit: int) -> list[CompanyRecord]:
        matches: list[CompanyRecord] = []
        for company in self.companies.values():
            if _matches_ordered_tokens(company.normalized_name, tokens):
                matches.append(company.model_copy(deep=True))
            if len(matches) >= limit:
                break
        return matches

    async def find_companies_by_domain(self, domain: str, *, limit: int) -> list[CompanyRecord]:
        needle = domain.lower()
        matches = [
            company.model_copy(deep=True)
            for company in self.companies.values()
            if company.domain and company.domain.lower() == needle
        ]
        return matches[:limit]

    async def list_companies(
        self,
        *,
        min_signal_strength: float | None = None,
        tool: ToolDetected | None = None,
        limit: int | None = None,
    ) -> list[CompanyRecord]:
        rows = sorted(self.companies.values(), key=lambda row: (-row.signal_strength, row.normalized_name))
        if min_signal_strength is not None:
            rows = [row for row in rows if row.signal_strength > min_signal_strength]
        if tool is not None:
            rows = [row for row in rows if _company_matches_tool(row, tool)]
        if limit is not None:
            rows = rows[:limit]
        return [row.model_copy(deep=True) for row in rows]

    async def count_companies(self) -> int:
        return len(self.companies)

    async def upsert_company(self, company: CompanyUpsert) -> CompanyRecord:
        async with self._lock:
            now = datetime.now(timezone.utc)
            existing = next(
                (row for row in self.companies.values() if row.normalized_name == company.normalized_name),
                None,
            )
            if existing is None:
                record = CompanyRecord(
                    id=str(uuid4()),
                    name=company.name,
                    normalized_name=company.normalized_name,
                    domain=company.domain,
                    uses_outreach=company.uses_outreach,
                    uses_salesloft=company.uses_salesloft,
                    confidence_level=company.confidence_level,
                    signal_strength=company.signal_strength,
                    detection_signals=list(company.detection_signals),
                    keywords=list(company.keywords),
                    last_verified_at=company.verified_at,
                    times_seen=1,
                    created_at=now,
                    updated_at=now,
                )
            else:
                record = existing.model_copy(
                    update={
                        "domain": existing.domain or company.domain,
                        "uses_outreach": company.uses_outreach,
                        "uses_salesloft": company.uses_salesloft,
                        "confidence_level": company.confidence_level,
                        "signal_strength": company.signal_strength,
                        "detection_signals": list(company.detection_signals),
                        "keywords": list(company.keywords),
                        "last_verified_at": company.verified_at or existing.last_verified_at,
                        "times_seen": existing.times_seen + 1,
                        "updated_at": now,
                    }
                )
            self.companies[record.id] = record
            return record.model_copy(deep=True)

    async def merge_duplicate_companies(self, primary_id: str, duplicate_ids: list[str]) -> CompanyRecord:
        async with self._lock:
            primary = self.companies.get(primary_id)
            if primary is None:
                raise StoreNotFoundError("primary company not found")
            duplicates = [self.companies[item] for item in duplicate_ids if item in self.companies and item != primary_id]
            merged = primary.model_copy(
                update={
                    "uses_outreach": primary.uses_outreach or any(row.uses_outreach for row in duplicates),
                    "uses_salesloft": primary.uses_salesloft or any(row.uses_salesloft for row in duplicates),
                    "signal_strength": max([primary.signal_strength, *(row.signal_strength for row in duplicates)]),
                    "times_seen": primary.times_seen + sum(row.times_seen for row in duplicates),
                    "detection_signals": _merge_lists(primary.detection_signals, *(row.detection_signals for row in duplicates)),
                    "keywords": _merge_lists(primary.keywords, *(row.keywords for row in duplicates)),
                    "domain": primary.domain or next((row.domain for row in duplicates if row.domain), None),
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            for row in duplicates:
                del self.companies[row.id]
            self.companies[primary_id] = merged
            return merged.model_copy(deep=True)

    async def list_strategies(self) -> list[SearchTermStrategy]:
        return [row.model_copy(deep=True) for row in self.strategies.values()]

    async def save_strategy(self, strategy: SearchTermStrategy) -> None:
        async with self._lock:
            self.strategies[strategy.term] = strategy.model_copy(deep=True)

    async def record_scrape_run(self, result: ScrapeResult, *, run_at: datetime) -> None:
        async with self._lock:
            self.scrape_runs.append(
                {
                    "term": result.term,
                    "run_at": run_at,
                    "total_found": result.total_found,
                    "new_companies": result.new_companies,
                    "duplicates": result.duplicates,
                    "platforms_attempted": list(result.platforms_attempted),
                    "platforms_succeeded": list(result.platforms_succeeded),
                    "yield_rate": result.yield_rate,
                    "errors": list(result.errors),
                    "duration_ms": result.duration_ms,
                }
            )

    async def list_scrape_runs(self, *, term: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        rows = [row for row in self.scrape_runs if term is None or row["term"] == term]
        rows.sort(key=lambda row: row["run_at"], reverse=True)
        return [dict(row) for row in rows[:limit]]

    async def get_processed_posting_ids(self, posting_ids: list[str]) -> set[str]:
        return {posting_id for posting_id in posting_ids if posting_id in self.processed_postings}

    async def mark_postings_processed(self, posting_ids: list[str], *, processed_at: datetime) -> None:
        async with self._lock:
            for posting_id in posting_ids:
                self.processed_postings.setdefault(posting_id, processed_at)

    async def load_classification_cache(self, *, now: datetime) -> list[CachedClassification]:
        return [row.model_copy(deep=True) for row in self.classifications.values() if row.expires_at > now]

    async def save_classification(self, entry: CachedClassification) -> None:
        async with self._lock:
            self.classifications[entry.cache_key] = entry.model_copy(deep=True)

    async def delete_expired_classifications(self, *, now: datetime) -> int:
        async with self._lock:
            expired = [key for key, row in self.classifications.items() if row.expires_at <= now]
            for key in expired:
                del self.classifications[key]
            return len(expired)

    async def insert_job(self, job: QueueJob, *, max_pending: int | None = None) -> QueueJob:
        async with self._lock:
            if job.id in self.jobs:
                raise StoreConflictError("job already exists")
            if max_pending is not None:
                pending = await self.count_jobs(status="pending")
                if pending >= max_pending:
                    raise QueueFullError(pending, max_pending)
            self.jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> QueueJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise StoreNotFoundError("job not found")
        return job.model_copy(deep=True)

    async def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[QueueJob]:
        rows = [job for job in self.jobs.values() if status is None or job.status == status]
        rows.sort(key=lambda job: job.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in rows[:limit]]

    async def count_jobs(self, *, status: str | None = None) -> int:
        return sum(1 for job in self.jobs.values() if status is None or job.status == status)

    async def claim_jobs(self, *, worker_id: str, limit: int, lock_seconds: float, now: datetime) -> list[QueueJob]:
        if limit <= 0:
            return []
        async with self._lock:
            due = [job for job in self.jobs.values() if job.status == "pending" and job.scheduled_for <= now]
            due.sort(key=lambda job: (-job.priority, job.created_at))
            claimed: list[QueueJob] = []
            for job in due[:limit]:
                job.status = "processing"
                job.lock_owner = worker_id
                job.lock_expires_at = now + timedelta(seconds=lock_seconds)
                job.started_at = now
                claimed.append(job.model_copy(deep=True))
            return claimed

    async def update_claimed_job(self, job_id: str, worker_id: str, changes: dict[str, Any]) -> bool:
        unknown = set(changes) - _JOB_UPDATABLE_FIELDS
        if unknown:
            raise StoreConflictError(f"fields are not updatable: {sorted(unknown)}")
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != "processing" or job.lock_owner != worker_id:
                return False
            self.jobs[job_id] = job.model_copy(update=changes)
            return True

    async def renew_lock(self, job_id: str, worker_id: str, *, lock_seconds: float, now: datetime) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != "processing" or job.lock_owner != worker_id:
                return False
            job.lock_expires_at = now + timedelta(seconds=lock_seconds)
            return True

    async def release_locks(self, worker_id: str) -> int:
        async with self._lock:
            released = 0
            for job in self.jobs.values():
                if job.status == "processing" and job.lock_owner == worker_id:
                    job.status = "pending"
                    job.lock_owner = None
                    job.lock_expires_at = None
                    released += 1
            return released

    async def requeue_expired_jobs(self, *, now: datetime, limit: int) -> int:
        async with self._lock:
            expired = [job for job in self.jobs.values() if should_requeue(job, now=now)]
            expired.sort(key=lambda job: job.lock_expires_at or now)
            for job in expired[: max(1, limit)]:
                job.status = "pending"
                job.lock_owner = None
                job.lock_expires_at = None
                job.scheduled_for = now
            return len(expired[: max(1, limit)])

    async def cancel_job(self, job_id: str, *, now: datetime) -> QueueJob:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise StoreNotFoundError("job not found")
            if job.status != "pending":
                raise StoreConflictError(f"job is {job.status}; only pending jobs can be cancelled")
            job.status = "cancelled"
            job.completed_at = now
            return job.model_copy(deep=True)

    async def job_stats(self, *, now: datetime) -> dict[str, Any]:
        counts = {status: 0 for status in JOB_STATUSES}
        durations: list[float] = []
        completed_last_hour = 0
        oldest_pending: datetime | None = None
        for job in self.jobs.values():
            counts[job.status] += 1
            if job.status == "completed" and job.started_at and job.completed_at:
                durations.append((job.completed_at - job.started_at).total_seconds() * 1000)
                if job.completed_at >= now - timedelta(hours=1):
                    completed_last_hour += 1
            if job.status == "pending" and (oldest_pending is None or job.created_at < oldest_pending):
                oldest_pending = job.created_at
        return {
            "counts": counts,
            "avg_processing_ms": sum(durations) / len(durations) if durations else 0.0,
            "completed_last_hour": completed_last_hour,
            "oldest_pending_created_at": oldest_pending,
        }


def _matches_ordered_tokens(value: str, tokens: list[str]) -> bool:
    position = 0
    for token in tokens:
        found = value.find(token, position)
        if found < 0:
            return False
        position = found + len(token)
    return True


def _company_matches_tool(company: CompanyRecord, tool: ToolDetected) -> bool:
    if tool == "outreach":
        return company.uses_outreach
    if tool == "salesloft":
        return company.uses_salesloft
    if tool == "both":
        return company.uses_outreach and company.uses_salesloft
    return not company.has_tool_flags


def _merge_lists(*lists: list[str]) -> list[str]:
    seen: set[str] = set()
    merged: list[str] = []
    for items in lists:
        for item in items:
            if item not in seen:
                seen.add(item)
                merged.append(item)
    return merged
