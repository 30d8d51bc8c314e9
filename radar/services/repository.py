from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from radar.core.errors import QueueFullError
from radar.schemas.classification import CachedClassification, ClassificationResult
from radar.schemas.companies import CompanyRecord, CompanyUpsert, ToolDetected
from radar.schemas.jobs import JOB_STATUSES, QueueJob
from radar.schemas.strategy import ScrapeResult, SearchTermStrategy
from radar.services.store import (
    StoreConflictError,
    StoreFeatureUnavailableError,
    StoreNotFoundError,
    StoreUnavailableError,
)

_QUEUE_INSERT_LOCK_KEY = 7_240_311

_COMPANY_COLUMNS = """
  id::text as id,
  name,
  normalized_name,
  domain,
  uses_outreach,
  uses_salesloft,
  confidence_level,
  signal_strength,
  detection_signals,
  keywords,
  last_verified_at,
  times_seen,
  created_at,
  updated_at
"""

_JOB_COLUMNS = """
  id::text as id,
  kind,
  status,
  priority,
  payload,
  scheduled_for,
  retry_count,
  max_retries,
  lock_owner,
  lock_expires_at,
  result,
  error,
  created_at,
  started_at,
  completed_at
"""

_JSON_JOB_FIELDS = {"result"}
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

_TOOL_FILTERS: dict[str, str] = {
    "outreach": "uses_outreach = true",
    "salesloft": "uses_salesloft = true",
    "both": "uses_outreach = true and uses_salesloft = true",
    "none": "uses_outreach = false and uses_salesloft = false",
}


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_company(self, company_id: str) -> CompanyRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_COMPANY_COLUMNS} from companies where id = $1::uuid",
                company_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreNotFoundError("company not found") from exc
        if row is None:
            raise StoreNotFoundError("company not found")
        return self._company_row_to_model(row)

    async def find_company_by_normalized_name(self, normalized_name: str) -> CompanyRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_COMPANY_COLUMNS} from companies where normalized_name = $1",
            normalized_name,
        )
        return self._company_row_to_model(row) if row else None

    async def search_similar_companies(
        self, normalized_name: str, *, threshold: float, limit: int
    ) -> list[tuple[CompanyRecord, float]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_COMPANY_COLUMNS}, s.similarity
                from search_similar_companies($1, $2::real, $3::int) s
                join companies using (id)
                order by s.similarity desc
                """,
                normalized_name,
                threshold,
                limit,
            )
        except (pg_exc.UndefinedFunctionError, pg_exc.UndefinedObjectError) as exc:
            raise StoreFeatureUnavailableError("search_similar_companies is not installed") from exc
        return [(self._company_row_to_model(row), float(row["similarity"])) for row in rows]

    async def search_companies_by_pattern(self, tokens: list[str], *, limit: int) -> list[CompanyRecord]:
        if not tokens:
            return []
        pattern = "%" + "%".join(self._escape_like(token) for token in tokens) + "%"
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_COMPANY_COLUMNS}
            from companies
            where normalized_name like $1
            order by signal_strength desc, normalized_name asc
            limit $2
            """,
            pattern,
            limit,
        )
        return [self._company_row_to_model(row) for row in rows]

    async def find_companies_by_domain(self, domain: str, *, limit: int) -> list[CompanyRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_COMPANY_COLUMNS}
            from companies
            where lower(domain) = lower($1)
            order by signal_strength desc
            limit $2
            """,
            domain,
            limit,
        )
        return [self._company_row_to_model(row) for row in rows]

    async def list_companies(
        self,
        *,
        min_signal_strength: float | None = None,
        tool: ToolDetected | None = None,
        limit: int | None = None,
    ) -> list[CompanyRecord]:
        clauses = ["true"]
        params: list[Any] = []
        if min_signal_strength is not None:
            params.append(min_signal_strength)
            clauses.append(f"signal_strength > ${len(params)}")
        if tool is not None:
            clauses.append(_TOOL_FILTERS[tool])
        limit_sql = ""
        if limit is not None:
            params.append(limit)
            limit_sql = f"limit ${len(params)}"

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_COMPANY_COLUMNS}
            from companies
            where {" and ".join(clauses)}
            order by signal_strength desc, normalized_name asc
            {limit_sql}
            """,
            *params,
        )
        return [self._company_row_to_model(row) for row in rows]

    async def count_companies(self) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("select count(*) from companies"))

    async def upsert_company(self, company: CompanyUpsert) -> CompanyRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into companies (
              name,
              normalized_name,
              domain,
              uses_outreach,
              uses_salesloft,
              confidence_level,
              signal_strength,
              detection_signals,
              keywords,
              last_verified_at
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10)
            on conflict (normalized_name) do update
            set
              domain = coalesce(companies.domain, excluded.domain),
              uses_outreach = excluded.uses_outreach,
              uses_salesloft = excluded.uses_salesloft,
              confidence_level = excluded.confidence_level,
              signal_strength = excluded.signal_strength,
              detection_signals = excluded.detection_signals,
              keywords = excluded.keywords,
              last_verified_at = coalesce(excluded.last_verified_at, companies.last_verified_at),
              times_seen = companies.times_seen + 1,
              updated_at = now()
            returning {_COMPANY_COLUMNS}
            """,
            company.name,
            company.normalized_name,
            company.domain,
            company.uses_outreach,
            company.uses_salesloft,
            company.confidence_level,
            company.signal_strength,
            json.dumps(company.detection_signals),
            json.dumps(company.keywords),
            company.verified_at,
        )
        return self._company_row_to_model(row)

    async def merge_duplicate_companies(self, primary_id: str, duplicate_ids: list[str]) -> CompanyRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_COMPANY_COLUMNS}
                from merge_duplicate_companies($1::uuid, $2::uuid[])
                """,
                primary_id,
                duplicate_ids,
            )
        except pg_exc.UndefinedFunctionError as exc:
            raise StoreFeatureUnavailableError("merge_duplicate_companies is not installed") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreNotFoundError("company not found") from exc
        except pg_exc.RaiseError as exc:
            raise StoreNotFoundError(str(exc)) from exc
        if row is None:
            raise StoreNotFoundError("primary company not found")
        return self._company_row_to_model(row)

    async def list_strategies(self) -> list[SearchTermStrategy]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              term,
              priority,
              last_run_at,
              next_due_at,
              refresh_interval_minutes,
              yield_rate,
              success_rate,
              total_runs,
              avg_jobs_found,
              high_value_found,
              total_cost,
              platforms
            from search_term_strategies
            order by priority desc, term asc
            """
        )
        return [
            SearchTermStrategy(
                term=row["term"],
                priority=row["priority"],
                last_run_at=row["last_run_at"],
                next_due_at=row["next_due_at"],
                refresh_interval_minutes=float(row["refresh_interval_minutes"]),
                yield_rate=float(row["yield_rate"]),
                success_rate=float(row["success_rate"]),
                total_runs=row["total_runs"],
                avg_jobs_found=float(row["avg_jobs_found"]),
                high_value_found=row["high_value_found"],
                total_cost=float(row["total_cost"]),
                platforms=self._coerce_json_dict(row["platforms"]),
            )
            for row in rows
        ]

    async def save_strategy(self, strategy: SearchTermStrategy) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into search_term_strategies (
              term,
              priority,
              last_run_at,
              next_due_at,
              refresh_interval_minutes,
              yield_rate,
              success_rate,
              total_runs,
              avg_jobs_found,
              high_value_found,
              total_cost,
              platforms
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb)
            on conflict (term) do update
            set
              priority = excluded.priority,
              last_run_at = excluded.last_run_at,
              next_due_at = excluded.next_due_at,
              refresh_interval_minutes = excluded.refresh_interval_minutes,
              yield_rate = excluded.yield_rate,
              success_rate = excluded.success_rate,
              total_runs = excluded.total_runs,
              avg_jobs_found = excluded.avg_jobs_found,
              high_value_found = excluded.high_value_found,
              total_cost = excluded.total_cost,
              platforms = excluded.platforms,
              updated_at = now()
            """,
            strategy.term,
            strategy.priority,
            strategy.last_run_at,
            strategy.next_due_at,
            strategy.refresh_interval_minutes,
            strategy.yield_rate,
            strategy.success_rate,
            strategy.total_runs,
            strategy.avg_jobs_found,
            strategy.high_value_found,
            strategy.total_cost,
            json.dumps(strategy.platforms),
        )

    async def record_scrape_run(self, result: ScrapeResult, *, run_at: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into scrape_runs (
              term,
              run_at,
              total_found,
              new_companies,
              duplicates,
              platforms_attempted,
              platforms_succeeded,
              yield_rate,
              errors,
              duration_ms
            )
            values ($1, $2, $3, $4, $5, $6::text[], $7::text[], $8, $9::jsonb, $10)
            """,
            result.term,
            run_at,
            result.total_found,
            result.new_companies,
            result.duplicates,
            result.platforms_attempted,
            result.platforms_succeeded,
            result.yield_rate,
            json.dumps(result.errors),
            result.duration_ms,
        )

    async def list_scrape_runs(self, *, term: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              term,
              run_at,
              total_found,
              new_companies,
              duplicates,
              platforms_attempted,
              platforms_succeeded,
              yield_rate,
              errors,
              duration_ms
            from scrape_runs
            where ($1::text is null or term = $1)
            order by run_at desc
            limit $2
            """,
            term,
            limit,
        )
        return [
            {
                "term": row["term"],
                "run_at": row["run_at"],
                "total_found": row["total_found"],
                "new_companies": row["new_companies"],
                "duplicates": row["duplicates"],
                "platforms_attempted": list(row["platforms_attempted"] or []),
                "platforms_succeeded": list(row["platforms_succeeded"] or []),
                "yield_rate": float(row["yield_rate"]),
                "errors": self._coerce_json_list(row["errors"]),
                "duration_ms": float(row["duration_ms"]),
            }
            for row in rows
        ]

    async def get_processed_posting_ids(self, posting_ids: list[str]) -> set[str]:
        if not posting_ids:
            return set()
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select posting_id from processed_postings where posting_id = any($1::text[])",
            posting_ids,
        )
        return {row["posting_id"] for row in rows}

    async def mark_postings_processed(self, posting_ids: list[str], *, processed_at: datetime) -> None:
        if not posting_ids:
            return
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into processed_postings (posting_id, processed_at)
            select unnest($1::text[]), $2
            on conflict (posting_id) do nothing
            """,
            posting_ids,
            processed_at,
        )

    async def load_classification_cache(self, *, now: datetime) -> list[CachedClassification]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select cache_key, result, expires_at
            from classification_cache
            where expires_at > $1
            """,
            now,
        )
        entries: list[CachedClassification] = []
        for row in rows:
            payload = self._coerce_json_dict(row["result"])
            if not payload:
                continue
            entries.append(
                CachedClassification(
                    cache_key=row["cache_key"],
                    result=ClassificationResult.model_validate(payload),
                    expires_at=row["expires_at"],
                )
            )
        return entries

    async def save_classification(self, entry: CachedClassification) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into classification_cache (cache_key, result, expires_at)
            values ($1, $2::jsonb, $3)
            on conflict (cache_key) do update
            set result = excluded.result, expires_at = excluded.expires_at
            """,
            entry.cache_key,
            entry.result.model_dump_json(),
            entry.expires_at,
        )

    async def delete_expired_classifications(self, *, now: datetime) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "delete from classification_cache where expires_at <= $1 returning cache_key",
            now,
        )
        return len(rows)

    async def insert_job(self, job: QueueJob, *, max_pending: int | None = None) -> QueueJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    if max_pending is not None:
                        # Serializes concurrent producers so the pending count cannot go stale.
                        await conn.execute("select pg_advisory_xact_lock($1)", _QUEUE_INSERT_LOCK_KEY)
                        pending = await conn.fetchval("select count(*) from queue_jobs where status = 'pending'")
                        if pending >= max_pending:
                            raise QueueFullError(int(pending), max_pending)
                    row = await conn.fetchrow(
                        f"""
                        insert into queue_jobs (
                          id,
                          kind,
                          status,
                          priority,
                          payload,
                          scheduled_for,
                          retry_count,
                          max_retries,
                          created_at
                        )
                        values ($1::uuid, $2, $3, $4, $5::jsonb, $6, $7, $8, $9)
                        returning {_JOB_COLUMNS}
                        """,
                        job.id,
                        job.kind,
                        job.status,
                        job.priority,
                        json.dumps(job.payload),
                        job.scheduled_for,
                        job.retry_count,
                        job.max_retries,
                        job.created_at,
                    )
        except pg_exc.UniqueViolationError as exc:
            raise StoreConflictError("job already exists") from exc
        return self._job_row_to_model(row)

    async def get_job(self, job_id: str) -> QueueJob:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from queue_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreNotFoundError("job not found") from exc
        if row is None:
            raise StoreNotFoundError("job not found")
        return self._job_row_to_model(row)

    async def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[QueueJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from queue_jobs
            where ($1::text is null or status = $1)
            order by created_at desc
            limit $2
            """,
            status,
            limit,
        )
        return [self._job_row_to_model(row) for row in rows]

    async def count_jobs(self, *, status: str | None = None) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval(
            "select count(*) from queue_jobs where ($1::text is null or status = $1)",
            status,
        )
        return int(value)

    async def claim_jobs(self, *, worker_id: str, limit: int, lock_seconds: float, now: datetime) -> list[QueueJob]:
        if limit <= 0:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with next_jobs as (
                      select id as claim_id
                      from queue_jobs
                      where status = 'pending'
                        and scheduled_for <= $3
                      order by priority desc, created_at asc
                      limit $2
                      for update skip locked
                    )
                    update queue_jobs j
                    set
                      status = 'processing',
                      lock_owner = $1,
                      lock_expires_at = $3 + ($4::double precision * interval '1 second'),
                      started_at = $3
                    from next_jobs n
                    where j.id = n.claim_id
                    returning {_JOB_COLUMNS}
                    """,
                    worker_id,
                    limit,
                    now,
                    lock_seconds,
                )
        jobs = [self._job_row_to_model(row) for row in rows]
        jobs.sort(key=lambda job: (-job.priority, job.created_at))
        return jobs

    async def update_claimed_job(self, job_id: str, worker_id: str, changes: dict[str, Any]) -> bool:
        unknown = set(changes) - _JOB_UPDATABLE_FIELDS
        if unknown:
            raise StoreConflictError(f"fields are not updatable: {sorted(unknown)}")
        if not changes:
            return True

        assignments: list[str] = []
        params: list[Any] = [job_id, worker_id]
        for field_name, value in changes.items():
            if field_name in _JSON_JOB_FIELDS:
                params.append(json.dumps(value) if value is not None else None)
                assignments.append(f"{field_name} = ${len(params)}::jsonb")
            else:
                params.append(value)
                assignments.append(f"{field_name} = ${len(params)}")

        pool = await self._get_pool()
        result = await pool.execute(
            f"""
            update queue_jobs
            set {", ".join(assignments)}
            where id = $1::uuid and status = 'processing' and lock_owner = $2
            """,
            *params,
        )
        return self._affected_rows(result) == 1

    async def renew_lock(self, job_id: str, worker_id: str, *, lock_seconds: float, now: datetime) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update queue_jobs
            set lock_expires_at = $3 + ($4::double precision * interval '1 second')
            where id = $1::uuid and status = 'processing' and lock_owner = $2
            """,
            job_id,
            worker_id,
            now,
            lock_seconds,
        )
        return self._affected_rows(result) == 1

    async def release_locks(self, worker_id: str) -> int:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update queue_jobs
            set status = 'pending', lock_owner = null, lock_expires_at = null
            where status = 'processing' and lock_owner = $1
            """,
            worker_id,
        )
        return self._affected_rows(result)

    async def requeue_expired_jobs(self, *, now: datetime, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from queue_jobs
                      where status = 'processing'
                        and lock_expires_at is not null
                        and lock_expires_at <= $1
                      order by lock_expires_at asc
                      limit $2
                      for update skip locked
                    )
                    update queue_jobs j
                    set
                      status = 'pending',
                      lock_owner = null,
                      lock_expires_at = null,
                      scheduled_for = $1
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    now,
                    bounded_limit,
                )
                return len(rows)

    async def cancel_job(self, job_id: str, *, now: datetime) -> QueueJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update queue_jobs
                        set status = 'cancelled', completed_at = $2
                        where id = $1::uuid and status = 'pending'
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        now,
                    )
                    if not row:
                        status = await conn.fetchval("select status from queue_jobs where id = $1::uuid", job_id)
                        if status is None:
                            raise StoreNotFoundError("job not found")
                        raise StoreConflictError(f"job is {status}; only pending jobs can be cancelled")
                    return self._job_row_to_model(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreNotFoundError("job not found") from exc

    async def job_stats(self, *, now: datetime) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            count_rows = await conn.fetch("select status, count(*) as total from queue_jobs group by status")
            timing = await conn.fetchrow(
                """
                select
                  coalesce(avg(extract(epoch from (completed_at - started_at)) * 1000), 0) as avg_processing_ms,
                  count(*) filter (where completed_at >= $1) as completed_last_hour
                from queue_jobs
                where status = 'completed'
                  and started_at is not null
                  and completed_at is not null
                """,
                now - timedelta(hours=1),
            )
            oldest_pending = await conn.fetchval("select min(created_at) from queue_jobs where status = 'pending'")

        counts = {status: 0 for status in JOB_STATUSES}
        for row in count_rows:
            if row["status"] in counts:
                counts[row["status"]] = int(row["total"])
        return {
            "counts": counts,
            "avg_processing_ms": float(timing["avg_processing_ms"] or 0.0),
            "completed_last_hour": int(timing["completed_last_hour"] or 0),
            "oldest_pending_created_at": oldest_pending,
        }

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("RADAR_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @classmethod
    def _company_row_to_model(cls, row: asyncpg.Record) -> CompanyRecord:
        return CompanyRecord(
            id=row["id"],
            name=row["name"],
            normalized_name=row["normalized_name"],
            domain=row["domain"],
            uses_outreach=bool(row["uses_outreach"]),
            uses_salesloft=bool(row["uses_salesloft"]),
            confidence_level=row["confidence_level"],
            signal_strength=float(row["signal_strength"] or 0.0),
            detection_signals=cls._coerce_json_list(row["detection_signals"]),
            keywords=cls._coerce_json_list(row["keywords"]),
            last_verified_at=row["last_verified_at"],
            times_seen=row["times_seen"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _job_row_to_model(cls, row: asyncpg.Record) -> QueueJob:
        result = row["result"]
        return QueueJob(
            id=row["id"],
            kind=row["kind"],
            status=row["status"],
            priority=row["priority"],
            payload=cls._coerce_json_dict(row["payload"]),
            scheduled_for=row["scheduled_for"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            lock_owner=row["lock_owner"],
            lock_expires_at=row["lock_expires_at"],
            result=cls._coerce_json_dict(result) if result is not None else None,
            error=row["error"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value if isinstance(value, dict) else {}

    @staticmethod
    def _coerce_json_list(value: Any) -> list[str]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    @staticmethod
    def _escape_like(value: str) -> str:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

    @staticmethod
    def _affected_rows(status: str) -> int:
        # asyncpg returns command tags like "UPDATE 3"
        try:
            return int(status.rsplit(" ", 1)[-1])
        except (ValueError, IndexError):
            return 0
