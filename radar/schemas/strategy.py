from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

InsightKind = Literal["high_yield_pattern", "low_yield_anomaly", "cost_anomaly", "high_duplicate_rate"]


class PlatformHealth(BaseModel):
    platform: str
    is_healthy: bool = True
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    consecutive_failures: int = 0
    cooldown_until: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None


class SearchTermStrategy(BaseModel):
    term: str
    priority: int = Field(default=50, ge=0, le=100)
    last_run_at: datetime | None = None
    next_due_at: datetime | None = None
    refresh_interval_minutes: float = 1440.0
    yield_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    total_runs: int = 0
    avg_jobs_found: float = 0.0
    high_value_found: int = 0
    total_cost: float = 0.0
    platforms: dict[str, bool] = Field(default_factory=dict)


class Posting(BaseModel):
    platform: str
    company: str
    title: str
    location: str = "Remote"
    description: str = ""
    url: str = ""
    external_id: str | None = None

    @property
    def posting_id(self) -> str:
        return f"{self.platform}_{self.external_id}" if self.external_id else f"{self.platform}_{self.url}"


class ScrapeResult(BaseModel):
    term: str
    postings: list[Posting] = Field(default_factory=list)
    total_found: int = 0
    duplicates: int = 0
    known_companies: int = 0
    new_companies: int = 0
    platforms_attempted: list[str] = Field(default_factory=list)
    platforms_succeeded: list[str] = Field(default_factory=list)
    platform_counts: dict[str, int] = Field(default_factory=dict)
    yield_rate: float = 0.0
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0


class Insight(BaseModel):
    kind: InsightKind
    term: str
    message: str
    value: float
    score: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class PipelineResult(BaseModel):
    term: str
    skipped: bool = False
    reason: str | None = None
    scraped: int = 0
    deduplicated: int = 0
    classified: int = 0
    high_value_found: int = 0
    total_cost: float = 0.0
    processing_time_ms: float = 0.0
    insights: list[Insight] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
