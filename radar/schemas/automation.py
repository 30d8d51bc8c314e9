from typing import Any

from pydantic import BaseModel, Field

from radar.schemas.strategy import Insight, PipelineResult


class ProcessTermRequest(BaseModel):
    term: str = Field(min_length=1)
    force_refresh: bool = False
    max_items_per_platform: int | None = Field(default=None, ge=1, le=1000)


class FullRunRequest(BaseModel):
    max_items_per_platform: int | None = Field(default=None, ge=1, le=1000)


class FullRunResponse(BaseModel):
    processed: int
    skipped: int
    failed: int
    results: list[PipelineResult]


class AutomationStatus(BaseModel):
    continuous_running: bool
    queue_running: bool
    classifier_degraded: bool
    due_terms: list[str]
    rate_limiters: list[dict[str, Any]]
    event_counts: dict[str, int]


class InsightsResponse(BaseModel):
    insights: list[Insight]
