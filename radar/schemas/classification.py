from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from radar.schemas.companies import ConfidenceLevel, ToolDetected

ResultSource = Literal["cache", "prefilter", "provider", "fallback"]


class ClassificationRequest(BaseModel):
    company: str
    description: str = ""
    job_title: str | None = None
    job_id: str | None = None


class PreFilterResult(BaseModel):
    tool_detected: ToolDetected
    confidence: float = Field(ge=0.0, le=1.0)
    signals: list[str] = Field(default_factory=list)
    outreach_score: int = 0
    salesloft_score: int = 0


class ProviderVerdict(BaseModel):
    tool_detected: ToolDetected = "none"
    confidence: ConfidenceLevel = "low"
    signals: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    company: str
    job_id: str | None = None
    tool_detected: ToolDetected
    confidence: ConfidenceLevel
    score: float = Field(ge=0.0, le=1.0)
    signals: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    cost: float = 0.0
    cached: bool = False
    source: ResultSource


class CachedClassification(BaseModel):
    """A persisted classification cache row."""

    cache_key: str
    result: ClassificationResult
    expires_at: datetime
