from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ToolDetected = Literal["none", "outreach", "salesloft", "both"]
ConfidenceLevel = Literal["high", "medium", "low"]
MatchType = Literal["exact", "fuzzy", "domain"]


class CompanyRecord(BaseModel):
    id: str
    name: str
    normalized_name: str
    domain: str | None = None
    uses_outreach: bool = False
    uses_salesloft: bool = False
    confidence_level: ConfidenceLevel | None = None
    signal_strength: float = Field(default=0.0, ge=0.0, le=1.0)
    detection_signals: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    last_verified_at: datetime | None = None
    times_seen: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_tool_flags(self) -> bool:
        return self.uses_outreach or self.uses_salesloft

    @property
    def tool_detected(self) -> ToolDetected:
        if self.uses_outreach and self.uses_salesloft:
            return "both"
        if self.uses_outreach:
            return "outreach"
        if self.uses_salesloft:
            return "salesloft"
        return "none"


class CompanyUpsert(BaseModel):
    """Write model for the ledger; keyed by ``normalized_name``."""

    name: str
    normalized_name: str
    domain: str | None = None
    uses_outreach: bool = False
    uses_salesloft: bool = False
    confidence_level: ConfidenceLevel | None = None
    signal_strength: float = Field(default=0.0, ge=0.0, le=1.0)
    detection_signals: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    verified_at: datetime | None = None


class CompanyMatch(BaseModel):
    company: CompanyRecord
    confidence: float = Field(ge=0.0, le=1.0)
    match_type: MatchType


class DeduplicationResult(BaseModel):
    is_known: bool
    should_recheck: bool
    match: CompanyMatch | None = None
    reason: str
