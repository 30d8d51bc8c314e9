from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from radar.core.errors import PayloadValidationError
from radar.schemas.companies import ToolDetected

JobKind = Literal["discover", "classify", "export", "revalidate"]
JobStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
Urgency = Literal["low", "normal", "high"]

JOB_KINDS: tuple[JobKind, ...] = ("discover", "classify", "export", "revalidate")
JOB_STATUSES: tuple[JobStatus, ...] = ("pending", "processing", "completed", "failed", "cancelled")


class DiscoverPayload(BaseModel):
    kind: Literal["discover"] = "discover"
    search_term: str = Field(min_length=1)
    max_items_per_platform: int | None = Field(default=None, ge=1, le=1000)
    force_refresh: bool = False
    urgency: Urgency = "normal"


class ClassifyPayload(BaseModel):
    kind: Literal["classify"] = "classify"
    company: str = Field(min_length=1)
    description: str = ""
    job_title: str | None = None
    is_new_company: bool = False
    urgency: Urgency = "normal"


class ExportPayload(BaseModel):
    kind: Literal["export"] = "export"
    tool: ToolDetected | None = None
    limit: int = Field(default=1000, ge=1, le=10000)
    urgency: Urgency = "normal"


class RevalidatePayload(BaseModel):
    kind: Literal["revalidate"] = "revalidate"
    company: str = Field(min_length=1)
    company_id: str | None = None
    description: str = ""
    urgency: Urgency = "normal"


JobPayload = Annotated[
    Union[DiscoverPayload, ClassifyPayload, ExportPayload, RevalidatePayload],
    Field(discriminator="kind"),
]

_PAYLOAD_ADAPTER: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_payload(kind: str, payload: dict[str, Any] | None) -> JobPayload:
    data = dict(payload or {})
    data["kind"] = kind
    try:
        return _PAYLOAD_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise PayloadValidationError(f"invalid payload for job kind {kind}: {exc}") from exc


class QueueJob(BaseModel):
    id: str
    kind: JobKind
    status: JobStatus = "pending"
    priority: int = Field(default=50, ge=0, le=100)
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime
    retry_count: int = 0
    max_retries: int = 3
    lock_owner: str | None = None
    lock_expires_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def typed_payload(self) -> JobPayload:
        return parse_payload(self.kind, self.payload)


class EnqueueRequest(BaseModel):
    kind: JobKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = Field(default=None, ge=0, le=100)
    max_retries: int | None = Field(default=None, ge=0, le=20)
    delay_seconds: float = Field(default=0.0, ge=0.0)


class EnqueueResponse(BaseModel):
    id: str
    kind: JobKind
    priority: int
    status: JobStatus
    scheduled_for: datetime
