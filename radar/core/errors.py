from __future__ import annotations

from datetime import datetime
from typing import Any


class RadarError(Exception):
    """Base error for the discovery pipeline."""


class ConfigurationError(RadarError):
    """Raised at startup when a required setting is missing or inconsistent."""


class ProviderError(RadarError):
    """Raised when a discovery or classification collaborator fails."""

    retryable = True

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ParseError(RadarError):
    """Raised when a collaborator response cannot be decoded."""


class QueueFullError(RadarError):
    code = "QUEUE_FULL"

    def __init__(self, current_size: int, max_size: int) -> None:
        super().__init__(f"queue is full ({current_size}/{max_size} pending)")
        self.current_size = current_size
        self.max_size = max_size

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "current_size": self.current_size, "max_size": self.max_size}


class CircuitOpenError(RadarError):
    def __init__(self, job_kind: str, cooldown_until: datetime | None) -> None:
        super().__init__(f"circuit open for job kind {job_kind}")
        self.job_kind = job_kind
        self.cooldown_until = cooldown_until


class BudgetExceededError(RadarError):
    def __init__(self, estimated_cost: float, remaining: float) -> None:
        super().__init__(f"estimated cost {estimated_cost:.4f} exceeds remaining daily budget {remaining:.4f}")
        self.estimated_cost = estimated_cost
        self.remaining = remaining


class PayloadValidationError(RadarError):
    """Raised when a job payload does not match the schema of its job kind."""
