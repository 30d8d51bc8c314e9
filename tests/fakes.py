from __future__ import annotations

from datetime import datetime, timedelta, timezone

from radar.core.config import Settings
from radar.schemas.classification import ClassificationRequest, ProviderVerdict
from radar.schemas.strategy import Posting
from radar.services.runtime import Runtime, build_runtime
from radar.services.store import InMemoryStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start
        self.elapsed = 0.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(max(0.0, seconds))


class FakeDiscovery:
    def __init__(self, postings: dict[str, list[Posting]] | None = None, failing: set[str] | None = None) -> None:
        self.postings = postings or {}
        self.failing = failing or set()
        self.calls: list[tuple[str, str, int]] = []

    async def search(self, search_term: str, platform: str, max_items: int) -> list[Posting]:
        self.calls.append((search_term, platform, max_items))
        if platform in self.failing:
            raise RuntimeError(f"{platform} unavailable")
        return list(self.postings.get(platform, []))[:max_items]


class FakeClassificationProvider:
    def __init__(self, verdict: ProviderVerdict | None = None, error: Exception | None = None) -> None:
        self.verdict = verdict or ProviderVerdict(tool_detected="outreach", confidence="high", signals=["outreach.io"])
        self.error = error
        self.batches: list[list[ClassificationRequest]] = []

    async def classify_batch(self, items: list[ClassificationRequest]) -> list[ProviderVerdict]:
        self.batches.append(list(items))
        if self.error is not None:
            raise self.error
        return [self.verdict.model_copy() for _ in items]


STRONG_OUTREACH = (
    "We run Outreach.io as our outreach platform; sales engagement through Outreach. "
    "Reps using Outreach build outreach sequences and outreach cadence. Outreach experience required, "
    "Outreach certified a plus, Outreach admin skills and Outreach prospecting."
)
AMBIGUOUS = "Experience with a sales engagement platform and email sequences."


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "otel_enabled": False,
        "store_backend": "memory",
        "discovery_min_interval_seconds": 0.0,
        "classifier_min_interval_seconds": 0.0,
        "scheduler_inter_platform_delay_seconds": 0.0,
        "queue_max_memory_percent": 100.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_runtime(discovery: FakeDiscovery | None = None, provider=None, **overrides: object) -> Runtime:
    return build_runtime(
        make_settings(**overrides),
        store=InMemoryStore(),
        discovery=discovery or FakeDiscovery(),
        classification=provider or FakeClassificationProvider(),
    )
