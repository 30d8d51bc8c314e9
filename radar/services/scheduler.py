from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from functools import partial
import logging
import time
from typing import Any

from opentelemetry import trace

from radar.core.rate_limit import RateLimiter
from radar.schemas.strategy import PlatformHealth, Posting, ScrapeResult, SearchTermStrategy
from radar.services.dedupe import CompanyDeduplicator
from radar.services.providers import DiscoveryProvider
from radar.services.store import Store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TERM_PRIORITIES = {
    "Revenue Operations": 90,
    "Sales Development Manager": 85,
    "SDR": 80,
    "BDR": 80,
    "Sales Development Representative": 75,
    "Business Development Representative": 75,
    "Sales Operations": 70,
    "Sales Manager": 60,
    "Account Executive": 50,
}
DEFAULT_PRIORITY = 50
HIGH_VALUE_MULTIPLIER = 1.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdaptiveScheduler:
    """Decides which search term to scrape next, where, and how often.

    Each platform carries a healthy/unhealthy state driven by scrape outcomes.
    Each search term carries a strategy whose refresh interval shrinks while
    the term keeps producing new companies and grows while it does not.
    """

    def __init__(
        self,
        store: Store,
        discovery: DiscoveryProvider,
        deduplicator: CompanyDeduplicator,
        *,
        rate_limiter: RateLimiter | None = None,
        platforms: list[str] | None = None,
        min_interval_minutes: float = 60.0,
        max_interval_minutes: float = 10080.0,
        default_interval_minutes: float = 1440.0,
        platform_cooldown_seconds: float = 1800.0,
        max_consecutive_failures: int = 3,
        min_success_rate: float = 0.3,
        high_yield_threshold: float = 0.3,
        low_yield_threshold: float = 0.1,
        inter_platform_delay_seconds: float = 5.0,
        max_items_per_platform: int = 50,
        high_value_terms: list[str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.discovery = discovery
        self.deduplicator = deduplicator
        self.rate_limiter = rate_limiter
        self.platforms = list(platforms or ["indeed", "linkedin"])
        self.min_interval_minutes = min_interval_minutes
        self.max_interval_minutes = max_interval_minutes
        self.default_interval_minutes = default_interval_minutes
        self.platform_cooldown_seconds = platform_cooldown_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self.min_success_rate = min_success_rate
        self.high_yield_threshold = high_yield_threshold
        self.low_yield_threshold = low_yield_threshold
        self.inter_platform_delay_seconds = inter_platform_delay_seconds
        self.max_items_per_platform = max_items_per_platform
        self.high_value_terms = set(
            high_value_terms
            if high_value_terms is not None
            else ["Revenue Operations", "Sales Development Manager", "Sales Manager"]
        )
        self._clock = clock
        self._sleep = sleep
        self.platform_health: dict[str, PlatformHealth] = {
            platform: PlatformHealth(platform=platform) for platform in self.platforms
        }
        self.strategies: dict[str, SearchTermStrategy] = {}

    async def load_strategies(self, *, seed_default_terms: bool = True) -> int:
        for strategy in await self.store.list_strategies():
            self.strategies[strategy.term] = strategy
        if seed_default_terms:
            for term in DEFAULT_TERM_PRIORITIES:
                if term not in self.strategies:
                    await self.get_or_create_strategy(term)
        logger.info("loaded search term strategies: %s", len(self.strategies))
        return len(self.strategies)

    async def get_or_create_strategy(self, term: str) -> SearchTermStrategy:
        strategy = self.strategies.get(term)
        if strategy is None:
            strategy = self.default_strategy(term)
            self.strategies[term] = strategy
            await self.store.save_strategy(strategy)
        return strategy

    def default_strategy(self, term: str) -> SearchTermStrategy:
        return SearchTermStrategy(
            term=term,
            priority=DEFAULT_TERM_PRIORITIES.get(term, DEFAULT_PRIORITY),
            next_due_at=self._clock(),
            refresh_interval_minutes=self.default_interval_minutes,
            yield_rate=0.5,
            success_rate=1.0,
            platforms={platform: True for platform in self.platforms},
        )

    def record_platform_result(self, platform: str, success: bool, error: str | None = None) -> PlatformHealth:
        health = self.platform_health.setdefault(platform, PlatformHealth(platform=platform))
        now = self._clock()
        if success:
            health.consecutive_failures = 0
            health.success_rate = min(1.0, health.success_rate * 0.9 + 0.1)
            health.is_healthy = True
            health.cooldown_until = None
            health.last_success_at = now
            return health

        health.consecutive_failures += 1
        health.success_rate = health.success_rate * 0.9
        health.last_failure_at = now
        health.last_error = error
        if health.consecutive_failures >= self.max_consecutive_failures or health.success_rate < self.min_success_rate:
            health.is_healthy = False
            health.cooldown_until = now + timedelta(seconds=self.platform_cooldown_seconds)
            logger.warning(
                "platform marked unhealthy platform=%s failures=%s success_rate=%.3f",
                platform,
                health.consecutive_failures,
                health.success_rate,
            )
        return health

    def select_platforms(self, strategy: SearchTermStrategy) -> list[str]:
        now = self._clock()
        selected = [
            platform
            for platform in self.platforms
            if strategy.platforms.get(platform, True) and self._platform_available(platform, now)
        ]
        if selected:
            return selected
        best = max(self.platforms, key=lambda platform: self.platform_health[platform].success_rate)
        return [best]

    def score(self, strategy: SearchTermStrategy, now: datetime | None = None) -> float:
        now = now or self._clock()
        interval = max(strategy.refresh_interval_minutes, 1e-9)
        if strategy.last_run_at is None:
            time_factor = 2.0
        else:
            minutes_since = (now - strategy.last_run_at).total_seconds() / 60
            time_factor = min(minutes_since / interval, 2.0)
        value = strategy.priority + time_factor * 20 + strategy.yield_rate * 100
        value *= strategy.success_rate
        if strategy.term in self.high_value_terms:
            value *= HIGH_VALUE_MULTIPLIER
        return value

    def due_strategies(self, now: datetime | None = None) -> list[SearchTermStrategy]:
        now = now or self._clock()
        due = [row for row in self.strategies.values() if row.next_due_at is None or row.next_due_at <= now]
        return sorted(due, key=lambda row: (-self.score(row, now), row.term))

    def get_next_search_term(self) -> SearchTermStrategy | None:
        due = self.due_strategies()
        return due[0] if due else None

    async def update_strategy(self, term: str, result: ScrapeResult) -> SearchTermStrategy:
        strategy = await self.get_or_create_strategy(term)
        now = self._clock()
        attempted = len(result.platforms_attempted)

        strategy.last_run_at = now
        strategy.total_runs += 1
        strategy.avg_jobs_found = strategy.avg_jobs_found * 0.8 + result.total_found * 0.2
        strategy.yield_rate = _clamp(strategy.yield_rate * 0.7 + result.yield_rate * 0.3)
        strategy.success_rate = _clamp(len(result.platforms_succeeded) / max(1, attempted))

        if strategy.yield_rate > self.high_yield_threshold:
            strategy.refresh_interval_minutes = max(self.min_interval_minutes, strategy.refresh_interval_minutes * 0.75)
        elif strategy.yield_rate < self.low_yield_threshold:
            strategy.refresh_interval_minutes = min(self.max_interval_minutes, strategy.refresh_interval_minutes * 1.5)
        strategy.next_due_at = now + timedelta(minutes=strategy.refresh_interval_minutes)

        await self.store.save_strategy(strategy)
        await self.store.record_scrape_run(result, run_at=now)
        logger.info(
            "strategy updated term=%s yield=%.3f interval_min=%.0f next_due=%s",
            term,
            strategy.yield_rate,
            strategy.refresh_interval_minutes,
            strategy.next_due_at.isoformat(),
        )
        return strategy

    async def scrape_with_strategy(
        self,
        term: str,
        *,
        max_items_per_platform: int | None = None,
        force_all_platforms: bool = False,
    ) -> ScrapeResult:
        started = time.perf_counter()
        strategy = await self.get_or_create_strategy(term)
        platforms = list(self.platforms) if force_all_platforms else self.select_platforms(strategy)
        max_items = max_items_per_platform or self.max_items_per_platform

        result = ScrapeResult(term=term, platforms_attempted=platforms)
        scraped: list[Posting] = []
        for position, platform in enumerate(platforms):
            with tracer.start_as_current_span("scheduler.scrape_platform") as span:
                span.set_attribute("radar.platform", platform)
                span.set_attribute("radar.search_term", term)
                try:
                    postings = await self._search(term, platform, max_items)
                except Exception as exc:
                    logger.exception("scrape failed platform=%s term=%s", platform, term)
                    result.errors.append(f"{platform}: {exc}")
                    result.platform_counts[platform] = 0
                    self.record_platform_result(platform, False, str(exc))
                else:
                    span.set_attribute("radar.postings", len(postings))
                    scraped.extend(postings)
                    result.platforms_succeeded.append(platform)
                    result.platform_counts[platform] = len(postings)
                    self.record_platform_result(platform, True)

            if position < len(platforms) - 1 and self.inter_platform_delay_seconds > 0:
                await self._sleep(self.inter_platform_delay_seconds)

        result.total_found = len(scraped)
        await self._filter_postings(result, scraped)
        result.yield_rate = _clamp(result.new_companies / len(platforms)) if platforms else 0.0
        result.duration_ms = (time.perf_counter() - started) * 1000
        await self.update_strategy(term, result)
        return result

    async def mark_processed(self, postings: list[Posting]) -> None:
        if postings:
            await self.store.mark_postings_processed(
                [posting.posting_id for posting in postings],
                processed_at=self._clock(),
            )

    async def get_stats(self) -> dict[str, Any]:
        top_terms = sorted(self.strategies.values(), key=lambda row: (-row.yield_rate, row.term))[:5]
        return {
            "platform_health": [health.model_dump(mode="json") for health in self.platform_health.values()],
            "top_terms": [row.model_dump(mode="json") for row in top_terms],
            "strategies": len(self.strategies),
            "due_now": len(self.due_strategies()),
            "recent_runs": await self.store.list_scrape_runs(limit=10),
        }

    async def _search(self, term: str, platform: str, max_items: int) -> list[Posting]:
        call = partial(self.discovery.search, term, platform, max_items)
        if self.rate_limiter is None:
            return await call()
        return await self.rate_limiter.execute(call)

    async def _filter_postings(self, result: ScrapeResult, postings: list[Posting]) -> None:
        processed = await self.store.get_processed_posting_ids([posting.posting_id for posting in postings])
        seen_signatures: set[str] = set()
        new_companies: set[str] = set()

        for posting in postings:
            signature = f"{posting.company.lower()}_{posting.title.lower()}"
            if signature in seen_signatures or posting.posting_id in processed:
                result.duplicates += 1
                continue
            seen_signatures.add(signature)

            verdict = await self.deduplicator.deduplicate(posting.company)
            if verdict.is_known and not verdict.should_recheck:
                result.known_companies += 1
                continue
            if not verdict.is_known:
                new_companies.add(self.deduplicator.normalize(posting.company))
            result.postings.append(posting)

        result.new_companies = len(new_companies)

    def _platform_available(self, platform: str, now: datetime) -> bool:
        health = self.platform_health.get(platform)
        if health is None:
            return False
        if health.is_healthy:
            return True
        return health.cooldown_until is not None and health.cooldown_until <= now


def _clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))
