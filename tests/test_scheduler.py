from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from radar.schemas.companies import CompanyUpsert
from radar.schemas.strategy import Posting, ScrapeResult
from radar.services.dedupe import CompanyDeduplicator
from radar.services.scheduler import AdaptiveScheduler
from radar.services.store import InMemoryStore
from tests.fakes import FakeClock, FakeDiscovery


def _scheduler(store: InMemoryStore, clock: FakeClock, discovery: FakeDiscovery | None = None) -> AdaptiveScheduler:
    deduplicator = CompanyDeduplicator(store, clock=clock, monotonic=clock.monotonic)
    return AdaptiveScheduler(
        store,
        discovery or FakeDiscovery(),
        deduplicator,
        platforms=["indeed", "linkedin"],
        clock=clock,
        sleep=clock.sleep,
    )


def _posting(platform: str, company: str, title: str = "SDR Manager", external_id: str | None = None) -> Posting:
    return Posting(
        platform=platform,
        company=company,
        title=title,
        description="Build outbound motions",
        url=f"https://jobs.example/{platform}/{company}",
        external_id=external_id,
    )


def test_three_failures_mark_platform_unhealthy(store: InMemoryStore, clock: FakeClock) -> None:
    scheduler = _scheduler(store, clock)

    for _ in range(2):
        assert scheduler.record_platform_result("indeed", False, "timeout").is_healthy is True
    health = scheduler.record_platform_result("indeed", False, "timeout")

    assert health.is_healthy is False
    assert health.consecutive_failures == 3
    assert health.success_rate == pytest.approx(0.729)
    assert health.cooldown_until == clock.now + timedelta(minutes=30)

    clock.advance(31 * 60)
    recovered = scheduler.record_platform_result("indeed", True)
    assert recovered.is_healthy is True
    assert recovered.consecutive_failures == 0
    assert recovered.cooldown_until is None
    assert recovered.success_rate == pytest.approx(0.729 * 0.9 + 0.1)


def test_select_platforms_skips_cooling_platforms(store: InMemoryStore, clock: FakeClock) -> None:
    scheduler = _scheduler(store, clock)
    strategy = scheduler.default_strategy("SDR")
    for _ in range(3):
        scheduler.record_platform_result("indeed", False, "blocked")

    assert scheduler.select_platforms(strategy) == ["linkedin"]

    strategy.platforms["linkedin"] = False
    assert scheduler.select_platforms(strategy) == ["linkedin"]

    clock.advance(30 * 60)
    assert scheduler.select_platforms(strategy) == ["indeed"]


def test_select_platforms_never_empty(store: InMemoryStore, clock: FakeClock) -> None:
    scheduler = _scheduler(store, clock)
    strategy = scheduler.default_strategy("SDR")
    for _ in range(3):
        scheduler.record_platform_result("indeed", False)
    for _ in range(4):
        scheduler.record_platform_result("linkedin", False)

    assert scheduler.select_platforms(strategy) == ["indeed"]


def test_next_search_term_prefers_high_value_terms(store: InMemoryStore, clock: FakeClock) -> None:
    scheduler = _scheduler(store, clock)

    async def seed() -> None:
        await scheduler.get_or_create_strategy("Account Executive")
        await scheduler.get_or_create_strategy("Revenue Operations")
        later = await scheduler.get_or_create_strategy("SDR")
        later.next_due_at = clock.now + timedelta(hours=1)

    asyncio.run(seed())

    assert scheduler.score(scheduler.strategies["Revenue Operations"]) == pytest.approx((90 + 40 + 50) * 1.5)
    assert scheduler.score(scheduler.strategies["Account Executive"]) == pytest.approx(50 + 40 + 50)
    assert [row.term for row in scheduler.due_strategies()] == ["Revenue Operations", "Account Executive"]
    assert scheduler.get_next_search_term().term == "Revenue Operations"


def test_next_search_term_none_when_nothing_due(store: InMemoryStore, clock: FakeClock) -> None:
    scheduler = _scheduler(store, clock)
    assert scheduler.get_next_search_term() is None


def test_update_strategy_adapts_interval(store: InMemoryStore, clock: FakeClock) -> None:
    scheduler = _scheduler(store, clock)

    async def run(yield_rate: float):
        return await scheduler.update_strategy(
            "SDR",
            ScrapeResult(
                term="SDR",
                yield_rate=yield_rate,
                platforms_attempted=["indeed", "linkedin"],
                platforms_succeeded=["indeed"],
            ),
        )

    strategy = asyncio.run(run(1.0))
    assert strategy.yield_rate == pytest.approx(0.65)
    assert strategy.refresh_interval_minutes == pytest.approx(1080)
    assert strategy.success_rate == pytest.approx(0.5)
    assert strategy.next_due_at == clock.now + timedelta(minutes=1080)

    strategy.yield_rate = 0.05
    strategy = asyncio.run(run(0.0))
    assert strategy.yield_rate == pytest.approx(0.035)
    assert strategy.refresh_interval_minutes == pytest.approx(1620)
    assert len(store.scrape_runs) == 2
    assert store.strategies["SDR"].refresh_interval_minutes == pytest.approx(1620)


def test_interval_respects_bounds(store: InMemoryStore, clock: FakeClock) -> None:
    scheduler = _scheduler(store, clock)
    strategy = asyncio.run(scheduler.get_or_create_strategy("SDR"))
    strategy.refresh_interval_minutes = 70
    strategy.yield_rate = 1.0
    asyncio.run(scheduler.update_strategy("SDR", ScrapeResult(term="SDR", yield_rate=1.0)))
    assert strategy.refresh_interval_minutes == 60

    strategy.refresh_interval_minutes = 9000
    strategy.yield_rate = 0.0
    asyncio.run(scheduler.update_strategy("SDR", ScrapeResult(term="SDR", yield_rate=0.0)))
    assert strategy.refresh_interval_minutes == 10080


def test_scrape_with_strategy_filters_and_tracks_health(store: InMemoryStore, clock: FakeClock) -> None:
    asyncio.run(
        store.upsert_company(
            CompanyUpsert(
                name="Known Co",
                normalized_name="known",
                uses_outreach=True,
                confidence_level="high",
                signal_strength=0.9,
                verified_at=clock.now,
            )
        )
    )
    asyncio.run(store.mark_postings_processed(["indeed_seen-1"], processed_at=clock.now))
    discovery = FakeDiscovery(
        postings={
            "indeed": [
                _posting("indeed", "Acme", external_id="a-1"),
                _posting("indeed", "Known Co", external_id="k-1"),
                _posting("indeed", "Old Posting Inc", external_id="seen-1"),
            ],
            "linkedin": [
                _posting("linkedin", "Acme", external_id="a-2"),
                _posting("linkedin", "Globex", external_id="g-1"),
            ],
        }
    )
    scheduler = _scheduler(store, clock, discovery)
    started = clock.monotonic()

    result = asyncio.run(scheduler.scrape_with_strategy("SDR"))

    assert [call[1] for call in discovery.calls] == ["indeed", "linkedin"]
    assert clock.monotonic() - started == 5.0
    assert result.total_found == 5
    assert result.duplicates == 2
    assert result.known_companies == 1
    assert [posting.company for posting in result.postings] == ["Acme", "Globex"]
    assert result.new_companies == 2
    assert result.yield_rate == 1.0
    assert result.platforms_succeeded == ["indeed", "linkedin"]
    assert scheduler.strategies["SDR"].total_runs == 1


def test_scrape_records_platform_failure(store: InMemoryStore, clock: FakeClock) -> None:
    discovery = FakeDiscovery(
        postings={"linkedin": [_posting("linkedin", "Initech", external_id="i-1")]},
        failing={"indeed"},
    )
    scheduler = _scheduler(store, clock, discovery)

    result = asyncio.run(scheduler.scrape_with_strategy("SDR"))

    assert result.platforms_succeeded == ["linkedin"]
    assert result.errors == ["indeed: indeed unavailable"]
    assert result.yield_rate == 0.5
    assert scheduler.platform_health["indeed"].consecutive_failures == 1
    assert scheduler.strategies["SDR"].success_rate == 0.5
