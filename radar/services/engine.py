from __future__ import annotations

import asyncio
from collections import Counter, deque
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any

from opentelemetry import trace

from radar.core.events import EventChannel
from radar.core.telemetry import bind_log_context
from radar.schemas.classification import ClassificationRequest, ClassificationResult
from radar.schemas.companies import CompanyUpsert
from radar.schemas.strategy import Insight, PipelineResult, Posting, SearchTermStrategy
from radar.services.classifier import CostOptimizedClassifier
from radar.services.dedupe import CompanyDeduplicator, extract_domain
from radar.services.scheduler import AdaptiveScheduler
from radar.services.store import Store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LOW_YIELD_DUE_FACTOR = 1.5
HIGH_YIELD_DUE_FACTOR = 0.7
INSIGHT_HIGH_YIELD = 0.5
INSIGHT_LOW_YIELD = 0.1
INSIGHT_DUPLICATE_RATE = 0.7
_INSIGHT_HISTORY = 200

_CONFIDENCE_WEIGHTS = {"high": 0.4, "medium": 0.2, "low": 0.1}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def signal_strength(result: ClassificationResult) -> float:
    strength = _CONFIDENCE_WEIGHTS.get(result.confidence, 0.1)
    strength += min(len(result.signals) * 0.1, 0.3)
    strength += min(len(result.keywords) * 0.05, 0.3)
    return min(strength, 1.0)


class IntelligenceEngine:
    """Runs the scrape, dedupe, classify and persist pipeline for search terms.

    ``orchestrate`` handles one term end to end; ``continuous_mode`` and
    ``run_full_cycle`` drive it over whichever terms the scheduler says are due.
    After every run the engine records insights and nudges its confidence and
    cost thresholds from what the run produced.
    """

    def __init__(
        self,
        store: Store,
        scheduler: AdaptiveScheduler,
        deduplicator: CompanyDeduplicator,
        classifier: CostOptimizedClassifier,
        events: EventChannel,
        *,
        confidence_threshold: float = 0.7,
        cost_threshold: float = 0.05,
        continuous_interval_minutes: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.deduplicator = deduplicator
        self.classifier = classifier
        self.events = events
        self.confidence_threshold = confidence_threshold
        self.cost_threshold = cost_threshold
        self.continuous_interval_minutes = continuous_interval_minutes
        self._clock = clock
        self._insights: deque[Insight] = deque(maxlen=_INSIGHT_HISTORY)
        self._tools: Counter[str] = Counter()
        self._confidence: Counter[str] = Counter()
        self._pipelines: Counter[str] = Counter()
        self._total_companies_found = 0
        self._last_result: PipelineResult | None = None
        self._stop_event = asyncio.Event()
        self._continuous_running = False

    @property
    def continuous_running(self) -> bool:
        return self._continuous_running

    async def load_history(self) -> None:
        for company in await self.store.list_companies():
            if company.has_tool_flags:
                self._tools[company.tool_detected] += 1
                self._total_companies_found += 1
            if company.confidence_level:
                self._confidence[company.confidence_level] += 1

    def should_scrape(self, term: str, *, force_refresh: bool = False, now: datetime | None = None) -> bool:
        if force_refresh:
            return True
        strategy = self.scheduler.strategies.get(term)
        if strategy is None or strategy.last_run_at is None:
            return True

        factor = 1.0
        if strategy.yield_rate < INSIGHT_LOW_YIELD:
            factor = LOW_YIELD_DUE_FACTOR
        elif strategy.yield_rate > INSIGHT_HIGH_YIELD:
            factor = HIGH_YIELD_DUE_FACTOR
        due_at = strategy.last_run_at + timedelta(minutes=strategy.refresh_interval_minutes * factor)
        return (now or self._clock()) >= due_at

    def next_runnable_term(self, now: datetime | None = None) -> SearchTermStrategy | None:
        """Highest-scoring due term whose yield-adjusted refresh window has also elapsed."""
        now = now or self._clock()
        for strategy in self.scheduler.due_strategies(now):
            if self.should_scrape(strategy.term, now=now):
                return strategy
        return None

    async def orchestrate(
        self,
        term: str,
        *,
        force_refresh: bool = False,
        max_items_per_platform: int | None = None,
    ) -> PipelineResult:
        started = time.perf_counter()
        with tracer.start_as_current_span("engine.orchestrate") as span, bind_log_context(search_term=term):
            span.set_attribute("radar.search_term", term)
            if not self.should_scrape(term, force_refresh=force_refresh):
                self._pipelines["skipped"] += 1
                logger.info("skipping term=%s; not due yet", term)
                return PipelineResult(term=term, skipped=True, reason="not due")

            try:
                scrape = await self.scheduler.scrape_with_strategy(term, max_items_per_platform=max_items_per_platform)
                candidates = self._unique_candidates(scrape.postings)
                results = await self.classify_and_persist(
                    [
                        ClassificationRequest(
                            company=posting.company,
                            description=posting.description,
                            job_title=posting.title,
                            job_id=posting.posting_id,
                        )
                        for posting in candidates
                    ]
                )
                await self.scheduler.mark_processed(scrape.postings)

                pipeline = PipelineResult(
                    term=term,
                    scraped=scrape.total_found,
                    deduplicated=len(candidates),
                    classified=len(results),
                    high_value_found=sum(1 for result in results if result.tool_detected != "none"),
                    total_cost=round(sum(result.cost for result in results), 6),
                    errors=list(scrape.errors),
                )
                await self._record_term_value(term, pipeline)
                pipeline.insights = self.generate_insights(pipeline)
                self.adapt_thresholds(pipeline)
            except Exception as exc:
                self._pipelines["failed"] += 1
                span.record_exception(exc)
                self.events.publish("pipeline:failed", term=term, error=str(exc))
                logger.exception("pipeline failed term=%s", term)
                raise

            pipeline.processing_time_ms = round((time.perf_counter() - started) * 1000, 3)
            self._pipelines["completed"] += 1
            self._last_result = pipeline
            span.set_attribute("radar.high_value_found", pipeline.high_value_found)
            self.events.publish(
                "pipeline:completed",
                term=term,
                scraped=pipeline.scraped,
                high_value_found=pipeline.high_value_found,
                total_cost=pipeline.total_cost,
            )
            logger.info(
                "pipeline completed term=%s scraped=%s unique=%s classified=%s high_value=%s cost=%.4f",
                term,
                pipeline.scraped,
                pipeline.deduplicated,
                pipeline.classified,
                pipeline.high_value_found,
                pipeline.total_cost,
            )
            return pipeline

    async def classify_and_persist(self, requests: list[ClassificationRequest]) -> list[ClassificationResult]:
        if not requests:
            return []
        results = await self.classifier.analyze_batch(requests)
        for result in results:
            self._confidence[result.confidence] += 1
            if result.tool_detected == "none":
                continue
            self._tools[result.tool_detected] += 1
            self._total_companies_found += 1
            await self.persist_result(result)
        return results

    async def persist_result(self, result: ClassificationResult) -> None:
        normalized = self.deduplicator.normalize(result.company)
        record = await self.store.upsert_company(
            CompanyUpsert(
                name=result.company,
                normalized_name=normalized,
                domain=_domain_hint(result.company),
                uses_outreach=result.tool_detected in ("outreach", "both"),
                uses_salesloft=result.tool_detected in ("salesloft", "both"),
                confidence_level=result.confidence,
                signal_strength=signal_strength(result),
                detection_signals=result.signals,
                keywords=result.keywords,
                verified_at=self._clock(),
            )
        )
        self.deduplicator.remember(record)

    async def revalidate_company(self, company: str, description: str) -> ClassificationResult:
        results = await self.classifier.analyze_batch([ClassificationRequest(company=company, description=description)])
        result = results[0]
        self._confidence[result.confidence] += 1
        if result.tool_detected != "none":
            self._tools[result.tool_detected] += 1
        # a "none" verdict still refreshes the ledger row so stale flags are cleared
        await self.persist_result(result)
        return result

    def generate_insights(self, pipeline: PipelineResult) -> list[Insight]:
        insights: list[Insight] = []
        term = pipeline.term
        efficiency = pipeline.high_value_found / pipeline.classified if pipeline.classified else 0.0

        if efficiency > INSIGHT_HIGH_YIELD:
            insights.append(
                Insight(
                    kind="high_yield_pattern",
                    term=term,
                    message=f'"{term}" is yielding {efficiency:.1%} tool-using companies; scrape it more often',
                    value=efficiency,
                    score=0.9,
                )
            )
        elif efficiency < INSIGHT_LOW_YIELD:
            insights.append(
                Insight(
                    kind="low_yield_anomaly",
                    term=term,
                    message=f'"{term}" is yielding {efficiency:.1%} tool-using companies; reduce frequency or refine the term',
                    value=efficiency,
                    score=0.8,
                )
            )

        cost_per_value = pipeline.total_cost / pipeline.high_value_found if pipeline.high_value_found else pipeline.total_cost
        if cost_per_value > self.cost_threshold * 2:
            insights.append(
                Insight(
                    kind="cost_anomaly",
                    term=term,
                    message=f"cost per valuable company ${cost_per_value:.3f} is above twice the threshold",
                    value=cost_per_value,
                    score=0.9,
                    metadata={"cost_threshold": self.cost_threshold},
                )
            )

        duplicate_rate = 1 - pipeline.deduplicated / pipeline.scraped if pipeline.scraped else 0.0
        if duplicate_rate > INSIGHT_DUPLICATE_RATE:
            insights.append(
                Insight(
                    kind="high_duplicate_rate",
                    term=term,
                    message=f"{duplicate_rate:.1%} of scraped postings were duplicates or already known",
                    value=duplicate_rate,
                    score=0.8,
                )
            )

        self._insights.extend(insights)
        return insights

    def adapt_thresholds(self, pipeline: PipelineResult) -> None:
        efficiency = pipeline.high_value_found / pipeline.classified if pipeline.classified else 0.0
        if pipeline.high_value_found > 0:
            cost_per_value = pipeline.total_cost / pipeline.high_value_found
            self.cost_threshold = self.cost_threshold * 0.8 + cost_per_value * 0.2

        if efficiency < 0.2:
            self.confidence_threshold = min(0.9, self.confidence_threshold + 0.05)
        elif efficiency > 0.5:
            self.confidence_threshold = max(0.5, self.confidence_threshold - 0.05)

    def get_insights(self, limit: int = 10) -> list[Insight]:
        ranked = sorted(self._insights, key=lambda insight: -insight.score)
        return ranked[:limit]

    async def run_full_cycle(self, *, max_items_per_platform: int | None = None) -> list[PipelineResult]:
        results: list[PipelineResult] = []
        for strategy in self.scheduler.due_strategies():
            try:
                results.append(
                    await self.orchestrate(strategy.term, max_items_per_platform=max_items_per_platform)
                )
            except Exception as exc:
                results.append(PipelineResult(term=strategy.term, reason="failed", errors=[str(exc)]))
        return results

    async def continuous_mode(self, interval_minutes: float | None = None) -> None:
        interval = (interval_minutes or self.continuous_interval_minutes) * 60
        self._continuous_running = True
        self._stop_event.clear()
        logger.info("continuous mode started interval_min=%.1f", interval / 60)
        try:
            while not self._stop_event.is_set():
                strategy = self.next_runnable_term()
                if strategy is not None:
                    try:
                        await self.orchestrate(strategy.term)
                    except Exception:
                        logger.exception("continuous run failed term=%s", strategy.term)
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        finally:
            self._continuous_running = False
            logger.info("continuous mode stopped")

    def stop_continuous(self) -> None:
        self._stop_event.set()

    def get_metrics(self) -> dict[str, Any]:
        platform_performance: dict[str, dict[str, Any]] = {}
        for platform, health in self.scheduler.platform_health.items():
            platform_performance[platform] = {
                "is_healthy": health.is_healthy,
                "success_rate": round(health.success_rate, 4),
                "consecutive_failures": health.consecutive_failures,
            }
        return {
            "total_companies_found": self._total_companies_found,
            "tools_detected": {tool: self._tools.get(tool, 0) for tool in ("outreach", "salesloft", "both")},
            "confidence_distribution": {level: self._confidence.get(level, 0) for level in ("high", "medium", "low")},
            "platform_performance": platform_performance,
            "thresholds": {
                "confidence": round(self.confidence_threshold, 4),
                "cost": round(self.cost_threshold, 6),
            },
            "pipelines": {
                "completed": self._pipelines.get("completed", 0),
                "skipped": self._pipelines.get("skipped", 0),
                "failed": self._pipelines.get("failed", 0),
            },
            "last_result": self._last_result.model_dump(mode="json") if self._last_result else None,
            "classification": self.classifier.get_metrics(),
        }

    def _unique_candidates(self, postings: list[Posting]) -> list[Posting]:
        unique: dict[str, Posting] = {}
        for posting in postings:
            normalized = self.deduplicator.normalize(posting.company)
            if normalized not in unique:
                unique[normalized] = posting
        return list(unique.values())

    async def _record_term_value(self, term: str, pipeline: PipelineResult) -> None:
        strategy = await self.scheduler.get_or_create_strategy(term)
        strategy.high_value_found += pipeline.high_value_found
        strategy.total_cost = round(strategy.total_cost + pipeline.total_cost, 6)
        await self.store.save_strategy(strategy)


def _domain_hint(company: str) -> str | None:
    if "." not in company:
        return None
    return extract_domain(company)
