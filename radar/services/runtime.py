from __future__ import annotations

from dataclasses import dataclass
from functools import partial
import logging
import socket
from uuid import uuid4

from starlette.requests import Request

from radar.core.config import Settings
from radar.core.errors import ConfigurationError
from radar.core.events import EventChannel
from radar.core.rate_limit import RateLimiter
from radar.services.classifier import CostOptimizedClassifier
from radar.services.dedupe import CompanyDeduplicator
from radar.services.engine import IntelligenceEngine
from radar.services.providers import (
    ApifyDiscoveryClient,
    ChatCompletionsClassifier,
    ClassificationProvider,
    DiscoveryProvider,
)
from radar.services.queue import SmartQueueManager
from radar.services.repository import PostgresRepository
from radar.services.scheduler import AdaptiveScheduler
from radar.services.store import InMemoryStore, Store, StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    store: Store
    events: EventChannel
    discovery_limiter: RateLimiter
    classifier_limiter: RateLimiter
    deduplicator: CompanyDeduplicator
    classifier: CostOptimizedClassifier
    scheduler: AdaptiveScheduler
    engine: IntelligenceEngine
    queue: SmartQueueManager

    async def initialize(self) -> None:
        await self.deduplicator.refresh_cache()
        await self.classifier.load_cache()
        await self.scheduler.load_strategies()
        await self.engine.load_history()

    async def close(self) -> None:
        self.engine.stop_continuous()
        if self.queue.running:
            await self.queue.stop()
        await self.store.close()


def build_store(settings: Settings) -> Store:
    if settings.store_backend == "memory":
        return InMemoryStore()
    if not settings.database_url:
        raise ConfigurationError("RADAR_DATABASE_URL is required when RADAR_STORE_BACKEND=postgres")
    return PostgresRepository(
        settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


def build_runtime(
    settings: Settings,
    *,
    store: Store | None = None,
    discovery: DiscoveryProvider | None = None,
    classification: ClassificationProvider | None = None,
) -> Runtime:
    """Wires every component from settings.

    Callers may hand in a store or collaborators of their own; anything not
    supplied is built from configuration.
    """
    store = store if store is not None else build_store(settings)

    if discovery is None:
        if not settings.discovery_api_token:
            raise ConfigurationError("RADAR_DISCOVERY_API_TOKEN is required")
        discovery = ApifyDiscoveryClient(
            settings.discovery_base_url,
            settings.discovery_api_token,
            timeout_seconds=settings.discovery_timeout_seconds,
        )

    if classification is None and settings.classifier_api_key:
        classification = ChatCompletionsClassifier(
            settings.classifier_base_url,
            settings.classifier_api_key,
            settings.classifier_model,
            timeout_seconds=settings.classifier_timeout_seconds,
        )
    if classification is None:
        logger.warning("RADAR_CLASSIFIER_API_KEY is not set; classification runs on the pre-filter only")

    events = EventChannel()
    discovery_limiter = RateLimiter(
        name="discovery",
        max_concurrent=settings.discovery_max_concurrent,
        min_interval_seconds=settings.discovery_min_interval_seconds,
        max_per_minute=settings.discovery_max_per_minute,
    )
    classifier_limiter = RateLimiter(
        name="classification",
        max_concurrent=settings.classifier_max_concurrent,
        min_interval_seconds=settings.classifier_min_interval_seconds,
        max_per_minute=settings.classifier_max_per_minute,
    )

    deduplicator = CompanyDeduplicator(
        store,
        similarity_threshold=settings.dedupe_similarity_threshold,
        cache_ttl_seconds=settings.dedupe_cache_ttl_seconds,
        seed_limit=settings.dedupe_cache_seed_limit,
        seed_min_signal=settings.dedupe_cache_seed_min_signal,
    )
    classifier = CostOptimizedClassifier(
        store,
        classification,
        rate_limiter=classifier_limiter,
        daily_budget=settings.classification_daily_budget,
        batch_size=settings.classification_batch_size,
        batch_cost=settings.classification_batch_cost,
        prefilter_accept=settings.classification_prefilter_accept,
        cache_ttl_seconds=settings.classification_cache_ttl_seconds,
        cache_max_entries=settings.classification_cache_max_entries,
    )
    scheduler = AdaptiveScheduler(
        store,
        discovery,
        deduplicator,
        rate_limiter=discovery_limiter,
        platforms=settings.discovery_platforms,
        min_interval_minutes=settings.scheduler_min_interval_minutes,
        max_interval_minutes=settings.scheduler_max_interval_minutes,
        default_interval_minutes=settings.scheduler_default_interval_minutes,
        platform_cooldown_seconds=settings.scheduler_platform_cooldown_seconds,
        max_consecutive_failures=settings.scheduler_max_consecutive_failures,
        min_success_rate=settings.scheduler_min_success_rate,
        high_yield_threshold=settings.scheduler_high_yield_threshold,
        low_yield_threshold=settings.scheduler_low_yield_threshold,
        inter_platform_delay_seconds=settings.scheduler_inter_platform_delay_seconds,
        max_items_per_platform=settings.scheduler_max_items_per_platform,
        high_value_terms=settings.scheduler_high_value_terms,
    )
    engine = IntelligenceEngine(
        store,
        scheduler,
        deduplicator,
        classifier,
        events,
        confidence_threshold=settings.engine_confidence_threshold,
        cost_threshold=settings.engine_cost_threshold,
        continuous_interval_minutes=settings.engine_continuous_interval_minutes,
    )
    queue = SmartQueueManager(
        store,
        events,
        worker_id=settings.worker_id or f"{socket.gethostname()}-{uuid4().hex[:8]}",
        max_concurrent=settings.queue_max_concurrent,
        max_queue_size=settings.queue_max_size,
        default_priority=settings.queue_default_priority,
        default_max_retries=settings.queue_default_max_retries,
        lock_timeout_seconds=settings.queue_lock_timeout_seconds,
        poll_interval_seconds=settings.queue_poll_interval_seconds,
        backoff_base_seconds=settings.queue_backoff_base_seconds,
        backoff_multiplier=settings.queue_backoff_multiplier,
        max_backoff_seconds=settings.queue_max_backoff_seconds,
        breaker_threshold=settings.queue_circuit_breaker_threshold,
        breaker_timeout_seconds=settings.queue_circuit_breaker_timeout_seconds,
        shutdown_timeout_seconds=settings.queue_shutdown_timeout_seconds,
        max_memory_percent=settings.queue_max_memory_percent,
        max_error_rate=settings.queue_max_error_rate,
        max_depth_ratio=settings.queue_max_depth_ratio,
        high_value_terms=settings.queue_high_value_terms,
    )

    runtime = Runtime(
        settings=settings,
        store=store,
        events=events,
        discovery_limiter=discovery_limiter,
        classifier_limiter=classifier_limiter,
        deduplicator=deduplicator,
        classifier=classifier,
        scheduler=scheduler,
        engine=engine,
        queue=queue,
    )

    # imported here: the executors reach back into the runtime for their collaborators
    from radar.jobs.executor import execute_job

    queue.handler = partial(execute_job, runtime=runtime)
    return runtime


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise StoreUnavailableError("runtime is not initialised")
    return runtime
