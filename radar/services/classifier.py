from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
import hashlib
import logging
import re
from typing import Any

from radar.core.cache import TTLCache
from radar.core.errors import BudgetExceededError
from radar.core.rate_limit import RateLimiter
from radar.schemas.classification import (
    CachedClassification,
    ClassificationRequest,
    ClassificationResult,
    PreFilterResult,
    ProviderVerdict,
)
from radar.schemas.companies import ConfidenceLevel, ToolDetected
from radar.services.dedupe import normalize_company_name
from radar.services.providers import ClassificationProvider
from radar.services.store import Store

logger = logging.getLogger(__name__)

OUTREACH_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"outreach\.io",
        r"outreach platform",
        r"sales engagement.*outreach",
        r"using outreach",
        r"outreach sequences",
        r"outreach cadence",
        r"outreach experience",
        r"outreach certified",
        r"outreach admin",
        r"outreach prospecting",
    )
]
SALESLOFT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"salesloft",
        r"sales loft",
        r"salesloft platform",
        r"salesloft cadence",
        r"salesloft experience",
        r"using salesloft",
        r"salesloft sequences",
        r"salesloft campaigns",
        r"salesloft admin",
        r"salesloft certified",
    )
]
GENERIC_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"sales engagement platform",
        r"sales automation tool",
        r"sales cadence",
        r"email sequences",
        r"sales enablement",
        r"automated outreach",
        r"multi-channel engagement",
        r"sales acceleration",
    )
]
NEGATIVE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"preferred but not required",
        r"nice to have",
        r"bonus if",
        r"willing to train",
        r"no experience necessary",
        r"or similar",
        r"equivalent tool",
        r"any.*sales.*tool",
    )
]

STRONG_PATTERN_SCORE = 10
GENERIC_PATTERN_SCORE = 3
NEGATIVE_PATTERN_SCORE = 5

TOOL_KEYWORDS = (
    "outreach",
    "salesloft",
    "sales engagement",
    "cadence",
    "sequences",
    "automation",
    "crm",
    "salesforce",
    "hubspot",
)
_SKILL_RE = re.compile(r"(experience with|proficient in|knowledge of|familiar with|using)\s+([^,.]+)", re.IGNORECASE)
_MAX_KEYWORDS = 10

_PROVIDER_SCORES: dict[str, float] = {"high": 0.9, "medium": 0.6, "low": 0.3}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pre_filter(text: str) -> PreFilterResult:
    signals: list[str] = []
    outreach_score = _score_patterns(OUTREACH_PATTERNS, text, STRONG_PATTERN_SCORE, signals)
    salesloft_score = _score_patterns(SALESLOFT_PATTERNS, text, STRONG_PATTERN_SCORE, signals)
    generic_score = _score_patterns(GENERIC_PATTERNS, text, GENERIC_PATTERN_SCORE, signals)
    negative_score = sum(NEGATIVE_PATTERN_SCORE for pattern in NEGATIVE_PATTERNS if pattern.search(text))

    total = outreach_score + salesloft_score + generic_score
    confidence = min(max(total - negative_score, 0), 100) / 100

    tool: ToolDetected = "none"
    if outreach_score >= STRONG_PATTERN_SCORE and salesloft_score >= STRONG_PATTERN_SCORE:
        tool = "both"
    elif outreach_score >= STRONG_PATTERN_SCORE:
        tool = "outreach"
    elif salesloft_score >= STRONG_PATTERN_SCORE:
        tool = "salesloft"

    return PreFilterResult(
        tool_detected=tool,
        confidence=confidence,
        signals=signals,
        outreach_score=outreach_score,
        salesloft_score=salesloft_score,
    )


def extract_keywords(text: str) -> list[str]:
    keywords: list[str] = []
    lowered = text.lower()
    for keyword in TOOL_KEYWORDS:
        if keyword in lowered and keyword not in keywords:
            keywords.append(keyword)
    for match in _SKILL_RE.finditer(text):
        skill = match.group(2).strip().lower()
        if 3 < len(skill) < 30 and skill not in keywords:
            keywords.append(skill)
    return keywords[:_MAX_KEYWORDS]


def _score_patterns(patterns: list[re.Pattern[str]], text: str, weight: int, signals: list[str]) -> int:
    score = 0
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            score += weight
            signals.append(match.group(0))
    return score


class CostOptimizedClassifier:
    """Classifies postings for tool usage while keeping external spend down.

    Every request is answered, in order of preference, from the cache, from a
    confident pre-filter verdict, or from one external call per batch. A batch
    that would break the daily budget, or whose call fails for any reason,
    is answered from the pre-filter instead. ``analyze_batch`` never raises.
    """

    def __init__(
        self,
        store: Store,
        provider: ClassificationProvider | None,
        *,
        rate_limiter: RateLimiter | None = None,
        daily_budget: float = 10.0,
        batch_size: int = 10,
        batch_cost: float = 0.002,
        prefilter_accept: float = 0.9,
        cache_ttl_seconds: float = 7 * 24 * 3600,
        cache_max_entries: int | None = 10000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.daily_budget = daily_budget
        self.batch_size = max(1, batch_size)
        self.batch_cost = batch_cost
        self.prefilter_accept = prefilter_accept
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: TTLCache[str, ClassificationResult] = TTLCache(
            ttl_seconds=cache_ttl_seconds,
            max_entries=cache_max_entries,
            clock=lambda: self._clock().timestamp(),
        )
        self._daily_spend = 0.0
        self._budget_day: date = self._local_day()
        self._metrics: dict[str, float] = {
            "total_cost": 0.0,
            "api_calls": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "savings_from_cache": 0.0,
            "savings_from_prefilter": 0.0,
            "budget_skips": 0,
            "provider_failures": 0,
            "items_classified": 0,
        }
        if provider is None:
            logger.warning("classifier has no provider configured; running pre-filter only")

    @property
    def degraded(self) -> bool:
        return self.provider is None

    @property
    def per_item_cost(self) -> float:
        return self.batch_cost / self.batch_size

    @staticmethod
    def cache_key(company: str, description: str) -> str:
        digest = hashlib.md5(description.encode("utf-8")).hexdigest()
        return f"{normalize_company_name(company)}:{digest}"

    def pre_filter(self, text: str) -> PreFilterResult:
        return pre_filter(text)

    async def analyze_batch(self, requests: list[ClassificationRequest]) -> list[ClassificationResult]:
        results: list[ClassificationResult | None] = [None] * len(requests)
        pending: list[tuple[int, ClassificationRequest, PreFilterResult]] = []

        for index, request in enumerate(requests):
            key = self.cache_key(request.company, request.description)
            cached = self._cache.get(key)
            if cached is not None:
                self._metrics["cache_hits"] += 1
                self._metrics["savings_from_cache"] += self.per_item_cost
                results[index] = cached.model_copy(
                    update={"cached": True, "cost": 0.0, "source": "cache", "job_id": request.job_id}
                )
                continue

            self._metrics["cache_misses"] += 1
            verdict = self.pre_filter(request.description)
            if verdict.confidence >= self.prefilter_accept:
                result = ClassificationResult(
                    company=request.company,
                    job_id=request.job_id,
                    tool_detected=verdict.tool_detected,
                    confidence="high",
                    score=verdict.confidence,
                    signals=verdict.signals,
                    keywords=extract_keywords(request.description),
                    source="prefilter",
                )
                self._metrics["savings_from_prefilter"] += self.per_item_cost
                await self._remember(key, result)
                results[index] = result
            else:
                pending.append((index, request, verdict))

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            batch_results = await self._classify_batch(batch)
            for (index, _, _), result in zip(batch, batch_results):
                results[index] = result

        self._metrics["items_classified"] += len(requests)
        return [result for result in results if result is not None]

    async def load_cache(self) -> int:
        now = self._clock()
        try:
            rows = await self.store.load_classification_cache(now=now)
        except Exception:
            logger.exception("failed to load classification cache")
            return 0
        for row in rows:
            remaining = (row.expires_at - now).total_seconds()
            self._cache.set(row.cache_key, row.result, ttl_seconds=remaining)
        logger.info("loaded classification cache entries=%s", len(rows))
        return len(rows)

    async def cleanup_cache(self) -> dict[str, int]:
        memory_removed = self._cache.sweep()
        store_removed = await self.store.delete_expired_classifications(now=self._clock())
        logger.info("classification cache cleanup memory=%s store=%s", memory_removed, store_removed)
        return {"memory": memory_removed, "store": store_removed}

    def get_metrics(self) -> dict[str, Any]:
        self._roll_budget_day()
        api_calls = int(self._metrics["api_calls"])
        return {
            "total_cost": round(self._metrics["total_cost"], 6),
            "api_calls": api_calls,
            "cache_hits": int(self._metrics["cache_hits"]),
            "cache_misses": int(self._metrics["cache_misses"]),
            "avg_cost_per_call": round(self._metrics["total_cost"] / max(1, api_calls), 6),
            "savings_from_cache": round(self._metrics["savings_from_cache"], 6),
            "savings_from_prefilter": round(self._metrics["savings_from_prefilter"], 6),
            "budget_skips": int(self._metrics["budget_skips"]),
            "provider_failures": int(self._metrics["provider_failures"]),
            "items_classified": int(self._metrics["items_classified"]),
            "cache_size": len(self._cache),
            "daily_spend": round(self._daily_spend, 6),
            "daily_budget": self.daily_budget,
            "budget_remaining": round(self.daily_budget - self._daily_spend, 6),
            "degraded": self.degraded,
        }

    async def _classify_batch(
        self, batch: list[tuple[int, ClassificationRequest, PreFilterResult]]
    ) -> list[ClassificationResult]:
        provider = self.provider
        if provider is None:
            return [self._fallback(request, verdict) for _, request, verdict in batch]

        try:
            self._check_budget(self.batch_cost)
        except BudgetExceededError as exc:
            self._metrics["budget_skips"] += 1
            logger.warning("skipping external classification for %s items: %s", len(batch), exc)
            return [self._fallback(request, verdict) for _, request, verdict in batch]

        requests = [request for _, request, _ in batch]
        try:
            verdicts = await self._call_provider(provider, requests)
        except Exception:
            self._metrics["provider_failures"] += 1
            logger.exception("external classification failed for %s items; using pre-filter", len(batch))
            return [self._fallback(request, verdict) for _, request, verdict in batch]

        self._daily_spend += self.batch_cost
        self._metrics["total_cost"] += self.batch_cost
        self._metrics["api_calls"] += 1
        item_cost = self.batch_cost / len(batch)

        results: list[ClassificationResult] = []
        for position, request in enumerate(requests):
            verdict = verdicts[position] if position < len(verdicts) else ProviderVerdict()
            result = ClassificationResult(
                company=request.company,
                job_id=request.job_id,
                tool_detected=verdict.tool_detected,
                confidence=verdict.confidence,
                score=_PROVIDER_SCORES[verdict.confidence],
                signals=verdict.signals,
                keywords=verdict.keywords or extract_keywords(request.description),
                cost=item_cost,
                source="provider",
            )
            await self._remember(self.cache_key(request.company, request.description), result)
            results.append(result)
        return results

    async def _call_provider(
        self, provider: ClassificationProvider, requests: list[ClassificationRequest]
    ) -> list[ProviderVerdict]:
        if self.rate_limiter is None:
            return await provider.classify_batch(requests)
        return await self.rate_limiter.execute(lambda: provider.classify_batch(requests))

    def _fallback(self, request: ClassificationRequest, verdict: PreFilterResult) -> ClassificationResult:
        confidence: ConfidenceLevel = "medium" if verdict.confidence >= 0.5 else "low"
        return ClassificationResult(
            company=request.company,
            job_id=request.job_id,
            tool_detected=verdict.tool_detected,
            confidence=confidence,
            score=verdict.confidence,
            signals=verdict.signals,
            keywords=extract_keywords(request.description),
            source="fallback",
        )

    def _check_budget(self, cost: float) -> None:
        self._roll_budget_day()
        remaining = self.daily_budget - self._daily_spend
        if cost > remaining + 1e-12:
            raise BudgetExceededError(cost, remaining)

    def _roll_budget_day(self) -> None:
        today = self._local_day()
        if today != self._budget_day:
            logger.info("daily classification budget reset; previous spend=%.4f", self._daily_spend)
            self._daily_spend = 0.0
            self._budget_day = today

    def _local_day(self) -> date:
        return self._clock().astimezone().date()

    async def _remember(self, key: str, result: ClassificationResult) -> None:
        self._cache.set(key, result)
        try:
            await self.store.save_classification(
                CachedClassification(
                    cache_key=key,
                    result=result,
                    expires_at=self._clock() + timedelta(seconds=self.cache_ttl_seconds),
                )
            )
        except Exception:
            logger.exception("failed to persist classification cache entry key=%s", key)
