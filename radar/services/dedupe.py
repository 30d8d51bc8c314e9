from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from functools import lru_cache
import logging
import re
import time
from typing import Any

from rapidfuzz.distance import Levenshtein

from radar.core.cache import TTLCache
from radar.schemas.companies import CompanyMatch, CompanyRecord, DeduplicationResult
from radar.services.store import Store, StoreFeatureUnavailableError

logger = logging.getLogger(__name__)

COMPANY_SUFFIXES = (
    # legal forms
    "inc",
    "incorporated",
    "corp",
    "corporation",
    "llc",
    "ltd",
    "limited",
    "co",
    "company",
    "group",
    "holding",
    "holdings",
    "international",
    "intl",
    "usa",
    "global",
    "partners",
    "lp",
    "plc",
    "gmbh",
    "ag",
    "sa",
    "spa",
    "srl",
    "ltda",
    "sl",
    "sarl",
    "sas",
    "bv",
    "nv",
    "pty",
    "pvt",
    "pte",
    "ab",
    "as",
    "oy",
    "kg",
    "kft",
    "doo",
    "kk",
    "kabushiki kaisha",
    "kaisha",
    # industry words
    "technologies",
    "technology",
    "tech",
    "software",
    "solutions",
    "services",
    "systems",
    "consulting",
    "consultants",
    "associates",
    "advisory",
    "advisors",
    "digital",
    "labs",
    "laboratory",
    "laboratories",
    "studio",
    "studios",
    "media",
    "interactive",
    "creative",
    "design",
    "development",
    "developers",
    "innovations",
    "innovative",
    "ventures",
    "capital",
    "investments",
    "financial",
    "finance",
    "bank",
    "insurance",
    "healthcare",
    "health",
    "medical",
    "pharma",
    "pharmaceutical",
    "biotech",
    "biotechnology",
)

_SUFFIX_RE = re.compile(r"\s+(?:" + "|".join(re.escape(suffix) for suffix in COMPANY_SUFFIXES) + r")$")
_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_DOMAIN_RE = re.compile(r"(?:https?://)?(?:www\.)?([a-zA-Z0-9-]+\.[a-zA-Z]{2,})")
_NON_WORD_RE = re.compile(r"[^\w]")

DOMAIN_MATCH_CONFIDENCE = 0.8
_STORE_SEARCH_LIMIT = 5


@lru_cache(maxsize=10000)
def normalize_company_name(name: str) -> str:
    normalized = _PUNCTUATION_RE.sub("", name.lower())
    normalized = _WHITESPACE_RE.sub(" ", normalized).strip()
    while True:
        stripped = _SUFFIX_RE.sub("", normalized).strip()
        if stripped == normalized:
            return normalized
        normalized = stripped


def similarity(left: str, right: str) -> float:
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    distance = Levenshtein.distance(left, right)
    return 1.0 - distance / max(len(left), len(right))


def extract_domain(text: str) -> str | None:
    match = _DOMAIN_RE.search(text)
    if match:
        return match.group(1).lower()
    simplified = _NON_WORD_RE.sub("", text.lower()).strip()
    return simplified if len(simplified) > 2 else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompanyDeduplicator:
    """Matches company names against the ledger.

    Lookups go cheapest first: the in-process cache, an exact ledger lookup,
    fuzzy matching over the cache, a fuzzy ledger search (trigram, or a LIKE
    pattern when trigram search is unavailable) and finally a domain lookup.
    """

    def __init__(
        self,
        store: Store,
        *,
        similarity_threshold: float = 0.7,
        cache_ttl_seconds: float = 1800.0,
        seed_limit: int = 500,
        seed_min_signal: float = 0.5,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.similarity_threshold = similarity_threshold
        self.cache_ttl_seconds = cache_ttl_seconds
        self.seed_limit = seed_limit
        self.seed_min_signal = seed_min_signal
        self._clock = clock
        self._monotonic = monotonic
        self._cache: TTLCache[str, CompanyRecord] = TTLCache(
            ttl_seconds=cache_ttl_seconds,
            max_entries=max(1, seed_limit) * 2,
            clock=monotonic,
        )
        self._cache_loaded_at: float | None = None
        self._trigram_available = True
        self._stats: Counter[str] = Counter()

    def normalize(self, name: str) -> str:
        return normalize_company_name(name)

    async def refresh_cache(self) -> int:
        rows = await self.store.list_companies(min_signal_strength=self.seed_min_signal, limit=self.seed_limit)
        self._cache.clear()
        for row in rows:
            self._cache.set(row.normalized_name, row)
        self._cache_loaded_at = self._monotonic()
        self._stats["cache_refreshes"] += 1
        logger.info("company cache refreshed entries=%s", len(rows))
        return len(rows)

    def remember(self, record: CompanyRecord) -> None:
        self._cache.set(record.normalized_name, record)

    async def find_similar(self, name: str, threshold: float | None = None) -> list[CompanyMatch]:
        threshold = self.similarity_threshold if threshold is None else threshold
        normalized = self.normalize(name)
        self._stats["lookups"] += 1

        cached = self._cache.get(normalized)
        if cached is not None:
            self._stats["cache_hits"] += 1
            return [CompanyMatch(company=cached, confidence=1.0, match_type="exact")]

        exact = await self.store.find_company_by_normalized_name(normalized)
        if exact is not None:
            self._stats["store_hits"] += 1
            self.remember(exact)
            return [CompanyMatch(company=exact, confidence=1.0, match_type="exact")]

        matches: list[CompanyMatch] = []
        for candidate in self._cache.values():
            score = similarity(normalized, candidate.normalized_name)
            if score >= threshold:
                matches.append(CompanyMatch(company=candidate, confidence=score, match_type="fuzzy"))

        if not matches:
            matches = await self._search_store(normalized, threshold)

        if not matches:
            domain = extract_domain(name)
            if domain:
                for row in await self.store.find_companies_by_domain(domain, limit=1):
                    matches.append(CompanyMatch(company=row, confidence=DOMAIN_MATCH_CONFIDENCE, match_type="domain"))
                if matches:
                    self._stats["domain_matches"] += 1

        if matches:
            self._stats["fuzzy_matches" if matches[0].match_type == "fuzzy" else "other_matches"] += 1
        else:
            self._stats["misses"] += 1
        return sorted(matches, key=lambda match: (-match.confidence, match.company.normalized_name))

    def should_recheck(self, record: CompanyRecord, now: datetime | None = None) -> bool:
        if record.last_verified_at is None:
            return True
        now = now or self._clock()
        days_since = (now - record.last_verified_at).total_seconds() / 86400
        signal = record.signal_strength
        confidence = record.confidence_level

        if confidence == "low" or signal < 0.3:
            return days_since > 7
        if confidence == "medium" or signal < 0.6:
            return days_since > 30
        if confidence == "high" and signal > 0.8:
            return days_since > 90
        return days_since > 30

    async def deduplicate(self, name: str) -> DeduplicationResult:
        await self._ensure_cache()
        matches = await self.find_similar(name)
        if not matches:
            return DeduplicationResult(is_known=False, should_recheck=False, reason="no match in ledger")

        best = matches[0]
        if best.company.has_tool_flags:
            recheck = self.should_recheck(best.company)
            reason = (
                f"known via {best.match_type} match (confidence {best.confidence:.2f})"
                + ("; verification is stale" if recheck else "")
            )
            return DeduplicationResult(is_known=True, should_recheck=recheck, match=best, reason=reason)

        return DeduplicationResult(
            is_known=False,
            should_recheck=True,
            match=best,
            reason="in ledger but no tools detected",
        )

    async def merge_duplicates(self, primary_id: str, duplicate_ids: list[str]) -> CompanyRecord:
        merged = await self.store.merge_duplicate_companies(primary_id, duplicate_ids)
        logger.info("merged companies primary=%s duplicates=%s", primary_id, len(duplicate_ids))
        await self.refresh_cache()
        return merged

    def get_stats(self) -> dict[str, Any]:
        age = None
        if self._cache_loaded_at is not None:
            age = round(self._monotonic() - self._cache_loaded_at, 3)
        normalize_info = normalize_company_name.cache_info()
        return {
            "cache_size": len(self._cache),
            "cache_age_seconds": age,
            "trigram_search_available": self._trigram_available,
            "normalize_cache_size": normalize_info.currsize,
            **dict(self._stats),
        }

    async def _ensure_cache(self) -> None:
        if self._cache_loaded_at is None or self._monotonic() - self._cache_loaded_at >= self.cache_ttl_seconds:
            await self.refresh_cache()

    async def _search_store(self, normalized: str, threshold: float) -> list[CompanyMatch]:
        if self._trigram_available:
            try:
                rows = await self.store.search_similar_companies(
                    normalized, threshold=threshold, limit=_STORE_SEARCH_LIMIT
                )
                return [CompanyMatch(company=row, confidence=min(1.0, score), match_type="fuzzy") for row, score in rows]
            except StoreFeatureUnavailableError:
                logger.warning("trigram search unavailable; falling back to pattern search")
                self._trigram_available = False

        tokens = [token for token in normalized.split(" ") if token]
        matches: list[CompanyMatch] = []
        for row in await self.store.search_companies_by_pattern(tokens, limit=_STORE_SEARCH_LIMIT):
            score = similarity(normalized, row.normalized_name)
            if score >= threshold:
                matches.append(CompanyMatch(company=row, confidence=score, match_type="fuzzy"))
        return matches
