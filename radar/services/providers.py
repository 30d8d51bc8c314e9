from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from radar.core.errors import ParseError, ProviderError
from radar.schemas.classification import ClassificationRequest, ProviderVerdict
from radar.schemas.strategy import Posting

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_ACTORS = {
    "indeed": "misceres~indeed-scraper",
    "linkedin": "bebity~linkedin-jobs-scraper",
}

_TOOLS = {"none", "outreach", "salesloft", "both"}
_CONFIDENCE_LEVELS = {"high", "medium", "low"}
_PROMPT_DESCRIPTION_LIMIT = 500

CLASSIFIER_SYSTEM_PROMPT = (
    "You are a sales tool detector. Analyze job descriptions to identify if companies use "
    "Outreach.io or SalesLoft. Return JSON only."
)


class DiscoveryProvider(Protocol):
    async def search(self, search_term: str, platform: str, max_items: int) -> list[Posting]: ...


class ClassificationProvider(Protocol):
    async def classify_batch(self, items: list[ClassificationRequest]) -> list[ProviderVerdict]: ...


class ApifyDiscoveryClient:
    """Runs one job-board actor per platform and maps its dataset items to postings."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        timeout_seconds: float = 180.0,
        actors: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self.actors = dict(actors or DEFAULT_PLATFORM_ACTORS)
        self._transport = transport

    async def search(self, search_term: str, platform: str, max_items: int) -> list[Posting]:
        actor = self.actors.get(platform)
        if actor is None:
            raise ProviderError(f"unknown platform: {platform}", provider="discovery")

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/acts/{actor}/run-sync-get-dataset-items",
                    params={"token": self.api_token},
                    json=build_actor_input(platform, search_term, max_items),
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ProviderError(
                    f"{platform} discovery failed with status {exc.response.status_code}",
                    provider="discovery",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.HTTPError as exc:
                raise ProviderError(f"{platform} discovery request failed: {exc}", provider="discovery") from exc

        try:
            items = response.json()
        except ValueError as exc:
            raise ParseError(f"{platform} discovery returned invalid JSON") from exc
        if not isinstance(items, list):
            raise ParseError(f"{platform} discovery returned {type(items).__name__}, expected a list")

        postings: list[Posting] = []
        for item in items:
            posting = map_posting(platform, item)
            if posting is not None:
                postings.append(posting)
        logger.info("discovery platform=%s term=%s items=%s postings=%s", platform, search_term, len(items), len(postings))
        return postings


def build_actor_input(platform: str, search_term: str, max_items: int) -> dict[str, Any]:
    if platform == "linkedin":
        return {
            "title": search_term,
            "rows": max_items,
            "proxy": {"useApifyProxy": True, "apifyProxyGroups": ["RESIDENTIAL"]},
        }
    return {
        "position": search_term,
        "maxItems": max_items,
        "parseCompanyDetails": True,
        "saveOnlyUniqueItems": True,
        "followApplyRedirects": False,
        "scrapeCompanyData": False,
    }


def map_posting(platform: str, item: Any) -> Posting | None:
    if not isinstance(item, dict):
        return None
    if platform == "linkedin":
        company = _as_text(item.get("companyName"))
        title = _as_text(item.get("title"))
        url = _as_text(item.get("jobUrl")) or _as_text(item.get("link"))
    else:
        company = _as_text(item.get("company"))
        title = _as_text(item.get("positionName"))
        url = _as_text(item.get("url")) or _as_text(item.get("externalApplyLink"))
    if not company or not title:
        return None
    return Posting(
        platform=platform,
        company=company,
        title=title,
        location=_as_text(item.get("location")) or "Remote",
        description=_as_text(item.get("description")) or "",
        url=url or "",
        external_id=_as_text(item.get("id")),
    )


class ChatCompletionsClassifier:
    """OpenAI-compatible chat-completions client that classifies a batch per call."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        *,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def classify_batch(self, items: list[ClassificationRequest]) -> list[ProviderVerdict]:
        if not items:
            return []
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": CLASSIFIER_SYSTEM_PROMPT},
                {"role": "user", "content": build_batch_prompt(items)},
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ProviderError(
                    f"classification failed with status {exc.response.status_code}",
                    provider="classifier",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.HTTPError as exc:
                raise ProviderError(f"classification request failed: {exc}", provider="classifier") from exc

        analyses = parse_batch_response(response)
        return [parse_verdict(analyses[index] if index < len(analyses) else None) for index in range(len(items))]


def build_batch_prompt(items: list[ClassificationRequest]) -> str:
    jobs = [
        {
            "id": index,
            "company": item.company,
            "description": item.description[:_PROMPT_DESCRIPTION_LIMIT],
        }
        for index, item in enumerate(items)
    ]
    return (
        f"Analyze these {len(items)} job descriptions for Outreach.io or SalesLoft usage.\n"
        'Return JSON with "analyses" array containing for each:\n'
        '- tool: "outreach", "salesloft", "both", or "none"\n'
        '- confidence: "high", "medium", or "low"\n'
        "- signals: array of detected signals\n"
        "- keywords: array of relevant keywords\n\n"
        f"Jobs:\n{json.dumps(jobs, indent=2)}"
    )


def parse_batch_response(response: httpx.Response) -> list[Any]:
    try:
        data = response.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise ParseError("classification response has no message content") from exc

    try:
        parsed = json.loads(content) if isinstance(content, str) else content
    except json.JSONDecodeError as exc:
        raise ParseError("classification content is not valid JSON") from exc

    analyses = parsed.get("analyses") if isinstance(parsed, dict) else None
    if not isinstance(analyses, list):
        raise ParseError("classification content has no analyses array")
    return analyses


def parse_verdict(raw: Any) -> ProviderVerdict:
    if not isinstance(raw, dict):
        return ProviderVerdict()
    tool = _as_text(raw.get("tool"))
    tool = tool.lower() if tool else "none"
    confidence = _as_text(raw.get("confidence"))
    confidence = confidence.lower() if confidence else "low"
    return ProviderVerdict(
        tool_detected=tool if tool in _TOOLS else "none",
        confidence=confidence if confidence in _CONFIDENCE_LEVELS else "low",
        signals=_as_text_list(raw.get("signals")),
        keywords=_as_text_list(raw.get("keywords")),
    )


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _as_text_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [text for text in (_as_text(item) for item in value) if text]
