from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

log = logging.getLogger("promptroom")

_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
_MAX_RESULTS = 10

REASON_RATE_LIMITED = "rate_limited"
REASON_ERROR = "error"
REASON_NOT_CONFIGURED = "not_configured"


@dataclass
class SearchResult:
    success: bool
    items: list[dict[str, str]] = field(default_factory=list)
    reason: str | None = None


class WebSearch:
    """Google Custom Search JSON API client."""

    def __init__(
        self,
        api_key: str | None,
        engine_id: str | None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.engine_id = engine_id
        self._client = client
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.engine_id)

    async def search(self, query: str, num_results: int = 3) -> SearchResult:
        if not self.configured:
            return SearchResult(success=False, reason=REASON_NOT_CONFIGURED)
        params = {
            "key": self.api_key,
            "cx": self.engine_id,
            "q": query,
            "num": max(1, min(num_results, _MAX_RESULTS)),
        }
        try:
            if self._client is not None:
                resp = await self._client.get(_SEARCH_URL, params=params, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(_SEARCH_URL, params=params)
        except httpx.HTTPError as exc:
            log.warning("web search request failed: %s", exc)
            return SearchResult(success=False, reason=REASON_ERROR)

        if resp.status_code == 429:
            log.warning("web search rate limited")
            return SearchResult(success=False, reason=REASON_RATE_LIMITED)
        if resp.status_code >= 400:
            log.warning("web search failed status=%s body=%s", resp.status_code, resp.text[:200])
            return SearchResult(success=False, reason=REASON_ERROR)
        try:
            data = resp.json()
        except ValueError:
            return SearchResult(success=False, reason=REASON_ERROR)

        items = [
            {
                "title": item.get("title", ""),
                "link": item.get("link", ""),
                "snippet": item.get("snippet", ""),
            }
            for item in data.get("items", [])[:num_results]
        ]
        return SearchResult(success=True, items=items)
