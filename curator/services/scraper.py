from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx


@dataclass(slots=True)
class ScrapeResult:
    success: bool
    markdown: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class Scraper(Protocol):
    async def scrape(self, url: str, *, formats: list[str] | None = None, only_main_content: bool = True) -> ScrapeResult:
        ...


class ScraperClient:
    """Client for a Firecrawl-compatible scrape endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def scrape(self, url: str, *, formats: list[str] | None = None, only_main_content: bool = True) -> ScrapeResult:
        payload = {
            "url": url,
            "formats": formats or ["markdown"],
            "onlyMainContent": only_main_content,
        }
        if self._client is not None:
            response = await self._client.post(f"{self.base_url}/v1/scrape", json=payload, headers=self.headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(f"{self.base_url}/v1/scrape", json=payload, headers=self.headers)
        return _parse_scrape_response(response)


def _parse_scrape_response(response: httpx.Response) -> ScrapeResult:
    try:
        body = response.json()
    except ValueError:
        body = None

    if response.status_code >= 400:
        message = _as_text(body.get("error")) if isinstance(body, dict) else None
        return ScrapeResult(success=False, error=message or f"scrape request failed with status {response.status_code}")
    if not isinstance(body, dict):
        return ScrapeResult(success=False, error="scrape response is not a JSON object")
    if not body.get("success"):
        return ScrapeResult(success=False, error=_as_text(body.get("error")) or "scrape failed")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    markdown = _as_text(data.get("markdown"))
    if not markdown:
        return ScrapeResult(success=False, error="no content returned")

    raw_metadata = data.get("metadata")
    metadata: dict[str, Any] = raw_metadata if isinstance(raw_metadata, dict) else {}
    return ScrapeResult(
        success=True,
        markdown=markdown,
        metadata={
            "title": _as_text(metadata.get("title")),
            "description": _as_text(metadata.get("description")),
        },
    )


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
