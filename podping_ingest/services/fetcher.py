from __future__ import annotations

from dataclasses import dataclass

import httpx

from podping_ingest.core.errors import TransportError

RETRYABLE_STATUS_CODES = {408, 425, 429}


@dataclass(slots=True)
class FetchResponse:
    status_code: int
    url: str
    body: bytes | None = None
    etag: str | None = None
    last_modified: str | None = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


class FeedFetcher:
    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        user_agent: str = "podping-ingest-feed-fetcher/1.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self._client = client

    async def get(self, url: str, *, etag: str | None = None, last_modified: str | None = None) -> FetchResponse:
        headers = {"User-Agent": self.user_agent, "Accept": "application/rss+xml, application/xml, text/xml, */*"}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"fetch failed for {url}: {exc.__class__.__name__}: {exc}") from exc

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            raise TransportError(f"fetch failed for {url}: http {response.status_code}")

        return FetchResponse(
            status_code=response.status_code,
            url=str(response.url),
            body=None if response.status_code == 304 else response.content,
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
        )
