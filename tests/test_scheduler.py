from __future__ import annotations

import asyncio
import copy
from datetime import timedelta
from typing import Any, Callable

import httpx

from podping_ingest.core.errors import ParseError
from podping_ingest.jobs.intake import intake_feed
from podping_ingest.jobs.rate_limiter import TokenBucketRateLimiter
from podping_ingest.jobs.scheduler import CycleResult, ParseScheduler
from podping_ingest.services.fetcher import FeedFetcher
from podping_ingest.services.parser import ParsedFeed, parse_feed
from podping_ingest.services.store import InMemoryRepository

FEED_URL = "https://feed.example/a.xml"

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">
  <channel>
    <title>Example Show</title>
    <link>https://example.com/show</link>
    <description>Weekly example episodes.</description>
    <language>en</language>
    <item>
      <title>Episode 1</title>
      <guid>ep-1</guid>
      <enclosure url="https://cdn.example/ep1.mp3" type="audio/mpeg" length="1234"/>
      <pubDate>Wed, 01 May 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Episode 2</title>
      <guid>ep-2</guid>
      <enclosure url="https://cdn.example/ep2.mp3" type="audio/mpeg" length="5678"/>
    </item>
  </channel>
</rss>
"""


class CountingParser:
    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    def __call__(self, payload: bytes) -> ParsedFeed:
        self.calls += 1
        if self.fail:
            raise ParseError("not a recognizable feed")
        return parse_feed(payload)


def _scheduler(
    repository: InMemoryRepository,
    client: httpx.AsyncClient,
    *,
    parser: Callable[[bytes], ParsedFeed] = parse_feed,
    limiter: TokenBucketRateLimiter | None = None,
    **kwargs: Any,
) -> ParseScheduler:
    return ParseScheduler(
        repository,
        FeedFetcher(client=client),
        limiter or TokenBucketRateLimiter(1000.0, 1000),
        worker_id="worker-a",
        parser=parser,
        **kwargs,
    )


def _static_handler(body: bytes = RSS, headers: dict[str, str] | None = None):
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body, headers=headers or {}, request=request)

    return handler


def _only_capture(repository: InMemoryRepository) -> dict[str, Any]:
    assert len(repository.captures) == 1
    return next(iter(repository.captures.values()))


def test_parsed_capture_is_completed_and_linked(repository: InMemoryRepository) -> None:
    parser = CountingParser()

    async def run() -> CycleResult:
        await intake_feed(repository, FEED_URL, "live")
        async with httpx.AsyncClient(transport=httpx.MockTransport(_static_handler())) as client:
            return await _scheduler(repository, client, parser=parser).run_cycle()

    result = asyncio.run(run())

    assert result.claimed == 1
    assert result.parsed == 1
    assert parser.calls == 1
    capture = _only_capture(repository)
    assert capture["status"] == "completed"
    assert capture["outcome"] == "parsed"
    assert capture["parsed_at"] is not None
    assert capture["payload"] == RSS
    assert len(repository.podcasts) == 1
    podcast = repository.podcasts[capture["linked_entity_id"]]
    assert podcast["feed_url"] == FEED_URL
    assert podcast["title"] == "Example Show"
    assert podcast["has_gone_live"] is True
    assert sorted(guid for _, guid in repository.episodes) == ["ep-1", "ep-2"]


def test_parse_failures_retry_with_backoff_until_ceiling(repository: InMemoryRepository, clock) -> None:
    parser = CountingParser(fail=True)

    async def run() -> list[CycleResult]:
        await intake_feed(repository, FEED_URL, "update")
        results = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(_static_handler())) as client:
            scheduler = _scheduler(repository, client, parser=parser)
            results.append(await scheduler.run_cycle())
            capture = _only_capture(repository)
            assert capture["status"] == "failed"
            assert repository.retry_queue[capture["id"]] == clock.now + timedelta(seconds=30)

            clock.advance(seconds=29)
            results.append(await scheduler.run_cycle())
            clock.advance(seconds=2)
            results.append(await scheduler.run_cycle())
            assert repository.retry_queue[capture["id"]] == clock.now + timedelta(seconds=60)

            clock.advance(seconds=61)
            results.append(await scheduler.run_cycle())
            clock.advance(days=1)
            results.append(await scheduler.run_cycle())
        return results

    results = asyncio.run(run())

    assert [result.claimed for result in results] == [1, 0, 1, 1, 0]
    assert [result.failed for result in results] == [1, 0, 1, 1, 0]
    capture = _only_capture(repository)
    assert capture["status"] == "failed"
    assert capture["parse_attempts"] == 3
    assert capture["parse_error"] == "not a recognizable feed"
    assert capture["id"] not in repository.retry_queue
    assert parser.calls == 3
    assert repository.podcasts == {}


def test_not_modified_completes_without_parse_or_entity_change(repository: InMemoryRepository, clock) -> None:
    parser = CountingParser()
    conditional_headers: list[str | None] = []
    snapshots: list[tuple[dict[str, Any], dict[tuple[str, str], dict[str, Any]]]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        conditional_headers.append(request.headers.get("if-none-match"))
        if request.headers.get("if-none-match") == '"v1"':
            return httpx.Response(304, request=request)
        return httpx.Response(200, content=RSS, headers={"ETag": '"v1"'}, request=request)

    async def run() -> CycleResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            scheduler = _scheduler(repository, client, parser=parser)
            await intake_feed(repository, FEED_URL, "update")
            await scheduler.run_cycle()
            snapshots.append((copy.deepcopy(repository.podcasts), copy.deepcopy(repository.episodes)))
            clock.advance(hours=2)
            await intake_feed(repository, FEED_URL, "update")
            return await scheduler.run_cycle()

    result = asyncio.run(run())

    assert result.not_modified == 1
    assert conditional_headers == [None, '"v1"']
    assert parser.calls == 1
    completed = [capture for capture in repository.captures.values() if capture["outcome"] == "not_modified"]
    assert len(completed) == 1
    assert completed[0]["status"] == "completed"
    assert completed[0]["parsed_at"] is None
    assert completed[0]["etag"] == '"v1"'
    assert completed[0]["linked_entity_id"] == next(iter(repository.podcasts))
    assert snapshots == [(repository.podcasts, repository.episodes)]


def test_unchanged_body_hash_skips_parse(repository: InMemoryRepository, clock) -> None:
    parser = CountingParser()
    snapshots: list[dict[str, Any]] = []

    async def run() -> CycleResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(_static_handler())) as client:
            scheduler = _scheduler(repository, client, parser=parser)
            await intake_feed(repository, FEED_URL, "update")
            await scheduler.run_cycle()
            snapshots.append(copy.deepcopy(repository.podcasts))
            clock.advance(hours=2)
            await intake_feed(repository, FEED_URL, "update")
            return await scheduler.run_cycle()

    result = asyncio.run(run())

    assert result.unchanged == 1
    assert parser.calls == 1
    outcomes = sorted(capture["outcome"] for capture in repository.captures.values())
    assert outcomes == ["parsed", "unchanged"]
    assert snapshots == [repository.podcasts]

    (podcast_id,) = repository.podcasts
    podcast = asyncio.run(repository.get_podcast(podcast_id=podcast_id))
    assert podcast["last_checked_at"] == clock.now


def test_transport_failures_back_off_without_attempt_penalty(repository: InMemoryRepository, clock) -> None:
    fetches = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal fetches
        fetches += 1
        return httpx.Response(503, request=request)

    async def run() -> list[CycleResult]:
        await intake_feed(repository, FEED_URL, "update")
        results = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            scheduler = _scheduler(repository, client)
            for _ in range(6):
                results.append(await scheduler.run_cycle())
                clock.advance(hours=1)
        return results

    results = asyncio.run(run())

    assert [result.failed for result in results] == [1] * 6
    delays = [
        event["payload"]["delay_seconds"] for event in repository.events if event["event_type"] == "retry_scheduled"
    ]
    assert delays == [30, 60, 120, 240, 480, 960]
    capture = _only_capture(repository)
    assert capture["status"] == "failed"
    assert capture["parse_attempts"] == 0
    assert capture["transport_failures"] == 6
    assert "http 503" in capture["parse_error"]
    assert repository.retry_queue[capture["id"]] == clock.now - timedelta(hours=1) + timedelta(seconds=960)
    assert fetches == 6

def test_claims_respect_concurrency_bound(repository: InMemoryRepository) -> None:
    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, content=RSS, request=request)

    async def run() -> CycleResult:
        for index in range(5):
            await intake_feed(repository, f"https://feed.example/{index}.xml", "update")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await _scheduler(repository, client, concurrency=2).run_cycle()

    result = asyncio.run(run())

    assert result.claimed == 2
    assert result.parsed == 2
    assert peak <= 2
    statuses = sorted(capture["status"] for capture in repository.captures.values())
    assert statuses == ["completed", "completed", "pending", "pending", "pending"]


def test_global_bound_counts_other_workers_claims(repository: InMemoryRepository) -> None:
    async def run() -> list[dict[str, Any]]:
        for index in range(3):
            await intake_feed(repository, f"https://feed.example/{index}.xml", "update")
        await repository.claim_pending_captures(worker_id="worker-b", limit=1, max_in_flight=2)
        return await repository.claim_pending_captures(worker_id="worker-a", limit=2, max_in_flight=2)

    claimed = asyncio.run(run())
    assert len(claimed) == 1
    assert sum(1 for capture in repository.captures.values() if capture["status"] == "parsing") == 2


def test_rate_limit_timeout_defers_without_attempt_penalty(repository: InMemoryRepository) -> None:
    limiter = TokenBucketRateLimiter(0.001, 1)

    async def run() -> CycleResult:
        for index in range(2):
            await intake_feed(repository, f"https://feed.example/{index}.xml", "update")
        async with httpx.AsyncClient(transport=httpx.MockTransport(_static_handler())) as client:
            scheduler = _scheduler(repository, client, limiter=limiter, acquire_timeout_seconds=0.01)
            return await scheduler.run_cycle()

    result = asyncio.run(run())

    assert result.parsed == 1
    assert result.deferred == 1
    deferred = [capture for capture in repository.captures.values() if capture["status"] == "pending"]
    assert len(deferred) == 1
    assert deferred[0]["parse_attempts"] == 0
    assert deferred[0]["claim_token"] is None
    assert any(event["event_type"] == "deferred" for event in repository.events)


def test_lost_claim_is_skipped_without_entity_writes(repository: InMemoryRepository) -> None:
    async def run() -> str:
        await intake_feed(repository, FEED_URL, "update")
        claimed = (await repository.claim_pending_captures(worker_id="worker-a", limit=1, max_in_flight=1))[0]
        await repository.reap_stale_claims(stale_after_seconds=0, limit=10)
        async with httpx.AsyncClient(transport=httpx.MockTransport(_static_handler())) as client:
            return await _scheduler(repository, client).process_capture(claimed)

    assert asyncio.run(run()) == "lost"
    capture = _only_capture(repository)
    assert capture["status"] == "pending"
    assert capture["parse_attempts"] == 0
    assert repository.podcasts == {}


def test_cycle_deadline_leaves_unfinished_claims_for_reaper(repository: InMemoryRepository) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, content=RSS, request=request)

    async def run() -> CycleResult:
        await intake_feed(repository, FEED_URL, "update")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await _scheduler(repository, client, cycle_deadline_seconds=0.05).run_cycle()

    result = asyncio.run(run())

    assert result.cancelled == 1
    assert _only_capture(repository)["status"] == "parsing"
    assert asyncio.run(repository.reap_stale_claims(stale_after_seconds=0, limit=10)) == 1
    assert _only_capture(repository)["status"] == "pending"

def test_live_captures_are_claimed_ahead_of_routine_updates(repository: InMemoryRepository, clock) -> None:
    async def run() -> list[dict[str, Any]]:
        for index in range(3):
            await intake_feed(repository, f"https://feed.example/{index}.xml", "update")
            clock.advance(seconds=1)
        went_live_url = "https://feed.example/went-live.xml"
        await repository.upsert_parsed_feed(feed_url=went_live_url, feed=parse_feed(RSS), went_live=True)
        await intake_feed(repository, went_live_url, "update")
        await intake_feed(repository, "https://feed.example/live.xml", "live")
        return await repository.claim_pending_captures(worker_id="worker-a", limit=3, max_in_flight=3)

    claimed = asyncio.run(run())

    assert [capture["source_url"] for capture in claimed] == [
        "https://feed.example/live.xml",
        "https://feed.example/went-live.xml",
        "https://feed.example/0.xml",
    ]
