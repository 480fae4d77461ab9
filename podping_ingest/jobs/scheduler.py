from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from opentelemetry import trace

from podping_ingest.core.errors import InvariantViolation, ParseError, RateLimitTimeout, TransportError
from podping_ingest.core.urls import content_hash
from podping_ingest.jobs.rate_limiter import TokenBucketRateLimiter
from podping_ingest.services.fetcher import FeedFetcher
from podping_ingest.services.parser import ParsedFeed, parse_feed

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class CycleResult:
    promoted: int = 0
    claimed: int = 0
    parsed: int = 0
    not_modified: int = 0
    unchanged: int = 0
    failed: int = 0
    deferred: int = 0
    lost: int = 0
    errored: int = 0
    cancelled: int = 0


class ParseScheduler:
    def __init__(
        self,
        repository: Any,
        fetcher: FeedFetcher,
        rate_limiter: TokenBucketRateLimiter,
        *,
        worker_id: str,
        concurrency: int = 8,
        parser: Callable[[bytes], ParsedFeed] = parse_feed,
        acquire_timeout_seconds: float | None = 10.0,
        cycle_deadline_seconds: float | None = 120.0,
        retry_promotion_batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.rate_limiter = rate_limiter
        self.worker_id = worker_id
        self.concurrency = max(1, concurrency)
        self.parser = parser
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self.cycle_deadline_seconds = cycle_deadline_seconds
        self.retry_promotion_batch_size = retry_promotion_batch_size

    async def run_cycle(self) -> CycleResult:
        result = CycleResult()
        with tracer.start_as_current_span("scheduler.cycle") as span:
            result.promoted = await self.repository.promote_due_retries(
                limit=self.retry_promotion_batch_size,
                actor=self.worker_id,
            )
            captures = await self.repository.claim_pending_captures(
                worker_id=self.worker_id,
                limit=self.concurrency,
                max_in_flight=self.concurrency,
            )
            result.claimed = len(captures)
            span.set_attribute("scheduler.promoted", result.promoted)
            span.set_attribute("scheduler.claimed", result.claimed)
            if not captures:
                return result

            tasks = [asyncio.create_task(self.process_capture(capture)) for capture in captures]
            done, pending = await asyncio.wait(tasks, timeout=self.cycle_deadline_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("dispatch cycle deadline hit; %s captures left for the reaper", len(pending))
            result.cancelled = len(pending)

            for task in done:
                outcome = task.result()
                setattr(result, outcome, getattr(result, outcome) + 1)
            span.set_attribute("scheduler.parsed", result.parsed)
            span.set_attribute("scheduler.failed", result.failed)
        return result

    async def process_capture(self, capture: dict[str, Any]) -> str:
        """Drive one claimed capture to a terminal state; returns the outcome name."""
        with tracer.start_as_current_span("scheduler.process_capture") as span:
            span.set_attribute("capture.id", capture["id"])
            span.set_attribute("capture.source_url", capture["source_url"])
            try:
                outcome = await self._process(capture)
            except InvariantViolation:
                logger.debug("claim lost for capture=%s", capture["id"])
                outcome = "lost"
            except Exception:
                logger.exception("capture processing errored capture=%s", capture["id"])
                outcome = "errored"
            span.set_attribute("capture.outcome", outcome)
            return outcome

    async def _process(self, capture: dict[str, Any]) -> str:
        capture_id = capture["id"]
        claim_token = capture["claim_token"]
        source_url = capture["source_url"]

        try:
            await self.rate_limiter.acquire(1, timeout=self.acquire_timeout_seconds)
        except RateLimitTimeout:
            await self.repository.release_capture(
                capture_id=capture_id,
                claim_token=claim_token,
                actor=self.worker_id,
                reason="rate_limited",
            )
            return "deferred"

        previous = await self.repository.get_latest_completed_capture(source_url=source_url)
        try:
            response = await self.fetcher.get(
                source_url,
                etag=previous["etag"] if previous else None,
                last_modified=previous["last_modified"] if previous else None,
            )
        except TransportError as exc:
            # origin unavailable; retried on the backoff queue without spending an attempt
            return await self._fail(capture, str(exc), count_attempt=False)

        if response.not_modified:
            if previous is None:
                return await self._fail(capture, "origin answered 304 to an unconditional request", http_status=304)
            await self.repository.complete_capture(
                capture_id=capture_id,
                claim_token=claim_token,
                actor=self.worker_id,
                outcome="not_modified",
                http_status=304,
                etag=response.etag or previous["etag"],
                last_modified=response.last_modified or previous["last_modified"],
                content_hash=previous["content_hash"],
                linked_entity_id=previous["linked_entity_id"],
            )
            return "not_modified"

        if response.status_code >= 400:
            return await self._fail(capture, f"http {response.status_code}", http_status=response.status_code)

        body = response.body or b""
        digest = content_hash(body)
        if previous is not None and previous["content_hash"] == digest:
            await self.repository.complete_capture(
                capture_id=capture_id,
                claim_token=claim_token,
                actor=self.worker_id,
                outcome="unchanged",
                http_status=response.status_code,
                etag=response.etag,
                last_modified=response.last_modified,
                content_hash=digest,
                linked_entity_id=previous["linked_entity_id"],
            )
            return "unchanged"

        try:
            feed = self.parser(body)
        except ParseError as exc:
            return await self._fail(capture, str(exc), http_status=response.status_code)

        await self.repository.commit_parse_result(
            capture_id=capture_id,
            claim_token=claim_token,
            actor=self.worker_id,
            feed=feed,
            http_status=response.status_code,
            etag=response.etag,
            last_modified=response.last_modified,
            content_hash=digest,
            payload=body,
        )
        logger.info("parsed capture=%s url=%s episodes=%s", capture_id, source_url, len(feed.episodes))
        return "parsed"

    async def _fail(
        self,
        capture: dict[str, Any],
        error: str,
        *,
        http_status: int | None = None,
        count_attempt: bool = True,
    ) -> str:
        failed = await self.repository.fail_capture(
            capture_id=capture["id"],
            claim_token=capture["claim_token"],
            actor=self.worker_id,
            error=error,
            http_status=http_status,
            count_attempt=count_attempt,
        )
        if failed.get("next_retry_at") is None:
            logger.warning(
                "capture failed terminally capture=%s url=%s attempts=%s error=%s",
                capture["id"],
                capture["source_url"],
                failed["parse_attempts"],
                error,
            )
        else:
            logger.info(
                "capture failed capture=%s url=%s attempts=%s retry_at=%s error=%s",
                capture["id"],
                capture["source_url"],
                failed["parse_attempts"],
                failed["next_retry_at"],
                error,
            )
        return "failed"
