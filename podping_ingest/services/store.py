from __future__ import annotations

import asyncio
import copy
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from podping_ingest.core.errors import InvariantViolation
from podping_ingest.services.parser import ParsedFeed
from podping_ingest.services.repository import (
    CAPTURE_OUTCOMES,
    CAPTURE_STATUSES,
    IN_FLIGHT_STATUSES,
    LIVE_TRIGGER_REASONS,
    PODPING_REASONS,
    PRIORITY_LOW,
    TRIGGER_REASONS,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    compute_retry_delay_seconds,
    resolve_priority,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local repository with the same transitions as the Postgres one.

    A single ``asyncio.Lock`` stands in for row locks, so it is only safe
    within one event loop. Used by tests and ``PPI_STORAGE_BACKEND=memory``.
    """

    def __init__(
        self,
        *,
        parse_max_attempts: int = 5,
        parse_retry_base_seconds: int = 30,
        parse_retry_max_seconds: int = 3600,
        low_priority_debounce_seconds: int = 180,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.parse_max_attempts = max(1, parse_max_attempts)
        self.parse_retry_base_seconds = max(0, parse_retry_base_seconds)
        self.parse_retry_max_seconds = max(0, parse_retry_max_seconds)
        self.low_priority_debounce_seconds = max(0, low_priority_debounce_seconds)
        self.clock = clock
        self.sync_state: dict[str, Any] | None = None
        self.captures: dict[str, dict[str, Any]] = {}
        self.retry_queue: dict[str, datetime] = {}
        self.events: list[dict[str, Any]] = []
        self.trigger_counters: dict[str, dict[str, int]] = {}
        self.podcasts: dict[str, dict[str, Any]] = {}
        self.episodes: dict[tuple[str, str], dict[str, Any]] = {}
        self.podpings: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def ensure_schema(self) -> None:
        return None

    # sync cursor

    async def get_sync_state(self) -> dict[str, Any] | None:
        if self.sync_state is None:
            return None
        return self._sync_snapshot()

    async def try_acquire_sync_lease(self, *, owner: str, lease_seconds: int) -> bool:
        async with self._lock:
            now = self.clock()
            if self.sync_state is None:
                self.sync_state = self._new_sync_state(now)
            state = self.sync_state
            holder = state["lease_owner"]
            expires = state["lease_expires_at"]
            if holder is not None and holder != owner and expires is not None and expires > now:
                return False
            state["lease_owner"] = owner
            state["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            state["updated_at"] = now
            return True

    async def release_sync_lease(self, *, owner: str) -> None:
        async with self._lock:
            if self.sync_state is not None and self.sync_state["lease_owner"] == owner:
                self.sync_state["lease_owner"] = None
                self.sync_state["lease_expires_at"] = None
                self.sync_state["updated_at"] = self.clock()

    async def initialize_sync_state(self, *, owner: str, head_block: int, start_block: int) -> dict[str, Any]:
        async with self._lock:
            state = self._owned_sync_state(owner)
            if state["last_parsed_block"] is not None:
                raise InvariantViolation("sync state already initialized")
            state["last_known_head_block"] = head_block
            state["last_parsed_block"] = min(start_block, head_block)
            state["updated_at"] = self.clock()
            return self._sync_snapshot()

    async def record_poll_success(
        self,
        *,
        owner: str,
        head_block: int,
        last_parsed_block: int,
        block_count: int,
        event_count: int,
    ) -> dict[str, Any]:
        async with self._lock:
            state = self._owned_sync_state(owner)
            now = self.clock()
            state["last_known_head_block"] = max(state["last_known_head_block"] or head_block, head_block)
            state["last_parsed_block"] = max(state["last_parsed_block"] or last_parsed_block, last_parsed_block)
            state["total_blocks_processed"] += block_count
            state["total_events_found"] += event_count
            state["last_batch_block_count"] = block_count
            state["last_batch_event_count"] = event_count
            state["last_fetched_at"] = now
            state["last_error"] = None
            state["error_count"] = 0
            state["updated_at"] = now
            return self._sync_snapshot()

    async def record_poll_failure(self, *, owner: str, error: str) -> None:
        async with self._lock:
            state = self.sync_state
            if state is None or state["lease_owner"] != owner:
                return
            state["error_count"] += 1
            state["last_error"] = error
            state["updated_at"] = self.clock()

    async def reset_sync_state(self, *, start_block: int) -> dict[str, Any]:
        if start_block < 0:
            raise RepositoryValidationError("start_block must be >= 0")
        async with self._lock:
            now = self.clock()
            if self.sync_state is None:
                self.sync_state = self._new_sync_state(now)
            state = self.sync_state
            state["last_known_head_block"] = max(state["last_known_head_block"] or start_block, start_block)
            state["last_parsed_block"] = start_block
            state["last_error"] = None
            state["error_count"] = 0
            state["updated_at"] = now
            return self._sync_snapshot()

    async def get_trigger_counters(self) -> dict[str, dict[str, int]]:
        return {reason: dict(counts) for reason, counts in sorted(self.trigger_counters.items())}

    async def count_captures_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in sorted(CAPTURE_STATUSES)}
        for capture in self.captures.values():
            counts[capture["status"]] += 1
        return counts

    # raw captures

    async def intake_capture(self, *, source_url: str, trigger_reason: str, actor: str) -> dict[str, Any]:
        if trigger_reason not in TRIGGER_REASONS:
            raise RepositoryValidationError(f"unknown trigger_reason: {trigger_reason}")

        async with self._lock:
            podcast = self._podcast_by_feed_url(source_url)
            priority = resolve_priority(trigger_reason, has_gone_live=bool(podcast and podcast["has_gone_live"]))
            existing = self._in_flight_capture(source_url)

            if existing is None and trigger_reason == "update" and priority == PRIORITY_LOW:
                recent = self._recently_completed_capture(source_url)
                if recent is not None:
                    self._bump_trigger_counter(trigger_reason, coalesced=True)
                    self._record_event(
                        recent["id"],
                        "debounced",
                        actor,
                        {"trigger_reason": trigger_reason, "source_url": source_url},
                    )
                    return {
                        "capture_id": recent["id"],
                        "coalesced": True,
                        "debounced": True,
                        "status": recent["status"],
                        "priority": priority,
                    }

            coalesced = existing is not None
            if existing is not None:
                existing["priority"] = min(existing["priority"], priority)
                capture = existing
            else:
                capture = self._insert_capture(source_url=source_url, trigger_reason=trigger_reason, priority=priority)
            self._bump_trigger_counter(trigger_reason, coalesced=coalesced)
            self._record_event(
                capture["id"],
                "coalesced" if coalesced else "intake",
                actor,
                {"trigger_reason": trigger_reason, "source_url": source_url, "priority": priority},
            )
            return {
                "capture_id": capture["id"],
                "coalesced": coalesced,
                "debounced": False,
                "status": capture["status"],
                "priority": capture["priority"],
            }

    async def claim_pending_captures(self, *, worker_id: str, limit: int, max_in_flight: int) -> list[dict[str, Any]]:
        async with self._lock:
            in_flight = sum(1 for capture in self.captures.values() if capture["status"] == "parsing")
            available = min(limit, max_in_flight - in_flight)
            if available <= 0:
                return []

            pending = sorted(
                (capture for capture in self.captures.values() if capture["status"] == "pending"),
                key=lambda capture: (capture["priority"], capture["fetched_at"], capture["created_at"]),
            )
            now = self.clock()
            claimed: list[dict[str, Any]] = []
            for capture in pending[:available]:
                capture.update(
                    status="parsing",
                    claim_token=str(uuid4()),
                    claimed_by=worker_id,
                    claimed_at=now,
                    updated_at=now,
                )
                self._record_event(
                    capture["id"],
                    "claimed",
                    worker_id,
                    {"parse_attempts": capture["parse_attempts"], "priority": capture["priority"]},
                )
                claimed.append(self._public_capture(capture))
            return claimed

    async def get_latest_completed_capture(self, *, source_url: str) -> dict[str, Any] | None:
        completed = [
            capture
            for capture in self.captures.values()
            if capture["source_url"] == source_url and capture["status"] == "completed"
        ]
        if not completed:
            return None
        latest = max(completed, key=lambda capture: (capture["fetched_at"], capture["updated_at"]))
        return self._public_capture(latest)

    async def release_capture(self, *, capture_id: str, claim_token: str, actor: str, reason: str) -> None:
        async with self._lock:
            capture = self._claimed_capture(capture_id, claim_token)
            capture.update(
                status="pending", claim_token=None, claimed_by=None, claimed_at=None, updated_at=self.clock()
            )
            self._record_event(capture_id, "deferred", actor, {"reason": reason})

    async def complete_capture(
        self,
        *,
        capture_id: str,
        claim_token: str,
        actor: str,
        outcome: str,
        http_status: int,
        etag: str | None,
        last_modified: str | None,
        content_hash: str | None,
        linked_entity_id: str | None,
        payload: bytes | None = None,
    ) -> dict[str, Any]:
        if outcome not in CAPTURE_OUTCOMES:
            raise RepositoryValidationError(f"unknown outcome: {outcome}")

        async with self._lock:
            capture = self._claimed_capture(capture_id, claim_token)
            now = self.clock()
            capture.update(
                status="completed",
                outcome=outcome,
                http_status=http_status,
                etag=etag,
                last_modified=last_modified,
                content_hash=content_hash,
                linked_entity_id=linked_entity_id,
                parse_error=None,
                claim_token=None,
                fetched_at=now,
                updated_at=now,
            )
            if payload is not None:
                capture["payload"] = payload
            self._record_event(capture_id, "completed", actor, {"outcome": outcome, "http_status": http_status})
            return self._public_capture(capture)

    async def commit_parse_result(
        self,
        *,
        capture_id: str,
        claim_token: str,
        actor: str,
        feed: ParsedFeed,
        http_status: int,
        etag: str | None,
        last_modified: str | None,
        content_hash: str,
        payload: bytes,
    ) -> dict[str, Any]:
        async with self._lock:
            capture = self._claimed_capture(capture_id, claim_token)
            podcast_id = self._upsert_parsed_feed(
                feed_url=capture["source_url"],
                feed=feed,
                went_live=capture["trigger_reason"] in LIVE_TRIGGER_REASONS,
            )
            now = self.clock()
            capture.update(
                status="completed",
                outcome="parsed",
                http_status=http_status,
                etag=etag,
                last_modified=last_modified,
                content_hash=content_hash,
                payload=payload,
                linked_entity_id=podcast_id,
                parse_error=None,
                claim_token=None,
                fetched_at=now,
                parsed_at=now,
                updated_at=now,
            )
            self._record_event(
                capture_id,
                "completed",
                actor,
                {"outcome": "parsed", "podcast_id": podcast_id, "episodes": len(feed.episodes)},
            )
            return self._public_capture(capture)

    async def fail_capture(
        self,
        *,
        capture_id: str,
        claim_token: str,
        actor: str,
        error: str,
        http_status: int | None = None,
        count_attempt: bool = True,
    ) -> dict[str, Any]:
        async with self._lock:
            capture = self._claimed_capture(capture_id, claim_token)
            now = self.clock()
            capture.update(
                status="failed",
                parse_attempts=capture["parse_attempts"] + (1 if count_attempt else 0),
                transport_failures=capture["transport_failures"] + (0 if count_attempt else 1),
                parse_error=error,
                outcome=None,
                claim_token=None,
                claimed_by=None,
                claimed_at=None,
                updated_at=now,
            )
            if http_status is not None:
                capture["http_status"] = http_status

            attempts = capture["parse_attempts"]
            terminal = count_attempt and attempts >= self.parse_max_attempts
            backoff_step = attempts if count_attempt else capture["transport_failures"]
            self._record_event(
                capture_id,
                "failed",
                actor,
                {
                    "error": error,
                    "parse_attempts": attempts,
                    "transport_failures": capture["transport_failures"],
                    "counted": count_attempt,
                    "terminal": terminal,
                },
            )
            if not terminal:
                delay = compute_retry_delay_seconds(
                    max(1, backoff_step),
                    base_seconds=self.parse_retry_base_seconds,
                    max_seconds=self.parse_retry_max_seconds,
                )
                self.retry_queue[capture_id] = now + timedelta(seconds=delay)
                self._record_event(capture_id, "retry_scheduled", actor, {"delay_seconds": delay})
            return self._public_capture(capture)

    async def promote_due_retries(self, *, limit: int, actor: str = "system") -> int:
        async with self._lock:
            now = self.clock()
            due = sorted(
                ((due_at, capture_id) for capture_id, due_at in self.retry_queue.items() if due_at <= now),
            )[: max(1, limit)]
            promoted = 0
            for _, capture_id in due:
                del self.retry_queue[capture_id]
                capture = self.captures.get(capture_id)
                if capture is None:
                    continue
                if capture["status"] == "failed" and self._in_flight_capture(capture["source_url"]) is None:
                    capture.update(status="pending", updated_at=now)
                    promoted += 1
                    self._record_event(capture_id, "retry_promoted", actor, {})
                else:
                    self._record_event(capture_id, "retry_superseded", actor, {})
            return promoted

    async def reap_stale_claims(self, *, stale_after_seconds: int, limit: int, actor: str = "system") -> int:
        async with self._lock:
            now = self.clock()
            cutoff = now - timedelta(seconds=stale_after_seconds)
            stale = sorted(
                (
                    capture
                    for capture in self.captures.values()
                    if capture["status"] == "parsing" and capture["claimed_at"] is not None
                    and capture["claimed_at"] <= cutoff
                ),
                key=lambda capture: capture["claimed_at"],
            )[: max(1, limit)]
            for capture in stale:
                previous_owner = capture["claimed_by"]
                capture.update(status="pending", claim_token=None, claimed_by=None, claimed_at=None, updated_at=now)
                self._record_event(
                    capture["id"],
                    "claim_reaped",
                    actor,
                    {"previous_owner": previous_owner, "stale_after_seconds": stale_after_seconds},
                )
            return len(stale)

    async def purge_completed_older_than(self, *, older_than_seconds: int, limit: int) -> int:
        if older_than_seconds < 0:
            raise RepositoryValidationError("retention must be >= 0 seconds")
        async with self._lock:
            cutoff = self.clock() - timedelta(seconds=older_than_seconds)
            doomed = sorted(
                (
                    capture
                    for capture in self.captures.values()
                    if capture["status"] == "completed" and capture["fetched_at"] < cutoff
                ),
                key=lambda capture: capture["fetched_at"],
            )[: max(1, limit)]
            doomed_ids = {capture["id"] for capture in doomed}
            for capture_id in doomed_ids:
                del self.captures[capture_id]
            self.events = [event for event in self.events if event["capture_id"] not in doomed_ids]
            return len(doomed_ids)

    async def list_captures(
        self,
        *,
        status: str | None,
        trigger_reason: str | None,
        source_url: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        if status and status not in CAPTURE_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, parsing, completed, failed")
        if trigger_reason and trigger_reason not in TRIGGER_REASONS:
            raise RepositoryValidationError(
                "trigger_reason must be one of: live, liveEnd, update, scheduledRefresh, manual",
            )
        matches = [
            capture
            for capture in self.captures.values()
            if (not status or capture["status"] == status)
            and (not trigger_reason or capture["trigger_reason"] == trigger_reason)
            and (not source_url or capture["source_url"] == source_url)
        ]
        matches.sort(key=lambda capture: (capture["updated_at"], capture["id"]), reverse=True)
        return [self._public_capture(capture) for capture in matches[offset : offset + limit]]

    async def get_capture(self, *, capture_id: str) -> dict[str, Any]:
        capture = self.captures.get(capture_id)
        if capture is None:
            raise RepositoryNotFoundError("capture not found")
        return self._public_capture(capture)

    async def retry_capture(self, *, capture_id: str, actor: str) -> dict[str, Any]:
        async with self._lock:
            capture = self.captures.get(capture_id)
            if capture is None:
                raise RepositoryNotFoundError("capture not found")
            if capture["status"] != "failed":
                raise RepositoryConflictError(f"capture is {capture['status']}; only failed captures retry")
            if self._in_flight_capture(capture["source_url"]) is not None:
                raise RepositoryConflictError("another capture for this feed is already in flight")
            capture.update(status="pending", updated_at=self.clock())
            self.retry_queue.pop(capture_id, None)
            self._record_event(capture_id, "manual_retry", actor, {"parse_attempts": capture["parse_attempts"]})
            return self._public_capture(capture)

    async def list_capture_events(self, *, capture_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        await self.get_capture(capture_id=capture_id)
        events = [event for event in self.events if event["capture_id"] == capture_id]
        return copy.deepcopy(events[offset : offset + limit])

    async def enqueue_due_refreshes(self, *, refresh_after_hours: int, limit: int, actor: str = "system") -> int:
        async with self._lock:
            cutoff = self.clock() - timedelta(hours=refresh_after_hours)
            due = sorted(
                (
                    (self._last_checked_at(podcast), podcast["feed_url"])
                    for podcast in self.podcasts.values()
                    if self._in_flight_capture(podcast["feed_url"]) is None
                ),
            )
            due = [(checked_at, feed_url) for checked_at, feed_url in due if checked_at <= cutoff][: max(1, limit)]
            for _, feed_url in due:
                capture = self._insert_capture(source_url=feed_url, trigger_reason="scheduledRefresh")
                self._bump_trigger_counter("scheduledRefresh", coalesced=False)
                self._record_event(
                    capture["id"],
                    "intake",
                    actor,
                    {"trigger_reason": "scheduledRefresh", "source_url": feed_url},
                )
            return len(due)

    # podping history

    async def record_podping(
        self,
        *,
        block_number: int,
        op_index: int,
        transaction_id: str | None,
        operation_id: str,
        reason: str,
        medium: str | None,
        feed_urls: list[str],
        detail: str | None,
        intaken_count: int,
        coalesced_count: int,
    ) -> None:
        if reason not in PODPING_REASONS:
            raise RepositoryValidationError(f"unknown podping reason: {reason}")
        async with self._lock:
            if any(
                podping["block_number"] == block_number and podping["op_index"] == op_index
                for podping in self.podpings
            ):
                return
            self.podpings.append(
                {
                    "id": self.podpings[-1]["id"] + 1 if self.podpings else 1,
                    "block_number": block_number,
                    "op_index": op_index,
                    "transaction_id": transaction_id,
                    "operation_id": operation_id,
                    "reason": reason,
                    "medium": medium,
                    "feed_urls": list(feed_urls),
                    "detail": detail,
                    "intaken_count": intaken_count,
                    "coalesced_count": coalesced_count,
                    "created_at": self.clock(),
                }
            )

    async def list_podpings(
        self,
        *,
        reason: str | None,
        feed_url: str | None,
        block_number: int | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        if reason and reason not in PODPING_REASONS:
            raise RepositoryValidationError("reason must be one of: live, liveEnd, update, unrecognized")
        matches = [
            podping
            for podping in self.podpings
            if (not reason or podping["reason"] == reason)
            and (not feed_url or feed_url in podping["feed_urls"])
            and (block_number is None or podping["block_number"] == block_number)
        ]
        matches.sort(key=lambda podping: (podping["block_number"], podping["op_index"]), reverse=True)
        return copy.deepcopy(matches[offset : offset + limit])

    async def purge_podpings_older_than(self, *, older_than_seconds: int, limit: int) -> int:
        if older_than_seconds < 0:
            raise RepositoryValidationError("retention must be >= 0 seconds")
        async with self._lock:
            cutoff = self.clock() - timedelta(seconds=older_than_seconds)
            doomed = sorted(
                (podping for podping in self.podpings if podping["created_at"] < cutoff),
                key=lambda podping: podping["created_at"],
            )[: max(1, limit)]
            doomed_ids = {podping["id"] for podping in doomed}
            self.podpings = [podping for podping in self.podpings if podping["id"] not in doomed_ids]
            return len(doomed_ids)

    # structured store

    async def upsert_parsed_feed(self, *, feed_url: str, feed: ParsedFeed, went_live: bool = False) -> str:
        async with self._lock:
            return self._upsert_parsed_feed(feed_url=feed_url, feed=feed, went_live=went_live)

    async def get_podcast(self, *, podcast_id: str) -> dict[str, Any]:
        podcast = self.podcasts.get(podcast_id)
        if podcast is None:
            raise RepositoryNotFoundError("podcast not found")
        result = copy.deepcopy(podcast)
        result["last_checked_at"] = self._latest_capture_fetched_at(podcast["feed_url"])
        result["episode_count"] = sum(1 for key in self.episodes if key[0] == podcast_id)
        return result

    async def list_episodes(self, *, podcast_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        await self.get_podcast(podcast_id=podcast_id)
        episodes = [episode for key, episode in self.episodes.items() if key[0] == podcast_id]
        episodes.sort(key=lambda episode: episode["guid"])
        episodes.sort(
            key=lambda episode: episode["published_at"] or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return copy.deepcopy(episodes[offset : offset + limit])

    def _upsert_parsed_feed(self, *, feed_url: str, feed: ParsedFeed, went_live: bool) -> str:
        now = self.clock()
        fields = feed.podcast_record()
        podcast = self._podcast_by_feed_url(feed_url)
        if podcast is None:
            podcast = {
                "id": str(uuid4()),
                "feed_url": feed_url,
                "has_gone_live": False,
                "created_at": now,
            }
            self.podcasts[podcast["id"]] = podcast
        podcast.update(fields)
        podcast["has_gone_live"] = podcast["has_gone_live"] or went_live
        podcast["updated_at"] = now

        for parsed in feed.episodes:
            key = (podcast["id"], parsed.guid)
            episode = self.episodes.get(key)
            if episode is None:
                episode = {"id": str(uuid4()), "podcast_id": podcast["id"], "created_at": now}
                self.episodes[key] = episode
            episode.update(asdict(parsed))
            episode["updated_at"] = now
        return podcast["id"]

    def _insert_capture(self, *, source_url: str, trigger_reason: str, priority: int = PRIORITY_LOW) -> dict[str, Any]:
        now = self.clock()
        capture = {
            "id": str(uuid4()),
            "source_url": source_url,
            "payload": b"",
            "content_hash": None,
            "http_status": None,
            "etag": None,
            "last_modified": None,
            "status": "pending",
            "trigger_reason": trigger_reason,
            "outcome": None,
            "parse_attempts": 0,
            "transport_failures": 0,
            "priority": priority,
            "parse_error": None,
            "claim_token": None,
            "claimed_by": None,
            "claimed_at": None,
            "fetched_at": now,
            "parsed_at": None,
            "linked_entity_id": None,
            "created_at": now,
            "updated_at": now,
        }
        self.captures[capture["id"]] = capture
        return capture

    def _in_flight_capture(self, source_url: str) -> dict[str, Any] | None:
        for capture in self.captures.values():
            if capture["source_url"] == source_url and capture["status"] in IN_FLIGHT_STATUSES:
                return capture
        return None

    def _recently_completed_capture(self, source_url: str) -> dict[str, Any] | None:
        if not self.low_priority_debounce_seconds:
            return None
        cutoff = self.clock() - timedelta(seconds=self.low_priority_debounce_seconds)
        recent = [
            capture
            for capture in self.captures.values()
            if capture["source_url"] == source_url
            and capture["status"] == "completed"
            and capture["fetched_at"] > cutoff
        ]
        return max(recent, key=lambda capture: capture["fetched_at"]) if recent else None

    def _latest_capture_fetched_at(self, source_url: str) -> datetime | None:
        fetched = [capture["fetched_at"] for capture in self.captures.values() if capture["source_url"] == source_url]
        return max(fetched) if fetched else None

    def _last_checked_at(self, podcast: dict[str, Any]) -> datetime:
        return self._latest_capture_fetched_at(podcast["feed_url"]) or podcast["updated_at"]

    def _claimed_capture(self, capture_id: str, claim_token: str) -> dict[str, Any]:
        capture = self.captures.get(capture_id)
        if capture is None or capture["status"] != "parsing" or capture["claim_token"] != claim_token:
            raise InvariantViolation(f"claim on capture {capture_id} was lost")
        return capture

    def _podcast_by_feed_url(self, feed_url: str) -> dict[str, Any] | None:
        for podcast in self.podcasts.values():
            if podcast["feed_url"] == feed_url:
                return podcast
        return None

    def _bump_trigger_counter(self, trigger_reason: str, *, coalesced: bool) -> None:
        counts = self.trigger_counters.setdefault(trigger_reason, {"received_count": 0, "coalesced_count": 0})
        counts["received_count"] += 1
        if coalesced:
            counts["coalesced_count"] += 1

    def _record_event(self, capture_id: str, event_type: str, actor: str, payload: dict[str, Any]) -> None:
        self.events.append(
            {
                "id": len(self.events) + 1,
                "capture_id": capture_id,
                "event_type": event_type,
                "actor": actor,
                "payload": payload,
                "created_at": self.clock(),
            }
        )

    def _public_capture(self, capture: dict[str, Any]) -> dict[str, Any]:
        public = {key: value for key, value in capture.items() if key != "payload"}
        public["payload_size"] = len(capture["payload"])
        public["next_retry_at"] = self.retry_queue.get(capture["id"])
        return public

    def _owned_sync_state(self, owner: str) -> dict[str, Any]:
        if self.sync_state is None or self.sync_state["lease_owner"] != owner:
            raise InvariantViolation("sync lease lost")
        return self.sync_state

    def _sync_snapshot(self) -> dict[str, Any]:
        assert self.sync_state is not None
        snapshot = dict(self.sync_state)
        expires = snapshot["lease_expires_at"]
        snapshot["is_running"] = snapshot["lease_owner"] is not None and expires is not None and expires > self.clock()
        return snapshot

    @staticmethod
    def _new_sync_state(now: datetime) -> dict[str, Any]:
        return {
            "last_known_head_block": None,
            "last_parsed_block": None,
            "total_blocks_processed": 0,
            "total_events_found": 0,
            "last_batch_block_count": 0,
            "last_batch_event_count": 0,
            "lease_owner": None,
            "lease_expires_at": None,
            "last_error": None,
            "error_count": 0,
            "last_fetched_at": None,
            "created_at": now,
            "updated_at": now,
        }
