from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from podping_ingest.core.errors import InvariantViolation
from podping_ingest.jobs.cleanup import purge_completed_older_than, purge_podpings_older_than
from podping_ingest.jobs.intake import intake_feed
from podping_ingest.jobs.refresh import enqueue_scheduled_refreshes
from podping_ingest.services.parser import ParsedEpisode, ParsedFeed
from podping_ingest.services.repository import RepositoryConflictError, RepositoryNotFoundError
from podping_ingest.services.store import InMemoryRepository


def _claim_one(repository: InMemoryRepository, worker_id: str = "worker-a") -> dict[str, Any]:
    claimed = asyncio.run(repository.claim_pending_captures(worker_id=worker_id, limit=1, max_in_flight=10))
    assert len(claimed) == 1
    return claimed[0]


def _complete(repository: InMemoryRepository, capture: dict[str, Any]) -> dict[str, Any]:
    return asyncio.run(
        repository.complete_capture(
            capture_id=capture["id"],
            claim_token=capture["claim_token"],
            actor="worker-a",
            outcome="unchanged",
            http_status=200,
            etag=None,
            last_modified=None,
            content_hash="hash",
            linked_entity_id=None,
        )
    )


def _fail(repository: InMemoryRepository, capture: dict[str, Any]) -> dict[str, Any]:
    return asyncio.run(
        repository.fail_capture(
            capture_id=capture["id"],
            claim_token=capture["claim_token"],
            actor="worker-a",
            error="boom",
        )
    )


def _feed(*guids: str, title: str = "Example Show") -> ParsedFeed:
    return ParsedFeed(title=title, episodes=[ParsedEpisode(guid=guid, title=f"Episode {guid}") for guid in guids])


def test_claim_transitions_pending_to_parsing_with_fresh_token(repository: InMemoryRepository) -> None:
    asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    capture = _claim_one(repository)

    assert capture["status"] == "parsing"
    assert capture["claimed_by"] == "worker-a"
    assert capture["claim_token"]
    assert asyncio.run(repository.claim_pending_captures(worker_id="worker-b", limit=5, max_in_flight=10)) == []


def test_stale_token_cannot_complete_or_fail(repository: InMemoryRepository) -> None:
    asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    capture = _claim_one(repository)
    stale = dict(capture, claim_token="not-the-token")

    with pytest.raises(InvariantViolation):
        _complete(repository, stale)
    with pytest.raises(InvariantViolation):
        _fail(repository, stale)
    assert repository.captures[capture["id"]]["status"] == "parsing"


def test_completed_capture_cannot_be_claimed_again(repository: InMemoryRepository) -> None:
    asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    capture = _claim_one(repository)
    _complete(repository, capture)

    with pytest.raises(InvariantViolation):
        _complete(repository, capture)
    assert asyncio.run(repository.claim_pending_captures(worker_id="w", limit=5, max_in_flight=10)) == []


def test_retry_promotion_is_superseded_by_newer_in_flight_capture(repository: InMemoryRepository, clock) -> None:
    asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    failed = _fail(repository, _claim_one(repository))
    assert failed["next_retry_at"] is not None

    newer = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "live"))
    assert not newer.coalesced

    clock.advance(seconds=31)
    promoted = asyncio.run(repository.promote_due_retries(limit=10))

    assert promoted == 0
    assert repository.captures[failed["id"]]["status"] == "failed"
    assert failed["id"] not in repository.retry_queue
    assert repository.events[-1]["event_type"] == "retry_superseded"


def test_manual_retry_moves_failed_to_pending_and_drops_scheduled_retry(repository: InMemoryRepository) -> None:
    asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    failed = _fail(repository, _claim_one(repository))

    retried = asyncio.run(repository.retry_capture(capture_id=failed["id"], actor="admin:abc"))

    assert retried["status"] == "pending"
    assert retried["parse_attempts"] == 1
    assert retried["next_retry_at"] is None
    assert failed["id"] not in repository.retry_queue


def test_manual_retry_rejects_non_failed_and_conflicting_captures(repository: InMemoryRepository) -> None:
    first = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    with pytest.raises(RepositoryConflictError):
        asyncio.run(repository.retry_capture(capture_id=first.capture_id, actor="admin"))

    _fail(repository, _claim_one(repository))
    asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    with pytest.raises(RepositoryConflictError):
        asyncio.run(repository.retry_capture(capture_id=first.capture_id, actor="admin"))

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.retry_capture(capture_id="missing", actor="admin"))


def test_reaper_only_resets_claims_older_than_timeout(repository: InMemoryRepository, clock) -> None:
    asyncio.run(intake_feed(repository, "https://feed.example/old.xml", "update"))
    old = _claim_one(repository)
    clock.advance(seconds=600)
    asyncio.run(intake_feed(repository, "https://feed.example/new.xml", "update"))
    new = _claim_one(repository)
    clock.advance(seconds=400)

    reaped = asyncio.run(repository.reap_stale_claims(stale_after_seconds=900, limit=10))

    assert reaped == 1
    assert repository.captures[old["id"]]["status"] == "pending"
    assert repository.captures[old["id"]]["parse_attempts"] == 0
    assert repository.captures[new["id"]]["status"] == "parsing"


def test_cleanup_purges_only_old_completed_captures(repository: InMemoryRepository, clock) -> None:
    asyncio.run(intake_feed(repository, "https://feed.example/old-completed.xml", "update"))
    old_completed = _complete(repository, _claim_one(repository))
    asyncio.run(intake_feed(repository, "https://feed.example/old-failed.xml", "update"))
    old_failed = _fail(repository, _claim_one(repository))

    clock.advance(days=8)
    asyncio.run(intake_feed(repository, "https://feed.example/fresh.xml", "update"))
    fresh_completed = _complete(repository, _claim_one(repository, worker_id="worker-b"))
    old_pending = asyncio.run(intake_feed(repository, "https://feed.example/old-pending.xml", "update"))
    repository.captures[old_pending.capture_id]["fetched_at"] -= timedelta(days=8)

    purged = asyncio.run(purge_completed_older_than(repository, timedelta(days=7), 100))

    assert purged == 1
    assert old_completed["id"] not in repository.captures
    assert old_failed["id"] in repository.captures
    assert old_pending.capture_id in repository.captures
    assert fresh_completed["id"] in repository.captures
    assert all(event["capture_id"] != old_completed["id"] for event in repository.events)


def test_cleanup_is_bounded_by_batch_size(repository: InMemoryRepository, clock) -> None:
    for index in range(3):
        asyncio.run(intake_feed(repository, f"https://feed.example/{index}.xml", "update"))
        _complete(repository, _claim_one(repository))
    clock.advance(days=30)

    assert asyncio.run(purge_completed_older_than(repository, timedelta(days=7), 2)) == 2
    assert asyncio.run(purge_completed_older_than(repository, timedelta(days=7), 2)) == 1


def test_upsert_parsed_feed_is_idempotent_by_natural_keys(repository: InMemoryRepository) -> None:
    url = "https://feed.example/a.xml"
    first_id = asyncio.run(repository.upsert_parsed_feed(feed_url=url, feed=_feed("a", "b")))
    second_id = asyncio.run(repository.upsert_parsed_feed(feed_url=url, feed=_feed("b", "c", title="Renamed")))

    assert first_id == second_id
    assert len(repository.podcasts) == 1
    assert repository.podcasts[first_id]["title"] == "Renamed"
    assert sorted(guid for _, guid in repository.episodes) == ["a", "b", "c"]

    asyncio.run(repository.upsert_parsed_feed(feed_url=url, feed=_feed("a"), went_live=True))
    asyncio.run(repository.upsert_parsed_feed(feed_url=url, feed=_feed("a")))
    assert repository.podcasts[first_id]["has_gone_live"] is True


def test_scheduled_refresh_enqueues_stale_podcasts_once(repository: InMemoryRepository, clock) -> None:
    asyncio.run(repository.upsert_parsed_feed(feed_url="https://feed.example/a.xml", feed=_feed("a")))
    asyncio.run(repository.upsert_parsed_feed(feed_url="https://feed.example/b.xml", feed=_feed("b")))
    clock.advance(hours=12)
    asyncio.run(repository.upsert_parsed_feed(feed_url="https://feed.example/b.xml", feed=_feed("b")))
    clock.advance(hours=13)

    assert asyncio.run(enqueue_scheduled_refreshes(repository, refresh_after_hours=24, limit=10)) == 1
    assert asyncio.run(enqueue_scheduled_refreshes(repository, refresh_after_hours=24, limit=10)) == 0

    (capture,) = repository.captures.values()
    assert capture["source_url"] == "https://feed.example/a.xml"
    assert capture["trigger_reason"] == "scheduledRefresh"
    assert repository.trigger_counters["scheduledRefresh"]["received_count"] == 1


def test_sync_reset_moves_cursor_and_clears_errors(repository: InMemoryRepository) -> None:
    assert asyncio.run(repository.try_acquire_sync_lease(owner="w", lease_seconds=60))
    asyncio.run(repository.initialize_sync_state(owner="w", head_block=500, start_block=490))
    asyncio.run(repository.record_poll_failure(owner="w", error="down"))

    state = asyncio.run(repository.reset_sync_state(start_block=450))

    assert state["last_parsed_block"] == 450
    assert state["last_known_head_block"] == 500
    assert state["error_count"] == 0
    assert state["is_running"] is True


def test_refresh_eligibility_follows_latest_capture_not_podcast_row(repository: InMemoryRepository, clock) -> None:
    url = "https://feed.example/a.xml"
    asyncio.run(repository.upsert_parsed_feed(feed_url=url, feed=_feed("a")))
    before = dict(next(iter(repository.podcasts.values())))
    clock.advance(hours=20)
    asyncio.run(intake_feed(repository, url, "update"))
    _complete(repository, _claim_one(repository))
    clock.advance(hours=5)

    assert asyncio.run(enqueue_scheduled_refreshes(repository, refresh_after_hours=24, limit=10)) == 0
    assert next(iter(repository.podcasts.values())) == before

    clock.advance(hours=20)
    assert asyncio.run(enqueue_scheduled_refreshes(repository, refresh_after_hours=24, limit=10)) == 1


def test_podping_history_purge_is_bounded_and_keeps_recent_rows(repository: InMemoryRepository, clock) -> None:
    def record(block_number: int) -> None:
        asyncio.run(
            repository.record_podping(
                block_number=block_number,
                op_index=0,
                transaction_id=None,
                operation_id="pp_podcast_update",
                reason="update",
                medium=None,
                feed_urls=["https://feed.example/a.xml"],
                detail=None,
                intaken_count=1,
                coalesced_count=0,
            )
        )

    record(1)
    record(2)
    clock.advance(days=31)
    record(3)

    assert asyncio.run(purge_podpings_older_than(repository, timedelta(days=30), 1)) == 1
    assert asyncio.run(purge_podpings_older_than(repository, timedelta(days=30), 10)) == 1
    assert [podping["block_number"] for podping in repository.podpings] == [3]
