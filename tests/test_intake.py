from __future__ import annotations

import asyncio

import pytest

from podping_ingest.jobs.intake import intake_feed
from podping_ingest.services.parser import ParsedFeed
from podping_ingest.services.repository import (
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    RepositoryValidationError,
)
from podping_ingest.services.store import InMemoryRepository


def test_second_intake_for_pending_url_coalesces(repository: InMemoryRepository) -> None:
    first = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    second = asyncio.run(intake_feed(repository, "HTTPS://FEED.example:443/a.xml", "live"))

    assert not first.coalesced
    assert second.coalesced
    assert second.capture_id == first.capture_id
    assert len(repository.captures) == 1
    assert repository.trigger_counters["update"] == {"received_count": 1, "coalesced_count": 0}
    assert repository.trigger_counters["live"] == {"received_count": 1, "coalesced_count": 1}
    assert [event["event_type"] for event in repository.events] == ["intake", "coalesced"]
    assert first.priority == PRIORITY_LOW
    assert repository.captures[first.capture_id]["priority"] == PRIORITY_HIGH


def test_intake_coalesces_into_parsing_capture(repository: InMemoryRepository) -> None:
    first = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    claimed = asyncio.run(repository.claim_pending_captures(worker_id="w", limit=1, max_in_flight=1))
    assert claimed[0]["id"] == first.capture_id

    second = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    assert second.coalesced
    assert len(repository.captures) == 1


def test_intake_after_completion_creates_new_capture(repository: InMemoryRepository, clock) -> None:
    first = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    claimed = asyncio.run(repository.claim_pending_captures(worker_id="w", limit=1, max_in_flight=1))[0]
    asyncio.run(
        repository.complete_capture(
            capture_id=claimed["id"],
            claim_token=claimed["claim_token"],
            actor="w",
            outcome="unchanged",
            http_status=200,
            etag=None,
            last_modified=None,
            content_hash="abc",
            linked_entity_id=None,
        )
    )
    clock.advance(minutes=4)

    second = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    assert not second.coalesced
    assert second.capture_id != first.capture_id
    assert len(repository.captures) == 2


def test_intake_rejects_invalid_url_and_reason(repository: InMemoryRepository) -> None:
    with pytest.raises(RepositoryValidationError):
        asyncio.run(intake_feed(repository, "ftp://feed.example/a.xml", "update"))
    with pytest.raises(RepositoryValidationError):
        asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "boosted"))
    assert repository.captures == {}


def _complete_only_capture(repository: InMemoryRepository) -> None:
    claimed = asyncio.run(repository.claim_pending_captures(worker_id="w", limit=1, max_in_flight=1))[0]
    asyncio.run(
        repository.complete_capture(
            capture_id=claimed["id"],
            claim_token=claimed["claim_token"],
            actor="w",
            outcome="unchanged",
            http_status=200,
            etag=None,
            last_modified=None,
            content_hash="abc",
            linked_entity_id=None,
        )
    )


def test_low_priority_update_right_after_fetch_is_debounced(repository: InMemoryRepository, clock) -> None:
    first = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))
    _complete_only_capture(repository)
    clock.advance(minutes=2)

    debounced = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "update"))

    assert debounced.debounced
    assert debounced.coalesced
    assert debounced.capture_id == first.capture_id
    assert len(repository.captures) == 1
    assert repository.trigger_counters["update"] == {"received_count": 2, "coalesced_count": 1}
    assert repository.events[-1]["event_type"] == "debounced"

    live = asyncio.run(intake_feed(repository, "https://feed.example/a.xml", "live"))
    assert not live.debounced
    assert not live.coalesced
    assert len(repository.captures) == 2


def test_priority_tiers_follow_trigger_and_live_history(repository: InMemoryRepository) -> None:
    live_feed = ParsedFeed(title="Live")
    asyncio.run(repository.upsert_parsed_feed(feed_url="https://feed.example/live.xml", feed=live_feed, went_live=True))
    plain_feed = ParsedFeed(title="Plain")
    asyncio.run(repository.upsert_parsed_feed(feed_url="https://feed.example/plain.xml", feed=plain_feed))

    went_live = asyncio.run(intake_feed(repository, "https://feed.example/live.xml", "update"))
    plain = asyncio.run(intake_feed(repository, "https://feed.example/plain.xml", "update"))
    live = asyncio.run(intake_feed(repository, "https://feed.example/new.xml", "liveEnd"))
    manual = asyncio.run(intake_feed(repository, "https://feed.example/manual.xml", "manual"))

    assert went_live.priority == PRIORITY_MEDIUM
    assert plain.priority == PRIORITY_LOW
    assert live.priority == PRIORITY_HIGH
    assert manual.priority == PRIORITY_HIGH
