from datetime import datetime, timedelta, timezone

from podping_ingest.jobs.lease_reaper import claim_expired, should_reap


def test_claim_expired_handles_iso_strings() -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    capture = {"status": "parsing", "claimed_at": "2024-05-01T11:40:00Z"}

    assert claim_expired(capture, stale_after_seconds=900, now=now)
    assert not claim_expired(capture, stale_after_seconds=1800, now=now)


def test_should_reap_only_parsing_captures() -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    claimed_at = now - timedelta(hours=1)

    assert should_reap({"status": "parsing", "claimed_at": claimed_at}, stale_after_seconds=60, now=now)
    assert not should_reap({"status": "pending", "claimed_at": claimed_at}, stale_after_seconds=60, now=now)
    assert not should_reap({"status": "parsing", "claimed_at": None}, stale_after_seconds=60, now=now)
