from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from podping_ingest.services.store import InMemoryRepository


class MutableClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository(clock: MutableClock) -> InMemoryRepository:
    return InMemoryRepository(
        parse_max_attempts=3,
        parse_retry_base_seconds=30,
        parse_retry_max_seconds=3600,
        clock=clock,
    )
