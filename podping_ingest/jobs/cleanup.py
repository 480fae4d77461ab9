from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

logger = logging.getLogger(__name__)


async def purge_completed_older_than(repository: Any, duration: timedelta, batch_size: int) -> int:
    """Delete at most ``batch_size`` completed captures fetched before ``now - duration``.

    Pending, parsing and failed captures are never touched.
    """
    if duration < timedelta(0):
        raise ValueError("retention duration must not be negative")
    purged = await repository.purge_completed_older_than(
        older_than_seconds=int(duration.total_seconds()),
        limit=max(1, batch_size),
    )
    if purged:
        logger.info("purged completed captures: %s (retention=%s)", purged, duration)
    return purged


async def purge_podpings_older_than(repository: Any, duration: timedelta, batch_size: int) -> int:
    if duration < timedelta(0):
        raise ValueError("retention duration must not be negative")
    purged = await repository.purge_podpings_older_than(
        older_than_seconds=int(duration.total_seconds()),
        limit=max(1, batch_size),
    )
    if purged:
        logger.info("purged podping history rows: %s (retention=%s)", purged, duration)
    return purged
