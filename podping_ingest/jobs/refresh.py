from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


async def enqueue_scheduled_refreshes(
    repository: Any,
    *,
    refresh_after_hours: int,
    limit: int,
    actor: str = "system",
) -> int:
    """Queue ``scheduledRefresh`` captures for podcasts not checked within the window."""
    enqueued = await repository.enqueue_due_refreshes(
        refresh_after_hours=max(1, refresh_after_hours),
        limit=limit,
        actor=actor,
    )
    if enqueued:
        logger.info("enqueued scheduled refreshes: %s", enqueued)
    return enqueued
