from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from podping_ingest.core.urls import normalize_feed_url
from podping_ingest.services.repository import RepositoryValidationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IntakeResult:
    capture_id: str
    source_url: str
    coalesced: bool
    debounced: bool = False
    priority: int | None = None


async def intake_feed(repository: Any, feed_url: str, reason: str, *, actor: str = "system") -> IntakeResult:
    """Record a pending capture for ``feed_url`` unless one is already in flight.

    Every call counts against the trigger counters, coalesced or not. A
    low-priority update that arrives right after the feed was fetched is
    dropped as debounced.
    """
    try:
        source_url = normalize_feed_url(feed_url)
    except ValueError as exc:
        raise RepositoryValidationError(str(exc)) from exc

    result = await repository.intake_capture(source_url=source_url, trigger_reason=reason, actor=actor)
    debounced = result.get("debounced", False)
    if debounced:
        logger.debug("intake debounced url=%s reason=%s capture=%s", source_url, reason, result["capture_id"])
    elif result["coalesced"]:
        logger.debug("intake coalesced url=%s reason=%s capture=%s", source_url, reason, result["capture_id"])
    else:
        logger.info(
            "intake queued url=%s reason=%s priority=%s capture=%s",
            source_url,
            reason,
            result.get("priority"),
            result["capture_id"],
        )
    return IntakeResult(
        capture_id=result["capture_id"],
        source_url=source_url,
        coalesced=result["coalesced"],
        debounced=debounced,
        priority=result.get("priority"),
    )
