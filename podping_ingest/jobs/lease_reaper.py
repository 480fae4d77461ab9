from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)


def claim_expired(capture: dict[str, Any], *, stale_after_seconds: int, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    claimed_at = capture.get("claimed_at")
    if not claimed_at:
        return False

    if isinstance(claimed_at, str):
        claimed_at = datetime.fromisoformat(claimed_at.replace("Z", "+00:00"))

    return claimed_at + timedelta(seconds=stale_after_seconds) <= now


def should_reap(capture: dict[str, Any], *, stale_after_seconds: int, now: datetime | None = None) -> bool:
    return capture.get("status") == "parsing" and claim_expired(
        capture, stale_after_seconds=stale_after_seconds, now=now
    )


async def reap_stale_claims(repository: Any, *, stale_after_seconds: int, limit: int, actor: str = "system") -> int:
    """Return abandoned ``parsing`` captures to ``pending`` without an attempt penalty."""
    reaped = await repository.reap_stale_claims(stale_after_seconds=stale_after_seconds, limit=limit, actor=actor)
    if reaped:
        logger.info("reaped stale capture claims: %s", reaped)
    return reaped
