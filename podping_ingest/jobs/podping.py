from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from podping_ingest.services.ledger import LedgerEvent


class PodpingKind(str, Enum):
    LIVE = "live"
    LIVE_END = "liveEnd"
    UPDATE = "update"
    UNRECOGNIZED = "unrecognized"


PAYLOAD_REASONS = {
    "live": PodpingKind.LIVE,
    "liveEnd": PodpingKind.LIVE_END,
    "update": PodpingKind.UPDATE,
}


@dataclass(frozen=True, slots=True)
class Podping:
    kind: PodpingKind
    block_number: int
    operation_id: str
    urls: tuple[str, ...] = ()
    medium: str | None = None
    detail: str | None = field(default=None, compare=False)

    @property
    def recognized(self) -> bool:
        return self.kind is not PodpingKind.UNRECOGNIZED

    @property
    def trigger_reason(self) -> str | None:
        return None if self.kind is PodpingKind.UNRECOGNIZED else self.kind.value


def decode_podping(event: LedgerEvent) -> Podping:
    """Decode a custom_json payload into a :class:`Podping`.

    Never raises; malformed payloads come back as ``UNRECOGNIZED`` with a detail.
    """
    try:
        payload = json.loads(event.payload)
    except (TypeError, ValueError) as exc:
        return _unrecognized(event, f"payload is not json: {exc}")
    if not isinstance(payload, dict):
        return _unrecognized(event, "payload is not an object")

    kind = _resolve_kind(payload.get("reason"), event.operation_id)
    if kind is None:
        return _unrecognized(event, f"unknown reason: {payload.get('reason')!r}")

    urls = _extract_urls(payload)
    if not urls:
        return _unrecognized(event, "payload carries no http(s) urls")

    medium = payload.get("medium")
    return Podping(
        kind=kind,
        block_number=event.block_number,
        operation_id=event.operation_id,
        urls=urls,
        medium=medium if isinstance(medium, str) else None,
    )


def _resolve_kind(reason: Any, operation_id: str) -> PodpingKind | None:
    if reason is not None:
        return PAYLOAD_REASONS.get(reason) if isinstance(reason, str) else None
    if "live" in operation_id:
        return PodpingKind.LIVE_END if "End" in operation_id else PodpingKind.LIVE
    return PodpingKind.UPDATE


def _extract_urls(payload: dict[str, Any]) -> tuple[str, ...]:
    # v1.0 uses "iris", v0.3 "urls", the legacy format a single "url"
    candidates: list[Any] = []
    for key in ("iris", "urls"):
        value = payload.get(key)
        if isinstance(value, list):
            candidates.extend(value)
    if isinstance(payload.get("url"), str):
        candidates.append(payload["url"])

    urls: list[str] = []
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        stripped = candidate.strip()
        if stripped.lower().startswith(("http://", "https://")) and stripped not in urls:
            urls.append(stripped)
    return tuple(urls)


def _unrecognized(event: LedgerEvent, detail: str) -> Podping:
    return Podping(
        kind=PodpingKind.UNRECOGNIZED,
        block_number=event.block_number,
        operation_id=event.operation_id,
        detail=detail,
    )
