from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from podping_ingest.core.errors import TransportError
from podping_ingest.core.urls import normalize_feed_url
from podping_ingest.jobs.intake import intake_feed
from podping_ingest.jobs.podping import decode_podping
from podping_ingest.services.ledger import HiveLedgerClient
from podping_ingest.services.repository import RepositoryValidationError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class PollResult:
    head_block: int | None
    last_parsed_block: int | None
    blocks_behind: int
    new_events: int = 0
    intaken: int = 0
    coalesced: int = 0
    debounced: int = 0
    skipped: bool = False
    initialized: bool = False


def blocks_behind(head_block: int | None, last_parsed_block: int | None) -> int:
    if head_block is None or last_parsed_block is None:
        return 0
    return max(0, head_block - last_parsed_block)


class LedgerCursor:
    """Leased singleton poller that advances ``last_parsed_block``."""

    def __init__(
        self,
        repository: Any,
        ledger: HiveLedgerClient,
        *,
        owner: str,
        lease_seconds: int = 60,
        max_blocks_per_poll: int = 50,
        initial_lag_blocks: int = 10,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.owner = owner
        self.lease_seconds = lease_seconds
        self.max_blocks_per_poll = max(1, max_blocks_per_poll)
        self.initial_lag_blocks = max(0, initial_lag_blocks)

    async def poll(self) -> PollResult:
        acquired = await self.repository.try_acquire_sync_lease(owner=self.owner, lease_seconds=self.lease_seconds)
        if not acquired:
            state = await self.repository.get_sync_state() or {}
            logger.debug("sync lease held by %s; skipping poll", state.get("lease_owner"))
            return PollResult(
                head_block=state.get("last_known_head_block"),
                last_parsed_block=state.get("last_parsed_block"),
                blocks_behind=blocks_behind(state.get("last_known_head_block"), state.get("last_parsed_block")),
                skipped=True,
            )

        try:
            with tracer.start_as_current_span("cursor.poll") as span:
                result = await self._poll_with_lease()
                span.set_attribute("ledger.head_block", result.head_block or 0)
                span.set_attribute("ledger.blocks_behind", result.blocks_behind)
                span.set_attribute("ledger.new_events", result.new_events)
                return result
        finally:
            await self.repository.release_sync_lease(owner=self.owner)

    async def _poll_with_lease(self) -> PollResult:
        state = await self.repository.get_sync_state()
        try:
            head = await self.ledger.get_head_block()
        except TransportError as exc:
            await self.repository.record_poll_failure(owner=self.owner, error=str(exc))
            raise

        if state is None or state["last_parsed_block"] is None:
            start_block = max(0, head - self.initial_lag_blocks)
            await self.repository.initialize_sync_state(owner=self.owner, head_block=head, start_block=start_block)
            logger.info("sync state initialized head=%s start=%s", head, start_block)
            return PollResult(
                head_block=head,
                last_parsed_block=start_block,
                blocks_behind=blocks_behind(head, start_block),
                initialized=True,
            )

        last_parsed = state["last_parsed_block"]
        recorded_head = state["last_known_head_block"]
        if recorded_head is not None and head < recorded_head:
            logger.warning("ledger head regressed reported=%s recorded=%s; clamping", head, recorded_head)
        known_head = max(head, recorded_head if recorded_head is not None else head)

        scan_to = min(head, last_parsed + self.max_blocks_per_poll)
        if scan_to <= last_parsed:
            await self.repository.record_poll_success(
                owner=self.owner,
                head_block=known_head,
                last_parsed_block=last_parsed,
                block_count=0,
                event_count=0,
            )
            return PollResult(
                head_block=head,
                last_parsed_block=last_parsed,
                blocks_behind=blocks_behind(head, last_parsed),
            )

        try:
            batch = await self.ledger.list_events(last_parsed + 1, scan_to)
        except TransportError as exc:
            await self.repository.record_poll_failure(owner=self.owner, error=str(exc))
            raise

        recognized = 0
        intaken = 0
        coalesced = 0
        debounced = 0
        seen: set[tuple[str, str]] = set()
        for event in batch.events:
            podping = decode_podping(event)
            feed_urls: list[str] = []
            podping_intaken = 0
            podping_coalesced = 0
            if not podping.recognized:
                logger.info(
                    "skipping podping block=%s op=%s: %s",
                    podping.block_number,
                    podping.operation_id,
                    podping.detail,
                )
            else:
                recognized += 1
                reason = podping.trigger_reason
                for url in podping.urls:
                    feed_urls.append(_history_url(url))
                    if (url, reason) in seen:
                        continue
                    seen.add((url, reason))
                    try:
                        result = await intake_feed(self.repository, url, reason, actor=self.owner)
                    except RepositoryValidationError as exc:
                        logger.info("skipping feed url=%r block=%s: %s", url, podping.block_number, exc)
                        continue
                    if result.debounced:
                        debounced += 1
                        podping_coalesced += 1
                    elif result.coalesced:
                        coalesced += 1
                        podping_coalesced += 1
                    else:
                        intaken += 1
                        podping_intaken += 1

            await self.repository.record_podping(
                block_number=event.block_number,
                op_index=event.op_index,
                transaction_id=event.transaction_id,
                operation_id=event.operation_id,
                reason=podping.kind.value,
                medium=podping.medium,
                feed_urls=feed_urls,
                detail=podping.detail,
                intaken_count=podping_intaken,
                coalesced_count=podping_coalesced,
            )

        new_last_parsed = batch.last_scanned_block if batch.last_scanned_block is not None else last_parsed
        await self.repository.record_poll_success(
            owner=self.owner,
            head_block=known_head,
            last_parsed_block=new_last_parsed,
            block_count=batch.block_count,
            event_count=len(batch.events),
        )
        if batch.block_count:
            logger.info(
                "ledger scanned blocks=%s..%s events=%s intaken=%s coalesced=%s debounced=%s behind=%s",
                last_parsed + 1,
                new_last_parsed,
                recognized,
                intaken,
                coalesced,
                debounced,
                blocks_behind(head, new_last_parsed),
            )
        return PollResult(
            head_block=head,
            last_parsed_block=new_last_parsed,
            blocks_behind=blocks_behind(head, new_last_parsed),
            new_events=recognized,
            intaken=intaken,
            coalesced=coalesced,
            debounced=debounced,
        )


def _history_url(url: str) -> str:
    try:
        return normalize_feed_url(url)
    except ValueError:
        return url
