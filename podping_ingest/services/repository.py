from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from podping_ingest.core.config import get_settings
from podping_ingest.core.errors import InvariantViolation
from podping_ingest.services.parser import ParsedFeed
from podping_ingest.services.schema import SCHEMA_STATEMENTS

if TYPE_CHECKING:
    from podping_ingest.services.store import InMemoryRepository


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


CAPTURE_STATUSES = {"pending", "parsing", "completed", "failed"}
IN_FLIGHT_STATUSES = ("pending", "parsing")
TRIGGER_REASONS = {"live", "liveEnd", "update", "scheduledRefresh", "manual"}
LIVE_TRIGGER_REASONS = {"live", "liveEnd"}
CAPTURE_OUTCOMES = {"not_modified", "unchanged"}
PODPING_REASONS = {"live", "liveEnd", "update", "unrecognized"}
PRIORITY_HIGH = 0
PRIORITY_MEDIUM = 1
PRIORITY_LOW = 2
SCHEDULER_ADVISORY_LOCK_KEY = 7_070_707_069

CAPTURE_COLUMNS = """
  c.id::text as id,
  c.source_url,
  c.content_hash,
  c.http_status,
  c.etag,
  c.last_modified,
  c.status,
  c.trigger_reason,
  c.outcome,
  c.parse_attempts,
  c.transport_failures,
  c.priority,
  c.parse_error,
  c.claim_token::text as claim_token,
  c.claimed_by,
  c.claimed_at,
  c.fetched_at,
  c.parsed_at,
  c.linked_entity_id::text as linked_entity_id,
  octet_length(c.payload) as payload_size,
  c.created_at,
  c.updated_at
"""

SYNC_STATE_COLUMNS = """
  last_known_head_block,
  last_parsed_block,
  total_blocks_processed,
  total_events_found,
  last_batch_block_count,
  last_batch_event_count,
  lease_owner,
  lease_expires_at,
  (lease_owner is not null and lease_expires_at > now()) as is_running,
  last_error,
  error_count,
  last_fetched_at,
  created_at,
  updated_at
"""


def compute_retry_delay_seconds(attempt: int, *, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = min(max(0, attempt - 1), 32)
    delay = base_seconds * (2**multiplier)
    return min(delay, max_seconds)


def resolve_priority(trigger_reason: str, *, has_gone_live: bool) -> int:
    """Dispatch tier for a new capture; lower values are claimed first."""
    if trigger_reason in LIVE_TRIGGER_REASONS or trigger_reason == "manual":
        return PRIORITY_HIGH
    if trigger_reason == "update" and has_gone_live:
        return PRIORITY_MEDIUM
    return PRIORITY_LOW


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        parse_max_attempts: int,
        parse_retry_base_seconds: int,
        parse_retry_max_seconds: int,
        low_priority_debounce_seconds: int = 180,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.parse_max_attempts = max(1, parse_max_attempts)
        self.parse_retry_base_seconds = max(0, parse_retry_base_seconds)
        self.parse_retry_max_seconds = max(0, parse_retry_max_seconds)
        self.low_priority_debounce_seconds = max(0, low_priority_debounce_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

    # sync cursor

    async def get_sync_state(self) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {SYNC_STATE_COLUMNS} from sync_state where id = 1")
        return dict(row) if row else None

    async def try_acquire_sync_lease(self, *, owner: str, lease_seconds: int) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into sync_state (id, lease_owner, lease_expires_at)
            values (1, $1, now() + ($2::int * interval '1 second'))
            on conflict (id) do update
            set
              lease_owner = excluded.lease_owner,
              lease_expires_at = excluded.lease_expires_at,
              updated_at = now()
            where sync_state.lease_owner is null
              or sync_state.lease_expires_at is null
              or sync_state.lease_expires_at <= now()
              or sync_state.lease_owner = excluded.lease_owner
            returning id
            """,
            owner,
            lease_seconds,
        )
        return row is not None

    async def release_sync_lease(self, *, owner: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update sync_state
            set lease_owner = null, lease_expires_at = null, updated_at = now()
            where id = 1 and lease_owner = $1
            """,
            owner,
        )

    async def initialize_sync_state(self, *, owner: str, head_block: int, start_block: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_state
            set
              last_known_head_block = $2,
              last_parsed_block = $3,
              updated_at = now()
            where id = 1 and lease_owner = $1 and last_parsed_block is null
            returning {SYNC_STATE_COLUMNS}
            """,
            owner,
            head_block,
            min(start_block, head_block),
        )
        if not row:
            raise InvariantViolation("sync lease lost before initialization")
        return dict(row)

    async def record_poll_success(
        self,
        *,
        owner: str,
        head_block: int,
        last_parsed_block: int,
        block_count: int,
        event_count: int,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_state
            set
              last_known_head_block = greatest(coalesce(last_known_head_block, $2), $2),
              last_parsed_block = greatest(coalesce(last_parsed_block, $3), $3),
              total_blocks_processed = total_blocks_processed + $4,
              total_events_found = total_events_found + $5,
              last_batch_block_count = $4,
              last_batch_event_count = $5,
              last_fetched_at = now(),
              last_error = null,
              error_count = 0,
              updated_at = now()
            where id = 1 and lease_owner = $1
            returning {SYNC_STATE_COLUMNS}
            """,
            owner,
            head_block,
            last_parsed_block,
            block_count,
            event_count,
        )
        if not row:
            raise InvariantViolation("sync lease lost before progress was recorded")
        return dict(row)

    async def record_poll_failure(self, *, owner: str, error: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update sync_state
            set error_count = error_count + 1, last_error = $2, updated_at = now()
            where id = 1 and lease_owner = $1
            """,
            owner,
            error,
        )

    async def reset_sync_state(self, *, start_block: int) -> dict[str, Any]:
        if start_block < 0:
            raise RepositoryValidationError("start_block must be >= 0")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into sync_state (id, last_known_head_block, last_parsed_block)
            values (1, $1, $1)
            on conflict (id) do update
            set
              last_known_head_block = greatest(coalesce(sync_state.last_known_head_block, $1), $1),
              last_parsed_block = $1,
              last_error = null,
              error_count = 0,
              updated_at = now()
            returning {SYNC_STATE_COLUMNS}
            """,
            start_block,
        )
        return dict(row)

    async def get_trigger_counters(self) -> dict[str, dict[str, int]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select trigger_reason, received_count, coalesced_count from trigger_counters order by trigger_reason"
        )
        return {
            row["trigger_reason"]: {
                "received_count": row["received_count"],
                "coalesced_count": row["coalesced_count"],
            }
            for row in rows
        }

    async def count_captures_by_status(self) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch("select status, count(*) as total from raw_captures group by status")
        counts = {status: 0 for status in sorted(CAPTURE_STATUSES)}
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts

    # raw captures

    async def intake_capture(self, *, source_url: str, trigger_reason: str, actor: str) -> dict[str, Any]:
        """Queue a pending capture or fold the trigger into the one already in flight.

        A low-tier ``update`` for a feed completed within the debounce window is
        dropped and reported as coalesced with ``debounced`` set.
        """
        if trigger_reason not in TRIGGER_REASONS:
            raise RepositoryValidationError(f"unknown trigger_reason: {trigger_reason}")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                has_gone_live = await conn.fetchval(
                    "select has_gone_live from podcasts where feed_url = $1",
                    source_url,
                )
                priority = resolve_priority(trigger_reason, has_gone_live=bool(has_gone_live))

                if trigger_reason == "update" and priority == PRIORITY_LOW and self.low_priority_debounce_seconds:
                    recent = await conn.fetchrow(
                        """
                        select id::text as id, status
                        from raw_captures
                        where source_url = $1
                          and (
                            status in ('pending', 'parsing')
                            or (status = 'completed' and fetched_at > now() - ($2::int * interval '1 second'))
                          )
                        order by (status in ('pending', 'parsing')) desc, fetched_at desc
                        limit 1
                        """,
                        source_url,
                        self.low_priority_debounce_seconds,
                    )
                    if recent and recent["status"] == "completed":
                        await self._bump_trigger_counter(conn, trigger_reason=trigger_reason, coalesced=True)
                        await self._record_capture_event(
                            conn,
                            capture_id=recent["id"],
                            event_type="debounced",
                            actor=actor,
                            payload={"trigger_reason": trigger_reason, "source_url": source_url},
                        )
                        return {
                            "capture_id": recent["id"],
                            "coalesced": True,
                            "debounced": True,
                            "status": recent["status"],
                            "priority": priority,
                        }

                row = None
                coalesced = False
                for _ in range(3):
                    row = await conn.fetchrow(
                        """
                        insert into raw_captures (source_url, trigger_reason, priority)
                        values ($1, $2, $3)
                        on conflict (source_url) where status in ('pending', 'parsing') do nothing
                        returning id::text as id, status, priority
                        """,
                        source_url,
                        trigger_reason,
                        priority,
                    )
                    if row:
                        break
                    row = await conn.fetchrow(
                        """
                        update raw_captures
                        set priority = least(priority, $2::smallint)
                        where source_url = $1 and status in ('pending', 'parsing')
                        returning id::text as id, status, priority
                        """,
                        source_url,
                        priority,
                    )
                    if row:
                        coalesced = True
                        break
                if not row:
                    raise RepositoryConflictError("capture intake contended; try again")

                await self._bump_trigger_counter(conn, trigger_reason=trigger_reason, coalesced=coalesced)
                await self._record_capture_event(
                    conn,
                    capture_id=row["id"],
                    event_type="coalesced" if coalesced else "intake",
                    actor=actor,
                    payload={"trigger_reason": trigger_reason, "source_url": source_url, "priority": priority},
                )
                return {
                    "capture_id": row["id"],
                    "coalesced": coalesced,
                    "debounced": False,
                    "status": row["status"],
                    "priority": row["priority"],
                }

    async def claim_pending_captures(self, *, worker_id: str, limit: int, max_in_flight: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock($1)", SCHEDULER_ADVISORY_LOCK_KEY)
                in_flight = await conn.fetchval("select count(*) from raw_captures where status = 'parsing'")
                available = min(limit, max_in_flight - in_flight)
                if available <= 0:
                    return []

                rows = await conn.fetch(
                    f"""
                    with claimable as (
                      select id
                      from raw_captures
                      where status = 'pending'
                      order by priority asc, fetched_at asc, created_at asc
                      limit $1
                      for update skip locked
                    )
                    update raw_captures c
                    set
                      status = 'parsing',
                      claim_token = gen_random_uuid(),
                      claimed_by = $2,
                      claimed_at = now(),
                      updated_at = now()
                    from claimable
                    where c.id = claimable.id
                    returning {CAPTURE_COLUMNS}
                    """,
                    available,
                    worker_id,
                )
                for row in rows:
                    await self._record_capture_event(
                        conn,
                        capture_id=row["id"],
                        event_type="claimed",
                        actor=worker_id,
                        payload={"parse_attempts": row["parse_attempts"], "priority": row["priority"]},
                    )
                captures = [self._capture_row_to_dict(row) for row in rows]
                captures.sort(key=lambda capture: (capture["priority"], capture["fetched_at"], capture["created_at"]))
                return captures

    async def get_latest_completed_capture(self, *, source_url: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {CAPTURE_COLUMNS}
            from raw_captures c
            where c.source_url = $1 and c.status = 'completed'
            order by c.fetched_at desc, c.updated_at desc
            limit 1
            """,
            source_url,
        )
        return self._capture_row_to_dict(row) if row else None

    async def release_capture(self, *, capture_id: str, claim_token: str, actor: str, reason: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    update raw_captures
                    set
                      status = 'pending',
                      claim_token = null,
                      claimed_by = null,
                      claimed_at = null,
                      updated_at = now()
                    where id = $1::uuid and status = 'parsing' and claim_token = $2::uuid
                    returning id::text as id
                    """,
                    capture_id,
                    claim_token,
                )
                if not row:
                    raise InvariantViolation(f"claim on capture {capture_id} was lost")
                await self._record_capture_event(
                    conn, capture_id=capture_id, event_type="deferred", actor=actor, payload={"reason": reason}
                )

    async def complete_capture(
        self,
        *,
        capture_id: str,
        claim_token: str,
        actor: str,
        outcome: str,
        http_status: int,
        etag: str | None,
        last_modified: str | None,
        content_hash: str | None,
        linked_entity_id: str | None,
        payload: bytes | None = None,
    ) -> dict[str, Any]:
        """Mark a claimed capture completed without touching entities (304 or unchanged body)."""
        if outcome not in CAPTURE_OUTCOMES:
            raise RepositoryValidationError(f"unknown outcome: {outcome}")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update raw_captures c
                    set
                      status = 'completed',
                      outcome = $3,
                      http_status = $4,
                      etag = $5,
                      last_modified = $6,
                      content_hash = $7,
                      linked_entity_id = $8::uuid,
                      payload = coalesce($9::bytea, c.payload),
                      parse_error = null,
                      claim_token = null,
                      fetched_at = now(),
                      updated_at = now()
                    where c.id = $1::uuid and c.status = 'parsing' and c.claim_token = $2::uuid
                    returning {CAPTURE_COLUMNS}
                    """,
                    capture_id,
                    claim_token,
                    outcome,
                    http_status,
                    etag,
                    last_modified,
                    content_hash,
                    linked_entity_id,
                    payload,
                )
                if not row:
                    raise InvariantViolation(f"claim on capture {capture_id} was lost")
                await self._record_capture_event(
                    conn,
                    capture_id=capture_id,
                    event_type="completed",
                    actor=actor,
                    payload={"outcome": outcome, "http_status": http_status},
                )
                return self._capture_row_to_dict(row)

    async def commit_parse_result(
        self,
        *,
        capture_id: str,
        claim_token: str,
        actor: str,
        feed: ParsedFeed,
        http_status: int,
        etag: str | None,
        last_modified: str | None,
        content_hash: str,
        payload: bytes,
    ) -> dict[str, Any]:
        """Upsert the parsed podcast and episodes and complete the capture in one transaction."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchrow(
                    """
                    select source_url, trigger_reason
                    from raw_captures
                    where id = $1::uuid and status = 'parsing' and claim_token = $2::uuid
                    for update
                    """,
                    capture_id,
                    claim_token,
                )
                if not claimed:
                    raise InvariantViolation(f"claim on capture {capture_id} was lost")

                podcast_id = await self._upsert_parsed_feed(
                    conn,
                    feed_url=claimed["source_url"],
                    feed=feed,
                    went_live=claimed["trigger_reason"] in LIVE_TRIGGER_REASONS,
                )
                row = await conn.fetchrow(
                    f"""
                    update raw_captures c
                    set
                      status = 'completed',
                      outcome = 'parsed',
                      http_status = $2,
                      etag = $3,
                      last_modified = $4,
                      content_hash = $5,
                      payload = $6,
                      linked_entity_id = $7::uuid,
                      parse_error = null,
                      claim_token = null,
                      fetched_at = now(),
                      parsed_at = now(),
                      updated_at = now()
                    where c.id = $1::uuid
                    returning {CAPTURE_COLUMNS}
                    """,
                    capture_id,
                    http_status,
                    etag,
                    last_modified,
                    content_hash,
                    payload,
                    podcast_id,
                )
                await self._record_capture_event(
                    conn,
                    capture_id=capture_id,
                    event_type="completed",
                    actor=actor,
                    payload={"outcome": "parsed", "podcast_id": podcast_id, "episodes": len(feed.episodes)},
                )
                return self._capture_row_to_dict(row)

    async def fail_capture(
        self,
        *,
        capture_id: str,
        claim_token: str,
        actor: str,
        error: str,
        http_status: int | None = None,
        count_attempt: bool = True,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update raw_captures c
                    set
                      status = 'failed',
                      parse_attempts = c.parse_attempts + $5::int,
                      transport_failures = c.transport_failures + 1 - $5::int,
                      parse_error = $3,
                      http_status = coalesce($4, c.http_status),
                      outcome = null,
                      claim_token = null,
                      claimed_by = null,
                      claimed_at = null,
                      updated_at = now()
                    where c.id = $1::uuid and c.status = 'parsing' and c.claim_token = $2::uuid
                    returning {CAPTURE_COLUMNS}
                    """,
                    capture_id,
                    claim_token,
                    error,
                    http_status,
                    1 if count_attempt else 0,
                )
                if not row:
                    raise InvariantViolation(f"claim on capture {capture_id} was lost")

                attempts = row["parse_attempts"]
                terminal = count_attempt and attempts >= self.parse_max_attempts
                # uncounted failures back off on their own counter
                backoff_step = attempts if count_attempt else row["transport_failures"]
                next_retry_at: datetime | None = None
                await self._record_capture_event(
                    conn,
                    capture_id=capture_id,
                    event_type="failed",
                    actor=actor,
                    payload={
                        "error": error,
                        "parse_attempts": attempts,
                        "transport_failures": row["transport_failures"],
                        "counted": count_attempt,
                        "terminal": terminal,
                    },
                )
                if not terminal:
                    delay = compute_retry_delay_seconds(
                        max(1, backoff_step),
                        base_seconds=self.parse_retry_base_seconds,
                        max_seconds=self.parse_retry_max_seconds,
                    )
                    next_retry_at = await conn.fetchval(
                        """
                        insert into capture_retry_queue (capture_id, due_at)
                        values ($1::uuid, now() + ($2::int * interval '1 second'))
                        on conflict (capture_id) do update set due_at = excluded.due_at
                        returning due_at
                        """,
                        capture_id,
                        delay,
                    )
                    await self._record_capture_event(
                        conn,
                        capture_id=capture_id,
                        event_type="retry_scheduled",
                        actor=actor,
                        payload={"delay_seconds": delay},
                    )

                capture = self._capture_row_to_dict(row)
                capture["next_retry_at"] = next_retry_at
                return capture

    async def promote_due_retries(self, *, limit: int, actor: str = "system") -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        promoted = 0

        async with pool.acquire() as conn:
            async with conn.transaction():
                due_rows = await conn.fetch(
                    """
                    select q.capture_id::text as capture_id
                    from capture_retry_queue q
                    where q.due_at <= now()
                    order by q.due_at asc
                    limit $1
                    for update skip locked
                    """,
                    bounded_limit,
                )
                for due in due_rows:
                    capture_id = due["capture_id"]
                    await conn.execute("delete from capture_retry_queue where capture_id = $1::uuid", capture_id)
                    row = None
                    try:
                        async with conn.transaction():
                            row = await conn.fetchrow(
                                """
                                update raw_captures c
                                set status = 'pending', updated_at = now()
                                where c.id = $1::uuid
                                  and c.status = 'failed'
                                  and not exists (
                                    select 1
                                    from raw_captures other
                                    where other.source_url = c.source_url
                                      and other.status in ('pending', 'parsing')
                                  )
                                returning c.id::text as id
                                """,
                                capture_id,
                            )
                    except pg_exc.UniqueViolationError:
                        row = None

                    if row:
                        promoted += 1
                        event_type = "retry_promoted"
                    else:
                        event_type = "retry_superseded"
                    await self._record_capture_event(
                        conn, capture_id=capture_id, event_type=event_type, actor=actor, payload={}
                    )
        return promoted

    async def reap_stale_claims(self, *, stale_after_seconds: int, limit: int, actor: str = "system") -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id, claimed_by
                      from raw_captures
                      where status = 'parsing'
                        and claimed_at is not null
                        and claimed_at <= now() - ($1::int * interval '1 second')
                      order by claimed_at asc
                      limit $2
                      for update skip locked
                    )
                    update raw_captures c
                    set
                      status = 'pending',
                      claim_token = null,
                      claimed_by = null,
                      claimed_at = null,
                      updated_at = now()
                    from stale
                    where c.id = stale.id
                    returning c.id::text as id, stale.claimed_by as previous_owner
                    """,
                    stale_after_seconds,
                    bounded_limit,
                )
                for row in rows:
                    await self._record_capture_event(
                        conn,
                        capture_id=row["id"],
                        event_type="claim_reaped",
                        actor=actor,
                        payload={"previous_owner": row["previous_owner"], "stale_after_seconds": stale_after_seconds},
                    )
                return len(rows)

    async def purge_completed_older_than(self, *, older_than_seconds: int, limit: int) -> int:
        if older_than_seconds < 0:
            raise RepositoryValidationError("retention must be >= 0 seconds")
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 10000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with doomed as (
                      select id
                      from raw_captures
                      where status = 'completed'
                        and fetched_at < now() - ($1::bigint * interval '1 second')
                      order by fetched_at asc
                      limit $2
                      for update skip locked
                    )
                    delete from raw_captures r
                    using doomed
                    where r.id = doomed.id
                    returning r.id
                    """,
                    older_than_seconds,
                    bounded_limit,
                )
                if rows:
                    await conn.execute(
                        "delete from capture_events where capture_id = any($1::uuid[])",
                        [row["id"] for row in rows],
                    )
                return len(rows)

    async def list_captures(
        self,
        *,
        status: str | None,
        trigger_reason: str | None,
        source_url: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        normalized_status = self._coerce_text(status)
        if normalized_status and normalized_status not in CAPTURE_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, parsing, completed, failed")
        normalized_reason = self._coerce_text(trigger_reason)
        if normalized_reason and normalized_reason not in TRIGGER_REASONS:
            raise RepositoryValidationError(
                "trigger_reason must be one of: live, liveEnd, update, scheduledRefresh, manual",
            )

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {CAPTURE_COLUMNS}, q.due_at as next_retry_at
            from raw_captures c
            left join capture_retry_queue q on q.capture_id = c.id
            where ($1::text is null or c.status = $1)
              and ($2::text is null or c.trigger_reason = $2)
              and ($3::text is null or c.source_url = $3)
            order by c.updated_at desc, c.id desc
            limit $4
            offset $5
            """,
            normalized_status,
            normalized_reason,
            self._coerce_text(source_url),
            limit,
            offset,
        )
        return [self._capture_row_to_dict(row) for row in rows]

    async def get_capture(self, *, capture_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {CAPTURE_COLUMNS}, q.due_at as next_retry_at
                from raw_captures c
                left join capture_retry_queue q on q.capture_id = c.id
                where c.id = $1::uuid
                """,
                capture_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("capture not found") from exc
        if not row:
            raise RepositoryNotFoundError("capture not found")
        return self._capture_row_to_dict(row)

    async def retry_capture(self, *, capture_id: str, actor: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        "select source_url, status from raw_captures where id = $1::uuid for update",
                        capture_id,
                    )
                    if not current:
                        raise RepositoryNotFoundError("capture not found")
                    if current["status"] != "failed":
                        raise RepositoryConflictError(f"capture is {current['status']}; only failed captures retry")
                    in_flight = await conn.fetchval(
                        """
                        select 1 from raw_captures
                        where source_url = $1 and status in ('pending', 'parsing')
                        """,
                        current["source_url"],
                    )
                    if in_flight:
                        raise RepositoryConflictError("another capture for this feed is already in flight")

                    row = await conn.fetchrow(
                        f"""
                        update raw_captures c
                        set status = 'pending', updated_at = now()
                        where c.id = $1::uuid
                        returning {CAPTURE_COLUMNS}
                        """,
                        capture_id,
                    )
                    await conn.execute("delete from capture_retry_queue where capture_id = $1::uuid", capture_id)
                    await self._record_capture_event(
                        conn,
                        capture_id=capture_id,
                        event_type="manual_retry",
                        actor=actor,
                        payload={"parse_attempts": row["parse_attempts"]},
                    )
                    return self._capture_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("capture not found") from exc

    async def list_capture_events(self, *, capture_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        await self.get_capture(capture_id=capture_id)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, capture_id::text as capture_id, event_type, actor, payload, created_at
            from capture_events
            where capture_id = $1::uuid
            order by id asc
            limit $2
            offset $3
            """,
            capture_id,
            limit,
            offset,
        )
        return [
            {
                "id": row["id"],
                "capture_id": row["capture_id"],
                "event_type": row["event_type"],
                "actor": row["actor"],
                "payload": self._coerce_json_dict(row["payload"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def enqueue_due_refreshes(self, *, refresh_after_hours: int, limit: int, actor: str = "system") -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with due as (
                      select p.feed_url
                      from podcasts p
                      cross join lateral (
                        select coalesce(max(c.fetched_at), p.updated_at) as last_checked_at
                        from raw_captures c
                        where c.source_url = p.feed_url
                      ) checked
                      where checked.last_checked_at <= now() - ($1::int * interval '1 hour')
                        and not exists (
                          select 1
                          from raw_captures c
                          where c.source_url = p.feed_url
                            and c.status in ('pending', 'parsing')
                        )
                      order by checked.last_checked_at asc
                      limit $2
                    )
                    insert into raw_captures (source_url, trigger_reason, priority)
                    select feed_url, 'scheduledRefresh', $3::smallint from due
                    on conflict (source_url) where status in ('pending', 'parsing') do nothing
                    returning id::text as id, source_url
                    """,
                    refresh_after_hours,
                    bounded_limit,
                    PRIORITY_LOW,
                )
                for row in rows:
                    await self._bump_trigger_counter(conn, trigger_reason="scheduledRefresh", coalesced=False)
                    await self._record_capture_event(
                        conn,
                        capture_id=row["id"],
                        event_type="intake",
                        actor=actor,
                        payload={"trigger_reason": "scheduledRefresh", "source_url": row["source_url"]},
                    )
                return len(rows)

    # podping history

    async def record_podping(
        self,
        *,
        block_number: int,
        op_index: int,
        transaction_id: str | None,
        operation_id: str,
        reason: str,
        medium: str | None,
        feed_urls: list[str],
        detail: str | None,
        intaken_count: int,
        coalesced_count: int,
    ) -> None:
        """Append one decoded podping; a rescanned block does not duplicate rows."""
        if reason not in PODPING_REASONS:
            raise RepositoryValidationError(f"unknown podping reason: {reason}")

        pool = await self._get_pool()
        await pool.execute(
            """
            insert into podping_events (
              block_number, op_index, transaction_id, operation_id, reason, medium,
              feed_urls, detail, intaken_count, coalesced_count
            )
            values ($1, $2, $3, $4, $5, $6, $7::text[], $8, $9, $10)
            on conflict (block_number, op_index) do nothing
            """,
            block_number,
            op_index,
            transaction_id,
            operation_id,
            reason,
            medium,
            feed_urls,
            detail,
            intaken_count,
            coalesced_count,
        )

    async def list_podpings(
        self,
        *,
        reason: str | None,
        feed_url: str | None,
        block_number: int | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        normalized_reason = self._coerce_text(reason)
        if normalized_reason and normalized_reason not in PODPING_REASONS:
            raise RepositoryValidationError("reason must be one of: live, liveEnd, update, unrecognized")

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id,
              block_number,
              op_index,
              transaction_id,
              operation_id,
              reason,
              medium,
              feed_urls,
              detail,
              intaken_count,
              coalesced_count,
              created_at
            from podping_events
            where ($1::text is null or reason = $1)
              and ($2::text is null or feed_urls @> array[$2::text])
              and ($3::bigint is null or block_number = $3)
            order by block_number desc, op_index desc
            limit $4
            offset $5
            """,
            normalized_reason,
            self._coerce_text(feed_url),
            block_number,
            limit,
            offset,
        )
        podpings = []
        for row in rows:
            podping = dict(row)
            podping["feed_urls"] = list(podping["feed_urls"] or [])
            podpings.append(podping)
        return podpings

    async def purge_podpings_older_than(self, *, older_than_seconds: int, limit: int) -> int:
        if older_than_seconds < 0:
            raise RepositoryValidationError("retention must be >= 0 seconds")
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 10000))

        rows = await pool.fetch(
            """
            with doomed as (
              select id
              from podping_events
              where created_at < now() - ($1::bigint * interval '1 second')
              order by created_at asc
              limit $2
              for update skip locked
            )
            delete from podping_events p
            using doomed
            where p.id = doomed.id
            returning p.id
            """,
            older_than_seconds,
            bounded_limit,
        )
        return len(rows)

    # structured store

    async def upsert_parsed_feed(self, *, feed_url: str, feed: ParsedFeed, went_live: bool = False) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                return await self._upsert_parsed_feed(conn, feed_url=feed_url, feed=feed, went_live=went_live)

    async def get_podcast(self, *, podcast_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  p.id::text as id,
                  p.feed_url,
                  p.title,
                  p.link,
                  p.description,
                  p.author,
                  p.language,
                  p.image_url,
                  p.explicit,
                  p.podcast_guid,
                  p.medium,
                  p.categories,
                  p.has_gone_live,
                  (select max(c.fetched_at) from raw_captures c where c.source_url = p.feed_url) as last_checked_at,
                  p.created_at,
                  p.updated_at,
                  (select count(*) from episodes e where e.podcast_id = p.id) as episode_count
                from podcasts p
                where p.id = $1::uuid
                """,
                podcast_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("podcast not found") from exc
        if not row:
            raise RepositoryNotFoundError("podcast not found")
        podcast = dict(row)
        podcast["categories"] = list(podcast["categories"] or [])
        return podcast

    async def list_episodes(self, *, podcast_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        await self.get_podcast(podcast_id=podcast_id)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              podcast_id::text as podcast_id,
              guid,
              title,
              description,
              enclosure_url,
              enclosure_type,
              enclosure_length,
              published_at,
              duration_seconds,
              episode_number,
              season_number,
              episode_type,
              created_at,
              updated_at
            from episodes
            where podcast_id = $1::uuid
            order by published_at desc nulls last, guid asc
            limit $2
            offset $3
            """,
            podcast_id,
            limit,
            offset,
        )
        return [dict(row) for row in rows]

    async def _upsert_parsed_feed(
        self,
        conn: asyncpg.Connection,
        *,
        feed_url: str,
        feed: ParsedFeed,
        went_live: bool,
    ) -> str:
        podcast_id = await conn.fetchval(
            """
            insert into podcasts (
              feed_url, title, link, description, author, language, image_url,
              explicit, podcast_guid, medium, categories, has_gone_live
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::text[], $12)
            on conflict (feed_url) do update
            set
              title = excluded.title,
              link = excluded.link,
              description = excluded.description,
              author = excluded.author,
              language = excluded.language,
              image_url = excluded.image_url,
              explicit = excluded.explicit,
              podcast_guid = excluded.podcast_guid,
              medium = excluded.medium,
              categories = excluded.categories,
              has_gone_live = podcasts.has_gone_live or excluded.has_gone_live,
              updated_at = now()
            returning id::text
            """,
            feed_url,
            feed.title,
            feed.link,
            feed.description,
            feed.author,
            feed.language,
            feed.image_url,
            feed.explicit,
            feed.podcast_guid,
            feed.medium,
            feed.categories,
            went_live,
        )
        if feed.episodes:
            await conn.executemany(
                """
                insert into episodes (
                  podcast_id, guid, title, description, enclosure_url, enclosure_type,
                  enclosure_length, published_at, duration_seconds, episode_number,
                  season_number, episode_type
                )
                values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                on conflict (podcast_id, guid) do update
                set
                  title = excluded.title,
                  description = excluded.description,
                  enclosure_url = excluded.enclosure_url,
                  enclosure_type = excluded.enclosure_type,
                  enclosure_length = excluded.enclosure_length,
                  published_at = excluded.published_at,
                  duration_seconds = excluded.duration_seconds,
                  episode_number = excluded.episode_number,
                  season_number = excluded.season_number,
                  episode_type = excluded.episode_type,
                  updated_at = now()
                """,
                [
                    (
                        podcast_id,
                        episode.guid,
                        episode.title,
                        episode.description,
                        episode.enclosure_url,
                        episode.enclosure_type,
                        episode.enclosure_length,
                        episode.published_at,
                        episode.duration_seconds,
                        episode.episode_number,
                        episode.season_number,
                        episode.episode_type,
                    )
                    for episode in feed.episodes
                ],
            )
        return podcast_id

    async def _bump_trigger_counter(self, conn: asyncpg.Connection, *, trigger_reason: str, coalesced: bool) -> None:
        await conn.execute(
            """
            insert into trigger_counters (trigger_reason, received_count, coalesced_count)
            values ($1, 1, $2)
            on conflict (trigger_reason) do update
            set
              received_count = trigger_counters.received_count + 1,
              coalesced_count = trigger_counters.coalesced_count + excluded.coalesced_count,
              updated_at = now()
            """,
            trigger_reason,
            1 if coalesced else 0,
        )

    async def _record_capture_event(
        self,
        conn: asyncpg.Connection,
        *,
        capture_id: str,
        event_type: str,
        actor: str,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into capture_events (capture_id, event_type, actor, payload)
            values ($1::uuid, $2, $3, $4::jsonb)
            """,
            capture_id,
            event_type,
            actor,
            json.dumps(payload, default=str),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("PPI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _capture_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        capture = dict(row)
        capture.setdefault("next_retry_at", None)
        return capture

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from podping_ingest.services.store import InMemoryRepository

        return InMemoryRepository(
            parse_max_attempts=settings.parse_max_attempts,
            parse_retry_base_seconds=settings.parse_retry_base_seconds,
            parse_retry_max_seconds=settings.parse_retry_max_seconds,
            low_priority_debounce_seconds=settings.low_priority_debounce_seconds,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        parse_max_attempts=settings.parse_max_attempts,
        parse_retry_base_seconds=settings.parse_retry_base_seconds,
        parse_retry_max_seconds=settings.parse_retry_max_seconds,
        low_priority_debounce_seconds=settings.low_priority_debounce_seconds,
    )
