from __future__ import annotations

import asyncio
import logging
import random
import socket
import time
from datetime import timedelta
from uuid import uuid4

from opentelemetry import trace

from podping_ingest.core.config import Settings, get_settings
from podping_ingest.core.telemetry import configure_logging, setup_telemetry
from podping_ingest.jobs.cleanup import purge_completed_older_than, purge_podpings_older_than
from podping_ingest.jobs.cursor import LedgerCursor
from podping_ingest.jobs.lease_reaper import reap_stale_claims
from podping_ingest.jobs.rate_limiter import TokenBucketRateLimiter
from podping_ingest.jobs.refresh import enqueue_scheduled_refreshes
from podping_ingest.jobs.scheduler import ParseScheduler
from podping_ingest.services.fetcher import FeedFetcher
from podping_ingest.services.ledger import HiveLedgerClient
from podping_ingest.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _next_backoff(backoff: float, settings: Settings) -> float:
    jitter = random.uniform(0.0, 0.5)
    return min(backoff * (2.0 + jitter), settings.max_backoff_seconds)


async def run_poll_loop(cursor: LedgerCursor, settings: Settings) -> None:
    backoff = settings.poll_interval_seconds
    while True:
        try:
            result = await cursor.poll()
            backoff = settings.poll_interval_seconds
            # keep polling without a pause while catching up
            if result.skipped or result.blocks_behind <= cursor.max_blocks_per_poll:
                await asyncio.sleep(settings.poll_interval_seconds)
        except Exception as exc:
            sleep_for = _next_backoff(backoff, settings)
            logger.exception("ledger poll failed: %s; retry in %.1fs", exc, sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = sleep_for


async def run_dispatch_loop(scheduler: ParseScheduler, repository, settings: Settings) -> None:
    backoff = settings.scheduler_cycle_interval_seconds
    last_reap_at = 0.0
    last_cleanup_at = 0.0
    last_refresh_enqueue_at = 0.0

    while True:
        try:
            with tracer.start_as_current_span("worker.dispatch_cycle"):
                now = time.monotonic()
                if now - last_reap_at >= settings.reaper_interval_seconds:
                    await reap_stale_claims(
                        repository,
                        stale_after_seconds=settings.stale_claim_timeout_seconds,
                        limit=settings.reaper_batch_size,
                        actor=scheduler.worker_id,
                    )
                    last_reap_at = now

                if now - last_cleanup_at >= settings.cleanup_interval_seconds:
                    await purge_completed_older_than(
                        repository,
                        timedelta(days=settings.capture_retention_days),
                        settings.cleanup_batch_size,
                    )
                    await purge_podpings_older_than(
                        repository,
                        timedelta(days=settings.podping_retention_days),
                        settings.cleanup_batch_size,
                    )
                    last_cleanup_at = now

                if now - last_refresh_enqueue_at >= settings.refresh_enqueue_interval_seconds:
                    await enqueue_scheduled_refreshes(
                        repository,
                        refresh_after_hours=settings.refresh_interval_hours,
                        limit=settings.refresh_enqueue_batch_size,
                        actor=scheduler.worker_id,
                    )
                    last_refresh_enqueue_at = now

                result = await scheduler.run_cycle()
                if result.claimed:
                    logger.info(
                        "dispatch cycle claimed=%s parsed=%s not_modified=%s unchanged=%s failed=%s deferred=%s",
                        result.claimed,
                        result.parsed,
                        result.not_modified,
                        result.unchanged,
                        result.failed,
                        result.deferred,
                    )
            backoff = settings.scheduler_cycle_interval_seconds
            if result.claimed < scheduler.concurrency:
                await asyncio.sleep(settings.scheduler_cycle_interval_seconds)
        except Exception as exc:
            sleep_for = _next_backoff(backoff, settings)
            logger.exception("dispatch iteration failed: %s; retry in %.1fs", exc, sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = sleep_for


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry = setup_telemetry(settings, component="worker")
    worker_id = settings.worker_id or f"{socket.gethostname()}:{uuid4().hex[:8]}"
    repository = get_repository()

    ledger = HiveLedgerClient(
        settings.hive_rpc_nodes,
        timeout_seconds=settings.hive_rpc_timeout_seconds,
        user_agent=settings.hive_user_agent,
    )
    cursor = LedgerCursor(
        repository,
        ledger,
        owner=worker_id,
        lease_seconds=settings.sync_lease_seconds,
        max_blocks_per_poll=settings.ledger_max_blocks_per_poll,
        initial_lag_blocks=settings.ledger_initial_lag_blocks,
    )
    scheduler = ParseScheduler(
        repository,
        FeedFetcher(timeout_seconds=settings.fetch_timeout_seconds, user_agent=settings.fetch_user_agent),
        TokenBucketRateLimiter(settings.rate_limit_per_second, settings.rate_limit_capacity),
        worker_id=worker_id,
        concurrency=settings.scheduler_concurrency,
        acquire_timeout_seconds=settings.rate_limit_acquire_timeout_seconds,
        cycle_deadline_seconds=settings.scheduler_cycle_deadline_seconds,
        retry_promotion_batch_size=settings.retry_promotion_batch_size,
    )

    logger.info("worker starting id=%s backend=%s", worker_id, settings.storage_backend)
    try:
        await repository.ensure_schema()
        await asyncio.gather(
            run_poll_loop(cursor, settings),
            run_dispatch_loop(scheduler, repository, settings),
        )
    finally:
        await repository.close()
        telemetry.shutdown()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
