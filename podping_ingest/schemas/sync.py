from datetime import datetime

from pydantic import BaseModel, Field


class TriggerCounterOut(BaseModel):
    received_count: int = 0
    coalesced_count: int = 0


class SyncStatusOut(BaseModel):
    initialized: bool
    last_known_head_block: int | None = None
    last_parsed_block: int | None = None
    blocks_behind: int = 0
    total_blocks_processed: int = 0
    total_events_found: int = 0
    last_batch_block_count: int = 0
    last_batch_event_count: int = 0
    is_running: bool = False
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    error_count: int = 0
    last_fetched_at: datetime | None = None
    capture_counts: dict[str, int] = Field(default_factory=dict)
    trigger_counters: dict[str, TriggerCounterOut] = Field(default_factory=dict)


class SyncResetRequest(BaseModel):
    start_block: int = Field(ge=0)
