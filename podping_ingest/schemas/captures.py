from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

CaptureStatus = Literal["pending", "parsing", "completed", "failed"]
TriggerReason = Literal["live", "liveEnd", "update", "scheduledRefresh", "manual"]


class CaptureOut(BaseModel):
    id: str
    source_url: str
    status: CaptureStatus
    trigger_reason: TriggerReason
    outcome: str | None = None
    parse_attempts: int = 0
    transport_failures: int = 0
    priority: int = 2
    parse_error: str | None = None
    http_status: int | None = None
    content_hash: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    payload_size: int = 0
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    stale_claim: bool = False
    fetched_at: datetime | None = None
    parsed_at: datetime | None = None
    linked_entity_id: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CaptureEventOut(BaseModel):
    id: int
    capture_id: str
    event_type: str
    actor: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class CaptureIntakeRequest(BaseModel):
    feed_url: str = Field(min_length=1, max_length=2048)


class CaptureIntakeOut(BaseModel):
    capture_id: str
    source_url: str
    coalesced: bool


class CleanupRequest(BaseModel):
    retention_days: float | None = Field(default=None, ge=0)
    batch_size: int | None = Field(default=None, ge=1, le=10000)


class CleanupOut(BaseModel):
    purged: int
    retention_seconds: int


class ReapRequest(BaseModel):
    stale_after_seconds: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, ge=1, le=1000)


class ReapOut(BaseModel):
    reaped: int
