from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

PodpingReason = Literal["live", "liveEnd", "update", "unrecognized"]


class PodpingOut(BaseModel):
    id: int
    block_number: int
    op_index: int
    transaction_id: str | None = None
    operation_id: str
    reason: PodpingReason
    medium: str | None = None
    feed_urls: list[str] = Field(default_factory=list)
    detail: str | None = None
    intaken_count: int = 0
    coalesced_count: int = 0
    created_at: datetime
