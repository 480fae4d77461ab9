from datetime import datetime

from pydantic import BaseModel, Field


class PodcastOut(BaseModel):
    id: str
    feed_url: str
    title: str
    link: str | None = None
    description: str | None = None
    author: str | None = None
    language: str | None = None
    image_url: str | None = None
    explicit: bool | None = None
    podcast_guid: str | None = None
    medium: str | None = None
    categories: list[str] = Field(default_factory=list)
    has_gone_live: bool = False
    episode_count: int = 0
    last_checked_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EpisodeOut(BaseModel):
    id: str
    podcast_id: str
    guid: str
    title: str
    description: str | None = None
    enclosure_url: str | None = None
    enclosure_type: str | None = None
    enclosure_length: int | None = None
    published_at: datetime | None = None
    duration_seconds: int | None = None
    episode_number: int | None = None
    season_number: int | None = None
    episode_type: str | None = None
