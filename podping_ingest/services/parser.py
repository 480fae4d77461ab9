from __future__ import annotations

import calendar
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import feedparser

from podping_ingest.core.errors import ParseError


@dataclass(slots=True)
class ParsedEpisode:
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


@dataclass(slots=True)
class ParsedFeed:
    title: str
    link: str | None = None
    description: str | None = None
    author: str | None = None
    language: str | None = None
    image_url: str | None = None
    explicit: bool | None = None
    podcast_guid: str | None = None
    medium: str | None = None
    categories: list[str] = field(default_factory=list)
    episodes: list[ParsedEpisode] = field(default_factory=list)

    def podcast_record(self) -> dict[str, Any]:
        record = asdict(self)
        record.pop("episodes")
        return record


def parse_feed(payload: bytes) -> ParsedFeed:
    """Parse raw RSS/Atom bytes into a :class:`ParsedFeed`.

    Raises :class:`ParseError` when the document is not a usable feed.
    """
    if not payload or not payload.strip():
        raise ParseError("empty feed body")

    document = feedparser.parse(payload)
    feed = document.get("feed") or {}
    entries = document.get("entries") or []

    if not document.get("version") and not feed and not entries:
        reason = document.get("bozo_exception")
        raise ParseError(f"not a recognizable feed: {reason}" if reason else "not a recognizable feed")

    title = _text(feed.get("title"))
    if not title:
        raise ParseError("feed has no title")

    image = feed.get("image")
    episodes: list[ParsedEpisode] = []
    seen_guids: set[str] = set()
    for entry in entries:
        episode = _parse_entry(entry)
        if episode is None or episode.guid in seen_guids:
            continue
        seen_guids.add(episode.guid)
        episodes.append(episode)

    return ParsedFeed(
        title=title,
        link=_text(feed.get("link")),
        description=_text(feed.get("summary")) or _text(feed.get("subtitle")),
        author=_text(feed.get("author")) or _text(feed.get("itunes_author")),
        language=_text(feed.get("language")),
        image_url=_text(image.get("href")) if isinstance(image, dict) else None,
        explicit=feed.get("itunes_explicit") if isinstance(feed.get("itunes_explicit"), bool) else None,
        podcast_guid=_text(feed.get("podcast_guid")),
        medium=_text(feed.get("podcast_medium")),
        categories=[term for term in (_text(tag.get("term")) for tag in feed.get("tags") or []) if term],
        episodes=episodes,
    )


def _parse_entry(entry: Any) -> ParsedEpisode | None:
    enclosure = next(
        (link for link in entry.get("links") or [] if link.get("rel") == "enclosure" and link.get("href")),
        None,
    )
    enclosure_url = _text(enclosure.get("href")) if enclosure else None
    guid = _text(entry.get("id")) or enclosure_url or _text(entry.get("link"))
    if not guid:
        return None

    return ParsedEpisode(
        guid=guid,
        title=_text(entry.get("title")) or "Untitled episode",
        description=_text(entry.get("summary")),
        enclosure_url=enclosure_url,
        enclosure_type=_text(enclosure.get("type")) if enclosure else None,
        enclosure_length=_as_int(enclosure.get("length")) if enclosure else None,
        published_at=_struct_time_to_datetime(entry.get("published_parsed")),
        duration_seconds=parse_duration(entry.get("itunes_duration")),
        episode_number=_as_int(entry.get("itunes_episode")),
        season_number=_as_int(entry.get("itunes_season")),
        episode_type=_text(entry.get("itunes_episodetype")),
    )


def parse_duration(value: Any) -> int | None:
    """Accepts ``SS``, ``MM:SS`` or ``HH:MM:SS``."""
    text = _text(value)
    if not text:
        return None
    total = 0
    try:
        for part in text.split(":"):
            total = total * 60 + int(float(part))
    except ValueError:
        return None
    return total if total >= 0 else None


def _struct_time_to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
