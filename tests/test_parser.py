from __future__ import annotations

from datetime import datetime, timezone

import pytest

from podping_ingest.core.errors import ParseError
from podping_ingest.services.parser import parse_duration, parse_feed

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">
  <channel>
    <title>  Example Show </title>
    <link>https://example.com/show</link>
    <description>Weekly example episodes.</description>
    <language>en</language>
    <itunes:author>Example Author</itunes:author>
    <itunes:image href="https://cdn.example/cover.jpg"/>
    <item>
      <title>Episode 1</title>
      <guid>ep-1</guid>
      <enclosure url="https://cdn.example/ep1.mp3" type="audio/mpeg" length="1234"/>
      <pubDate>Wed, 01 May 2024 10:00:00 GMT</pubDate>
      <itunes:duration>01:02:03</itunes:duration>
    </item>
    <item>
      <title>Episode 1 again</title>
      <guid>ep-1</guid>
    </item>
    <item>
      <title>No guid</title>
      <enclosure url="https://cdn.example/ep2.mp3" type="audio/mpeg" length="oops"/>
    </item>
  </channel>
</rss>
"""


def test_parse_feed_extracts_podcast_and_episodes() -> None:
    feed = parse_feed(RSS)

    assert feed.title == "Example Show"
    assert feed.link == "https://example.com/show"
    assert feed.language == "en"
    assert feed.author == "Example Author"
    assert feed.image_url == "https://cdn.example/cover.jpg"
    assert [episode.guid for episode in feed.episodes] == ["ep-1", "https://cdn.example/ep2.mp3"]

    first, second = feed.episodes
    assert first.title == "Episode 1"
    assert first.enclosure_url == "https://cdn.example/ep1.mp3"
    assert first.enclosure_type == "audio/mpeg"
    assert first.enclosure_length == 1234
    assert first.published_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert first.duration_seconds == 3723
    assert second.enclosure_length is None

    record = feed.podcast_record()
    assert "episodes" not in record
    assert record["title"] == "Example Show"


@pytest.mark.parametrize("payload", [b"", b"   ", b"this is not xml at all"])
def test_parse_feed_rejects_non_feeds(payload: bytes) -> None:
    with pytest.raises(ParseError):
        parse_feed(payload)


def test_parse_feed_requires_title() -> None:
    payload = b'<?xml version="1.0"?><rss version="2.0"><channel><link>https://x.example</link></channel></rss>'
    with pytest.raises(ParseError, match="no title"):
        parse_feed(payload)


@pytest.mark.parametrize(
    ("value", "expected"),
    [("45", 45), ("02:05", 125), ("1:00:00", 3600), ("", None), ("abc", None), (None, None)],
)
def test_parse_duration(value, expected) -> None:
    assert parse_duration(value) == expected
