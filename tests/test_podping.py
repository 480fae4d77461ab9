import json

from podping_ingest.jobs.podping import PodpingKind, decode_podping
from podping_ingest.services.ledger import LedgerEvent


def _event(payload, operation_id: str = "pp_podcast_update") -> LedgerEvent:
    raw = payload if isinstance(payload, str) else json.dumps(payload)
    return LedgerEvent(block_number=100, operation_id=operation_id, payload=raw)


def test_decode_v1_payload_uses_reason_and_iris() -> None:
    podping = decode_podping(
        _event(
            {
                "version": "1.0",
                "medium": "podcast",
                "reason": "live",
                "iris": ["https://feed.example/a.xml", "https://feed.example/a.xml", "ipfs://abc"],
            },
            operation_id="pp_podcast_live",
        )
    )
    assert podping.kind is PodpingKind.LIVE
    assert podping.trigger_reason == "live"
    assert podping.urls == ("https://feed.example/a.xml",)
    assert podping.medium == "podcast"


def test_decode_falls_back_to_operation_id_for_reason() -> None:
    live_end = decode_podping(_event({"urls": ["https://feed.example/b.xml"]}, operation_id="pp_podcast_liveEnd"))
    live = decode_podping(_event({"urls": ["https://feed.example/b.xml"]}, operation_id="pp_video_live"))
    update = decode_podping(_event({"url": "https://feed.example/b.xml"}, operation_id="podping"))

    assert live_end.kind is PodpingKind.LIVE_END
    assert live.kind is PodpingKind.LIVE
    assert update.kind is PodpingKind.UPDATE


def test_decode_marks_malformed_payloads_unrecognized() -> None:
    not_json = decode_podping(_event("{not json"))
    not_object = decode_podping(_event("[1, 2]"))
    no_urls = decode_podping(_event({"reason": "update", "iris": []}))
    odd_reason = decode_podping(_event({"reason": "newIRI", "iris": ["https://feed.example/c.xml"]}))

    for podping in (not_json, not_object, no_urls, odd_reason):
        assert podping.kind is PodpingKind.UNRECOGNIZED
        assert not podping.recognized
        assert podping.trigger_reason is None
        assert podping.detail
