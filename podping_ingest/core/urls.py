import hashlib
from urllib.parse import urlparse, urlunparse

SUPPORTED_SCHEMES = {"http", "https"}


def normalize_feed_url(raw_url: str) -> str:
    """Conservative feed URL normalization used as the capture dedup key.

    Scheme and host are lowercased, default ports and fragments dropped. Path
    and query are kept verbatim since feed hosts often treat them as opaque.
    """
    if not isinstance(raw_url, str):
        raise ValueError("feed url must be a string")
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise ValueError(f"unsupported feed url scheme: {parsed.scheme or '<none>'}")

    netloc = parsed.netloc.lower()
    if not netloc:
        raise ValueError("feed url is missing a host")
    if "@" in netloc:
        raise ValueError("feed url must not carry credentials")

    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ""))


def content_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()
