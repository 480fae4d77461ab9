class IngestError(Exception):
    """Base error for the ingest pipeline."""


class TransportError(IngestError):
    """Raised when the ledger or a feed origin is unreachable."""


class RateLimitTimeout(IngestError):
    """Raised when a rate-limit permit is not granted before the deadline."""


class ParseError(IngestError):
    """Raised when fetched content cannot be turned into a feed."""


class InvariantViolation(IngestError):
    """Raised when a conditional transition no longer matches the stored row."""
