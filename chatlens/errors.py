"""
Exception types raised by the ingestion pipeline.

- InvalidMessage: rejected at the adapter boundary, never stored
- RemoteServiceUnavailable (and subclasses): absorbed by local fallbacks
- StorageError: surfaced to the caller, mapped to 5xx by the HTTP layer
"""


class ChatlensError(Exception):
    """Base exception for chatlens errors."""
    pass


class InvalidMessage(ChatlensError):
    """Malformed or empty input at the adapter boundary."""
    pass


class RemoteServiceUnavailable(ChatlensError):
    """A remote LLM call failed, timed out or returned an unusable answer."""
    pass


class ClassificationUnavailable(RemoteServiceUnavailable):
    """Remote categorization failed; the local rule table is used instead."""
    pass


class SummaryUnavailable(RemoteServiceUnavailable):
    """Remote summarization failed; local truncation is used instead."""
    pass


class StorageError(ChatlensError):
    """Persistence layer failure. The pipeline never retries internally."""
    pass
