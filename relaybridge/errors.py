# relaybridge/errors.py
from typing import Optional


class RelayError(Exception):
    """Base class for bridge errors."""


class ConfigError(RelayError):
    pass


class IndexerError(RelayError):
    """Index query failed (timeout, non-200, malformed body or GraphQL errors)."""


class AlreadyClaimed(RelayError):
    """Another caller already claimed this request id. Benign."""

    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} already claimed")
        self.request_id = request_id


class DedupInvariantError(RelayError):
    """complete() called for an entry that was never claimed or already completed."""


class LedgerFetchError(RelayError):
    pass


class PublishError(RelayError):
    """A ledger write for a response failed.

    notification_id is the id of the best-effort error notification, or None if
    that write failed as well.
    """

    def __init__(self, message: str, notification_id: Optional[str] = None):
        super().__init__(message)
        self.notification_id = notification_id


class QuoteError(RelayError):
    pass


class RetryableQuoteError(QuoteError):
    pass


class NonRetryableQuoteError(QuoteError):
    pass


class LedgerWriteError(RelayError):
    """The message unit rejected or failed a ledger write."""
