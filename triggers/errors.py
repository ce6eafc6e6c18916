"""
Lead Sentinel — error taxonomy for the lead-ingestion batch.

Fatal (abort the whole invocation): AuthError, SearchError.
Per-message (caught by the batch loop): RateLimitExceeded, ParseFailure,
PersistenceError.
"""
from typing import Optional


class LeadPipelineError(Exception):
    """Base class for all lead pipeline failures."""


class AuthError(LeadPipelineError):
    """Token exchange exhausted its retries."""


class SearchError(LeadPipelineError):
    """Mailbox search failed definitively."""

    RATE_LIMIT = "rate_limit_exceeded"
    TIMEOUT = "gmail_api_timeout"
    GENERIC = "gmail_search_error"

    def __init__(self, message: str, cause: str = GENERIC):
        super().__init__(message)
        self.cause = cause


class RateLimitExceeded(LeadPipelineError):
    """Gmail kept answering 429 / quota-403 after all retries."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ParseFailure(LeadPipelineError):
    """A parser could not find the minimum fields for a lead."""


class PersistenceError(LeadPipelineError):
    """A database read or write failed for one message."""


class GmailApiError(LeadPipelineError):
    """Gmail answered with a non-retryable error status."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
