"""Error taxonomy for the refresh pipeline.

    CFRMetricsError
      FetchError
        TransientFetchError   -- timeout/connection failure, 429, 5xx; retryable
        PermanentFetchError   -- any other non-2xx status; never retried
      ParseError              -- malformed feed or snapshot content
      StorageError            -- local disk / database failure
        SnapshotNotFoundError -- no pointer recorded for (title, date)
      SizeLimitExceeded       -- input or decompressed output over a safety cap
      RefreshInProgressError  -- a refresh cycle is already running

Cancellation is not part of the taxonomy: ``asyncio.CancelledError`` is
allowed to propagate untouched and is never classified as retryable.
"""


class CFRMetricsError(Exception):
    """Base class for all pipeline errors."""


class FetchError(CFRMetricsError):
    """A remote request to the eCFR API failed.

    Attributes:
        url: The requested URL.
        status: HTTP status, or None for network-level failures.
    """

    def __init__(self, message: str, url: str = "", status: int | None = None):
        self.url = url
        self.status = status
        super().__init__(message)


class TransientFetchError(FetchError):
    """Retryable failure.

    Attributes:
        retry_after: Server-requested delay in seconds (429 only), else None.
    """

    def __init__(
        self,
        message: str,
        url: str = "",
        status: int | None = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, url=url, status=status)


class PermanentFetchError(FetchError):
    """Terminal HTTP failure, surfaced without retrying.

    Attributes:
        body: First few KB of the response body, for diagnostics.
    """

    def __init__(self, message: str, url: str = "", status: int | None = None, body: str = ""):
        self.body = body
        super().__init__(message, url=url, status=status)


class ParseError(CFRMetricsError):
    """Feed or snapshot content could not be interpreted."""


class StorageError(CFRMetricsError):
    """Local disk or database failure."""


class SnapshotNotFoundError(StorageError):
    """No snapshot is recorded for the requested key."""

    def __init__(self, title: int, issue_date: str):
        self.title = title
        self.issue_date = issue_date
        super().__init__(f"No snapshot recorded for title {title} at {issue_date}")


class SizeLimitExceeded(CFRMetricsError):
    """A stream or decompressed blob exceeded its configured cap.

    Attributes:
        limit: The cap in bytes.
    """

    def __init__(self, what: str, limit: int):
        self.limit = limit
        super().__init__(f"{what} exceeds the {limit}-byte safety limit")


class RefreshInProgressError(CFRMetricsError):
    """Raised when a refresh is requested while another cycle is running."""

    def __init__(self):
        super().__init__("A refresh cycle is already running")
