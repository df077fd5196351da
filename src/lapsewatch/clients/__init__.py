from lapsewatch.clients.base import (
    BaseHTTPClient,
    HTTPFailure,
    PermanentHTTPError,
    RetryableHTTPError,
    is_retryable_status,
)

__all__ = [
    "BaseHTTPClient",
    "HTTPFailure",
    "PermanentHTTPError",
    "RetryableHTTPError",
    "is_retryable_status",
]
