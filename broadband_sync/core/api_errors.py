"""
Error classification for responses of the FCC Broadband Map API.

Every error knows whether the request may be tried again. Subclasses pin the
HTTP status and retry policy as class attributes, so the single constructor on
``APIError`` serves the whole hierarchy.
"""

from typing import Optional, Dict, Any


class APIError(Exception):
    """
    Base exception for upstream API failures.

    Attributes:
        message: Human-readable error description
        source: Client name (e.g. 'fcc_bdc')
        status_code: HTTP status code if applicable
        response_data: Parsed body kept for debugging
        retryable: Whether the request may be sent again
    """

    status_code: Optional[int] = None
    retryable: bool = False

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.response_data = response_data
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        text = self.message
        if self.source:
            text = f"[{self.source}] {text}"
        if self.status_code:
            text = f"{text} (HTTP {self.status_code})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the error for a stage failure report."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "source": self.source,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class RetryableError(APIError):
    """Transient failure: 5xx answers, timeouts, dropped connections."""

    retryable = True


class RateLimitError(RetryableError):
    """
    HTTP 429. The client turns ``retry_after`` into a shared cooldown so every
    concurrent caller of the source pauses, not just the one that was refused.
    """

    status_code = 429
    DEFAULT_RETRY_AFTER = 60.0

    def __init__(self, message: str, source: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, source=source)
        self.retry_after = retry_after or self.DEFAULT_RETRY_AFTER


class FatalError(APIError):
    """Permanent failure. Never retried."""


class AuthenticationError(FatalError):
    """The username/hash_value pair was rejected."""

    status_code = 401


class NotFoundError(FatalError):
    """A filing or listing does not exist."""

    status_code = 404


class ValidationError(FatalError):
    """Request parameters were rejected."""

    status_code = 400


_FATAL_BY_STATUS = {
    400: (ValidationError, "Bad request"),
    401: (AuthenticationError, "Authentication failed - check FCC_MAP_USERNAME/FCC_MAP_API_KEY"),
    403: (FatalError, "Access forbidden"),
    404: (NotFoundError, "Not found"),
}


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        # HTTP-date form is not used by the Broadband Map
        return None


def classify_http_error(
    status_code: int,
    response_text: str = "",
    source: Optional[str] = None,
    retry_after: Optional[str] = None,
) -> APIError:
    """
    Map an HTTP error status onto the APIError hierarchy.

    Args:
        status_code: HTTP status code
        response_text: Response body; only the first 200 characters are kept
        source: Client name
        retry_after: Raw ``Retry-After`` header, if any
    """
    snippet = response_text[:200]

    if status_code == 429:
        return RateLimitError(
            f"Rate limited: {snippet}", source=source, retry_after=_parse_retry_after(retry_after)
        )
    if status_code in _FATAL_BY_STATUS:
        error_type, label = _FATAL_BY_STATUS[status_code]
        return error_type(f"{label}: {snippet}", source=source, status_code=status_code)
    if 500 <= status_code < 600:
        return RetryableError(f"Server error: {snippet}", source=source, status_code=status_code)
    return APIError(f"HTTP error {status_code}: {snippet}", source=source, status_code=status_code)
