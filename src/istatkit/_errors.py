"""
Error taxonomy for the istatkit client.

Every failure the client can hit is expressed as one of the exceptions below.
Transport and orchestrator layers catch them and turn them into an ApiResult
carrying a stable exit code, so callers never need to handle raw exceptions
for expected failure modes.

Hierarchy:
    IstatError
    ├── ValidationError        (bad caller input, raised immediately)
    ├── ConnectivityError      (DNS / refused / unreachable)
    ├── HttpStatusError        (non-retryable 4xx/5xx)
    ├── BanSuspectedError      (too many consecutive 429s)
    ├── ParseError             (malformed or empty body)
    └── TransientError         (also a RetryableError)
        ├── RequestTimeoutError
        ├── RateLimitedError   (HTTP 429)
        └── ServiceUnavailableError (HTTP 503)
"""

from __future__ import annotations

import enum
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

from istatkit._retry import MaxRetriesExceededError, RetryableError
from istatkit._utils import is_timeout_exception

if TYPE_CHECKING:
    from istatkit._http import HttpResponse


# =============================================================================
# Exit codes and categories
# =============================================================================


class ExitCode(enum.IntEnum):
    """
    Stable process exit codes reported by every ApiResult.

    Attributes:
        SUCCESS: The operation completed.
        GENERIC_ERROR: Any failure that is neither a timeout nor a rate limit.
        TIMEOUT: The request timed out (after retries).
        RATE_LIMITED: The server rate-limited the client (HTTP 429 or suspected ban).
    """
    SUCCESS = 0
    GENERIC_ERROR = 1
    TIMEOUT = 2
    RATE_LIMITED = 3


class ErrorCategory(enum.StrEnum):
    """Classification of a failure, used for logging and exit-code mapping."""
    TIMEOUT = "timeout"
    CONNECTIVITY = "connectivity"
    HTTP_STATUS = "http_status"
    RATE_LIMITED = "rate_limited"
    PARSE = "parse"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value

    @property
    def exit_code(self) -> ExitCode:
        if self is ErrorCategory.RATE_LIMITED:
            return ExitCode.RATE_LIMITED
        if self is ErrorCategory.TIMEOUT:
            return ExitCode.TIMEOUT
        return ExitCode.GENERIC_ERROR


# =============================================================================
# Exceptions
# =============================================================================


class IstatError(Exception):
    """Base class for every error raised by istatkit."""

    category: ErrorCategory = ErrorCategory.UNKNOWN


class ValidationError(IstatError, ValueError):
    """
    Raised when caller input is invalid.

    Validation errors are never retried and never converted into an ApiResult:
    they indicate a programming or configuration mistake and are raised before
    any network call is attempted.

    Example:
        >>> build_filter_key(0, {})
        Traceback (most recent call last):
        ...
        ValidationError: n_dims must be a positive integer
    """


class ConnectivityError(IstatError):
    """
    Raised when the server cannot be reached (DNS failure, refused connection, etc.).

    HTTP clients raise it for transport-level failures only. A FallbackHttpClient
    tries its fallback strategy before letting it surface.
    """

    category = ErrorCategory.CONNECTIVITY

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class HttpStatusError(IstatError):
    """
    Raised when the server answers with a non-retryable HTTP status.

    Attributes:
        status_code: The HTTP status code.
        url: The requested URL.
    """

    category = ErrorCategory.HTTP_STATUS

    def __init__(self, status_code: int, url: str | None = None, reason: str = ""):
        self.status_code = status_code
        self.url = url
        detail = f" ({reason})" if reason else ""
        super().__init__(f"HTTP error: status code {status_code}{detail} for {url}")


class BanSuspectedError(IstatError):
    """
    Raised when consecutive HTTP 429 responses reach the ban threshold.

    It aborts the retry loop of the current request. The server is likely to
    have temporarily banned this client's IP, so further attempts only extend
    the ban. Wait for a cooldown (typically 1-2 days) before retrying.

    Attributes:
        consecutive_429s: Number of consecutive 429 responses observed.
        threshold: The configured ban threshold.
    """

    category = ErrorCategory.RATE_LIMITED

    def __init__(self, consecutive_429s: int, threshold: int):
        self.consecutive_429s = consecutive_429s
        self.threshold = threshold
        super().__init__(
            f"Rate limited: received {consecutive_429s} consecutive HTTP 429 responses "
            f"(threshold={threshold}). The client IP may be temporarily banned; "
            "wait before sending new requests."
        )


class ParseError(IstatError):
    """Raised when a response body is empty or cannot be parsed."""

    category = ErrorCategory.PARSE


class TransientError(IstatError, RetryableError):
    """
    Base class for failures that the Retrying loop retries with backoff.

    Attributes:
        response: The HTTP response that triggered the error, if any.
    """

    def __init__(self, message: str, response: HttpResponse | None = None):
        self.response = response
        super().__init__(message)

    @property
    def retry_after(self) -> float | None:
        """
        Seconds requested by the server through the Retry-After header, if any.

        Both header forms are accepted: delta-seconds (``"120"``) and an
        HTTP-date. A date is measured from the response ``Date`` header when
        present, else from the current time. Dates in the past give 0.
        """
        if self.response is None:
            return None
        header = self.response.header("Retry-After")
        if not header:
            return None
        try:
            return max(0.0, float(header))
        except ValueError:
            pass

        retry_at = _parse_http_date(header)
        if retry_at is None:
            return None
        now = _parse_http_date(self.response.header("Date")) or datetime.now(UTC)
        return max(0.0, (retry_at - now).total_seconds())


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


class RequestTimeoutError(TransientError):
    """Raised when a request exceeds its timeout. Retryable (exit code 2)."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class RateLimitedError(TransientError):
    """Raised on HTTP 429 (Too Many Requests). Retryable (exit code 3)."""

    category = ErrorCategory.RATE_LIMITED

    def __init__(self, response: HttpResponse):
        super().__init__(f"Rate limited: HTTP 429 Too Many Requests for {response.url}", response)


class ServiceUnavailableError(TransientError):
    """Raised on HTTP 503 (Service Unavailable). Retryable (exit code 1)."""

    category = ErrorCategory.HTTP_STATUS

    def __init__(self, response: HttpResponse):
        super().__init__(f"HTTP error: status code 503 Service Unavailable for {response.url}", response)


# =============================================================================
# Classification
# =============================================================================

_RATE_LIMIT_PATTERN = re.compile(r"429|too many requests|rate limit", re.IGNORECASE)
_TIMEOUT_PATTERN = re.compile(r"timeout|timed out|\b504\b|\b408\b", re.IGNORECASE)
_CONNECTIVITY_PATTERN = re.compile(
    r"resolve|connection|network|dns|refused|unreachable|host", re.IGNORECASE
)
_HTTP_PATTERN = re.compile(r"http error|status code|\b[45]\d\d\b", re.IGNORECASE)


def classify_error(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into an ErrorCategory.

    Known istatkit exceptions are classified by type. A MaxRetriesExceededError
    is classified by the exception that exhausted the retries. Anything else
    falls back to matching the message text, checked in this order: rate
    limiting, timeout, connectivity, HTTP status.

    Args:
        exc: The exception to classify.

    Returns:
        The matching ErrorCategory, or ErrorCategory.UNKNOWN.

    Example:
        >>> classify_error(RuntimeError("Operation timed out after 240 seconds"))
        <ErrorCategory.TIMEOUT: 'timeout'>
    """
    if isinstance(exc, MaxRetriesExceededError) and exc.last_exception is not None:
        return classify_error(exc.last_exception)

    if isinstance(exc, IstatError) and not isinstance(exc, ValidationError):
        return exc.category

    if is_timeout_exception(exc):
        return ErrorCategory.TIMEOUT

    message = str(exc)
    if _RATE_LIMIT_PATTERN.search(message):
        return ErrorCategory.RATE_LIMITED
    if _TIMEOUT_PATTERN.search(message):
        return ErrorCategory.TIMEOUT
    if _CONNECTIVITY_PATTERN.search(message):
        return ErrorCategory.CONNECTIVITY
    if _HTTP_PATTERN.search(message):
        return ErrorCategory.HTTP_STATUS
    return ErrorCategory.UNKNOWN


def format_error_message(exc: BaseException) -> str:
    """Return a user-facing message for an exception, prefixed by its category."""
    category = classify_error(exc)
    if isinstance(exc, MaxRetriesExceededError) and exc.last_exception is not None:
        detail = str(exc.last_exception)
    else:
        detail = str(exc)

    prefixes = {
        ErrorCategory.RATE_LIMITED: "Rate limited",
        ErrorCategory.TIMEOUT: "Timeout",
        ErrorCategory.CONNECTIVITY: "Connectivity error",
        ErrorCategory.HTTP_STATUS: "HTTP error",
        ErrorCategory.PARSE: "Parse error",
        ErrorCategory.UNKNOWN: "Error",
    }
    prefix = prefixes[category]
    if detail.lower().startswith(prefix.lower()):
        return detail
    return f"{prefix}: {detail}"
