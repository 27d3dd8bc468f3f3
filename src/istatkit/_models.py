"""
Data models shared by the istatkit components.

This module contains:
- Dialect, EndpointKind, HttpMethod, ContentCategory, DataFormat: request enums
- RequestDescriptor: A fully built request (frozen/immutable)
- ApiResult: The outcome of every transport and orchestrator operation (frozen/immutable)
"""

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from istatkit._errors import (
    BanSuspectedError,
    ErrorCategory,
    ExitCode,
    ValidationError,
    classify_error,
    format_error_message,
)
from istatkit._retry import MaxRetriesExceededError


class Dialect(enum.StrEnum):
    """
    REST surfaces exposed by ISTAT.

    Attributes:
        LEGACY: The positional-filter SDMX web service (``/SDMXWS``).
        HVD_V1: High-value datasets surface, SDMX 2.1 style (``/hvd/rest``).
        HVD_V2: High-value datasets surface, SDMX 3.0 style (``/hvd/rest/v2``).
    """
    LEGACY = "legacy"
    HVD_V1 = "hvd_v1"
    HVD_V2 = "hvd_v2"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: "str | Dialect") -> "Dialect":
        """
        Parse a dialect name, case-insensitively.

        Raises:
            ValidationError: If the name is not a known API surface.

        Example:
            >>> Dialect.parse("HVD_V2")
            <Dialect.HVD_V2: 'hvd_v2'>
        """
        if isinstance(value, Dialect):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(d.value for d in cls)
            raise ValidationError(f"Unknown API surface: '{value}'. Valid values: {valid}") from None


class EndpointKind(enum.StrEnum):
    """Kinds of endpoints the builders know how to address."""
    DATA = "data"
    STRUCTURE = "structure"
    DATAFLOW = "dataflow"
    AVAILABILITY = "availability"

    def __str__(self) -> str:
        return self.value


class HttpMethod(enum.StrEnum):
    GET = "GET"
    POST = "POST"

    def __str__(self) -> str:
        return self.value


class ContentCategory(enum.StrEnum):
    """Content category used for Accept-header negotiation."""
    DATA = "data"
    STRUCTURE = "structure"

    def __str__(self) -> str:
        return self.value


class DataFormat(enum.StrEnum):
    CSV = "csv"
    JSON = "json"
    XML = "xml"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RequestDescriptor:
    """
    A fully built request, ready to be executed by the RetryingTransport.

    Instances are produced by the URL builders after input validation and are
    never modified afterwards.

    Attributes:
        endpoint: The endpoint kind addressed by the request.
        dataset_id: The dataset (dataflow) id, if any.
        filter: The filter expression, if any.
        start_period: Requested start period, if any.
        end_period: Requested end period, if any.
        dialect: The REST surface the URL targets.
        method: GET or POST.
        url: The full request URL including the query string.
        headers: Request headers (Accept, Content-Type).
        body: Optional request body (POST only).
        content_category: Data or structure, as negotiated in the Accept header.
        data_format: Requested response format.

    Example:
        >>> descriptor = LegacyURLBuilder().build(EndpointKind.DATA, "150_908")
        >>> descriptor.url
        'https://esploradati.istat.it/SDMXWS/rest/data/150_908/ALL/all/'
    """
    endpoint: EndpointKind
    dialect: Dialect
    url: str
    method: HttpMethod = HttpMethod.GET
    dataset_id: str | None = None
    filter: str | None = None
    start_period: str | None = None
    end_period: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str | None = None
    content_category: ContentCategory = ContentCategory.DATA
    data_format: DataFormat = DataFormat.CSV

    def __post_init__(self) -> None:
        assert self.url, "Request URL can not be empty."
        if self.method == HttpMethod.POST:
            assert self.body is not None, "POST requests must carry a body."


@dataclass(frozen=True)
class ApiResult:
    """
    Outcome of a transport or orchestrator operation.

    Expected failures are reported through this object instead of raw
    exceptions; only caller mistakes (ValidationError) are raised.

    Attributes:
        success: True if the operation succeeded.
        data: Canonical table (orchestrator level), HttpResponse (transport
            level), or None.
        exit_code: Stable exit code for command-line callers.
        message: Human-readable summary.
        checksum: MD5 of the canonical table, when available.
        is_timeout: True if the failure was a timeout.
        timestamp: When the result was produced (UTC).
        category: Error category of a failure, None on success.
        ban_suspected: True when the failure aborted on a suspected IP ban.

    Example:
        >>> result = ApiResult.ok(data=frame, message="Downloaded 120 rows")
        >>> result.exit_code
        <ExitCode.SUCCESS: 0>
    """
    success: bool
    data: Any = None
    exit_code: ExitCode = ExitCode.SUCCESS
    message: str = ""
    checksum: str | None = None
    is_timeout: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    category: ErrorCategory | None = None
    ban_suspected: bool = False

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK", checksum: str | None = None) -> "ApiResult":
        return cls(success=True, data=data, exit_code=ExitCode.SUCCESS, message=message, checksum=checksum)

    @classmethod
    def failure(cls, category: ErrorCategory, message: str, ban_suspected: bool = False) -> "ApiResult":
        return cls(
            success=False,
            exit_code=category.exit_code,
            message=message,
            is_timeout=category is ErrorCategory.TIMEOUT,
            category=category,
            ban_suspected=ban_suspected,
        )

    @classmethod
    def from_exception(cls, exc: Exception) -> "ApiResult":
        """
        Build a failure result from an exception, classifying it.

        Example:
            >>> ApiResult.from_exception(RequestTimeoutError("timed out")).exit_code
            <ExitCode.TIMEOUT: 2>
        """
        root = exc
        if isinstance(exc, MaxRetriesExceededError) and exc.last_exception is not None:
            root = exc.last_exception
        return cls.failure(
            category=classify_error(exc),
            message=format_error_message(exc),
            ban_suspected=isinstance(root, BanSuspectedError),
        )

    @property
    def is_rate_limited(self) -> bool:
        return self.exit_code == ExitCode.RATE_LIMITED
