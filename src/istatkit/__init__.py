"""
ISTAT SDMX client for Python.

A resilient client for the SDMX REST services of the Italian National
Institute of Statistics (ISTAT), with throttling, retries, ban detection,
metadata caching and incremental downloads.

Quick Start:
    >>> from istatkit import DownloadOrchestrator
    >>> orchestrator = DownloadOrchestrator()
    >>> result = orchestrator.download("150_908", start_time="2020")
    >>> if result.success:
    ...     print(result.data.head())

Metadata:
    >>> from istatkit import MetadataService
    >>> metadata = MetadataService()
    >>> catalogue = metadata.list_dataflows()
    >>> codelists = metadata.get_codelists("150_908")

Global Configuration:
    >>> from istatkit import ISTAT
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> timeout = ISTAT.config.http.timeout
    >>>
    >>> # Custom configuration
    >>> ISTAT.configure(
    ...     http={"api_surface": "hvd_v1", "timeout": 60},
    ...     rate_limit={"min_delay": 13.0, "max_retries": 3},
    ...     cache={"cache_dir": "meta"},
    ... )

Main Classes:
    - DownloadOrchestrator: Single, batch, per-frequency and update-aware downloads.
    - MetadataService: Dataflow catalogue, structures, codelists and availability.
    - RetryingTransport: Throttled, retried HTTP transport returning ApiResults.
    - ApiResult: Outcome of any operation (success flag, data, exit code, message).

Demographic portal:
    - See ``istatkit.demo`` (DemoClient, build_demo_url, list_demo_datasets, ...).

Configuration:
    - ISTAT: Global client singleton for configuration.
    - IstatConfig: Root configuration dataclass.
    - HttpConfig, RateLimitConfig, CacheConfig, DemoConfig: Configuration sections.
    - ConfigEnvVarError / ConfigValidationError: Configuration errors.

URLs and filters:
    - URLBuilder, LegacyURLBuilder, HvdV1URLBuilder, HvdV2URLBuilder, url_builder_for.
    - accept_header, build_filter_key, merge_filter, build_frequency_filter.

Errors:
    - IstatError and subclasses (ValidationError, ParseError, HttpStatusError, ...).
    - ErrorCategory / ExitCode: Stable classification of failures.

Retry and rate limiting:
    - Retrying / RetryableError / MaxRetriesExceededError.
    - RateLimiter, detect_ban, shared_rate_limiter.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("istatkit")

from istatkit._cache import (
    CodelistMetadata,
    DownloadLog,
    DownloadLogEntry,
    MetadataCache,
    compute_ttl,
    extract_root_id,
)
from istatkit._config import (
    ISTAT,
    CacheConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    DemoConfig,
    HttpConfig,
    IstatConfig,
    RateLimitConfig,
)
from istatkit._errors import (
    BanSuspectedError,
    ConnectivityError,
    ErrorCategory,
    ExitCode,
    HttpStatusError,
    IstatError,
    ParseError,
    RateLimitedError,
    RequestTimeoutError,
    ServiceUnavailableError,
    TransientError,
    ValidationError,
    classify_error,
)
from istatkit._filters import (
    build_filter_key,
    build_frequency_filter,
    determine_latest_edition,
    is_wildcard_filter,
    merge_filter,
)
from istatkit._http import (
    FallbackHttpClient,
    HttpClient,
    HttpResponse,
    HttpxHttpClient,
    RequestsHttpClient,
)
from istatkit._metadata import (
    DatasetStructure,
    EndpointStatus,
    MetadataService,
)
from istatkit._models import (
    ApiResult,
    ContentCategory,
    DataFormat,
    Dialect,
    EndpointKind,
    HttpMethod,
    RequestDescriptor,
)
from istatkit._normalize import (
    NormalizedTable,
    ResponseNormalizer,
    compute_checksum,
)
from istatkit._orchestrator import (
    BatchResult,
    DownloadOrchestrator,
    UpdateStatus,
    merge_with_existing,
)
from istatkit._rate_limit import (
    RateLimiter,
    detect_ban,
    shared_rate_limiter,
)
from istatkit._retry import (
    MaxRetriesExceededError,
    RetryableError,
    Retrying,
)
from istatkit._transport import RetryingTransport
from istatkit._urls import (
    HvdV1URLBuilder,
    HvdV2URLBuilder,
    LegacyURLBuilder,
    URLBuilder,
    accept_header,
    url_builder_for,
)

__all__ = [
    "__version__",
    # Configuration
    "ISTAT",
    "IstatConfig",
    "HttpConfig",
    "RateLimitConfig",
    "CacheConfig",
    "DemoConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Errors
    "IstatError",
    "ValidationError",
    "ConnectivityError",
    "HttpStatusError",
    "BanSuspectedError",
    "ParseError",
    "TransientError",
    "RequestTimeoutError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "ErrorCategory",
    "ExitCode",
    "classify_error",
    # Models
    "ApiResult",
    "Dialect",
    "EndpointKind",
    "HttpMethod",
    "ContentCategory",
    "DataFormat",
    "RequestDescriptor",
    # HTTP Client
    "HttpClient",
    "HttpResponse",
    "RequestsHttpClient",
    "HttpxHttpClient",
    "FallbackHttpClient",
    # Retry and rate limiting
    "Retrying",
    "RetryableError",
    "MaxRetriesExceededError",
    "RateLimiter",
    "detect_ban",
    "shared_rate_limiter",
    # Transport
    "RetryingTransport",
    # URLs and filters
    "URLBuilder",
    "LegacyURLBuilder",
    "HvdV1URLBuilder",
    "HvdV2URLBuilder",
    "url_builder_for",
    "accept_header",
    "build_filter_key",
    "merge_filter",
    "build_frequency_filter",
    "determine_latest_edition",
    "is_wildcard_filter",
    # Normalization
    "ResponseNormalizer",
    "NormalizedTable",
    "compute_checksum",
    # Metadata and cache
    "MetadataService",
    "DatasetStructure",
    "EndpointStatus",
    "MetadataCache",
    "CodelistMetadata",
    "DownloadLog",
    "DownloadLogEntry",
    "compute_ttl",
    "extract_root_id",
    # Orchestration
    "DownloadOrchestrator",
    "BatchResult",
    "UpdateStatus",
    "merge_with_existing",
]
