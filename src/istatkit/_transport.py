"""
Retrying HTTP transport.

RetryingTransport is the only component that talks to the network. For every
attempt it waits on the shared RateLimiter, sends the request through an
HttpClient, and classifies the response:

    2xx (non-empty body) -> success, 429 counter reset
    2xx (empty body)     -> ParseError, not retried
    429                  -> RateLimitedError (retried), or BanSuspectedError (abort)
    503                  -> ServiceUnavailableError (retried, 429 counter untouched)
    other status         -> HttpStatusError, not retried
    timeout              -> RequestTimeoutError (retried)

Every public operation returns an ApiResult; expected failures never escape as
exceptions.

Example:
    >>> transport = RetryingTransport()
    >>> result = transport.get_with_retry("https://esploradati.istat.it/SDMXWS/rest/dataflow/IT1")
    >>> result.success, result.data.status_code
    (True, 200)
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from istatkit._config import ISTAT, RateLimitConfig
from istatkit._errors import (
    BanSuspectedError,
    HttpStatusError,
    IstatError,
    ParseError,
    RateLimitedError,
    ServiceUnavailableError,
)
from istatkit._http import FallbackHttpClient, HttpClient, HttpResponse, default_http_client
from istatkit._models import ApiResult, HttpMethod, RequestDescriptor
from istatkit._rate_limit import RateLimiter, shared_rate_limiter
from istatkit._retry import MaxRetriesExceededError, Retrying
from istatkit._urls import FORM_CONTENT_TYPE

logger = logging.getLogger(__name__)


class RetryingTransport:
    """
    HTTP transport with throttling, retry and ban detection.

    Args:
        http_client: Strategy used to send requests. Defaults to the
            requests → httpx fallback chain.
        rate_limiter: Shared throttle. Defaults to the process-wide limiter.
        config: Retry/backoff settings. Defaults to the current ``ISTAT.config.rate_limit``,
            read on every request.
        timeout: Request timeout in seconds. Defaults to ``ISTAT.config.http.timeout``.
    """

    def __init__(
        self,
        http_client: HttpClient | None = None,
        rate_limiter: RateLimiter | None = None,
        config: RateLimitConfig | None = None,
        timeout: float | None = None,
    ):
        self.http_client = http_client or default_http_client()
        self.rate_limiter = rate_limiter or shared_rate_limiter()
        self._config = config
        self.timeout = timeout or ISTAT.config.http.timeout

        assert self.timeout > 0, "timeout must be greater than 0"

        # Fallback sends go through the same throttle as every attempt
        if isinstance(self.http_client, FallbackHttpClient) and self.http_client.throttle is None:
            self.http_client.throttle = self.rate_limiter.throttle

    @property
    def config(self) -> RateLimitConfig:
        """Retry settings: the ones given at construction, else the current ``ISTAT.config.rate_limit``."""
        return self._config or ISTAT.config.rate_limit

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get_with_retry(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ApiResult:
        """
        Send a GET request, retrying transient failures.

        Returns:
            An ApiResult whose ``data`` is the HttpResponse on success.
        """
        timeout = timeout or self.timeout
        return self._send_with_retry(
            lambda: self.http_client.get(url, headers=headers, timeout=timeout),
            url=url,
        )

    def post_with_retry(
        self,
        url: str,
        body: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ApiResult:
        """
        Send a form-encoded POST request, retrying transient failures.

        Returns:
            An ApiResult whose ``data`` is the HttpResponse on success.
        """
        timeout = timeout or self.timeout
        merged_headers = {"Content-Type": FORM_CONTENT_TYPE, **(headers or {})}
        return self._send_with_retry(
            lambda: self.http_client.post(url, data=body, headers=merged_headers, timeout=timeout),
            url=url,
        )

    def execute(self, descriptor: RequestDescriptor, timeout: float | None = None) -> ApiResult:
        """Send the request described by a RequestDescriptor."""
        headers = dict(descriptor.headers)
        if descriptor.method is HttpMethod.POST:
            return self.post_with_retry(descriptor.url, descriptor.body or "", headers=headers, timeout=timeout)
        return self.get_with_retry(descriptor.url, headers=headers, timeout=timeout)

    def head(self, url: str, headers: dict[str, str] | None = None, timeout: float | None = None) -> ApiResult:
        """
        Send a single throttled HEAD request (no retries).

        Used to read headers such as Last-Modified without downloading a body.
        """
        timeout = timeout or self.timeout
        try:
            self.rate_limiter.throttle()
            logger.debug(f"HEAD {url}")
            response = self.http_client.head(url, headers=headers, timeout=timeout)
            return self._handle_response(response, allow_empty=True)
        except IstatError as e:
            logger.warning(f"⚠️ HEAD request failed for {url}: {e}")
            return ApiResult.from_exception(e)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _send_with_retry(self, send: Callable[[], HttpResponse], url: str) -> ApiResult:
        retrying = Retrying(
            max_attempts=self.config.max_retries,
            initial_backoff=self.config.initial_backoff,
            backoff_multiplier=self.config.backoff_multiplier,
            max_backoff=self.config.max_backoff,
            jitter=self.rate_limiter.jitter,
            sleep=self.rate_limiter.sleep,
            logger_prefix=url,
        )

        try:
            for attempt in retrying:
                with attempt:
                    self.rate_limiter.throttle()
                    logger.debug(f"Request attempt {attempt.attempt_number}/{attempt.max_attempts}: {url}")
                    response = send()
                    return self._handle_response(response)
        except BanSuspectedError as e:
            logger.error(f"❌ Aborting retries for {url}: {e}")
            return ApiResult.from_exception(e)
        except (IstatError, MaxRetriesExceededError) as e:
            logger.error(f"❌ Request failed for {url}: {e}")
            return ApiResult.from_exception(e)

        # Should never reach here - Retrying raises MaxRetriesExceededError
        raise RuntimeError(f"Retry loop exited without a result for {url}")

    def _handle_response(self, response: HttpResponse, allow_empty: bool = False) -> ApiResult:
        """
        Classify a response, returning a success result or raising the matching error.

        Raises:
            BanSuspectedError: On a 429 that reaches the ban threshold.
            RateLimitedError: On any other 429.
            ServiceUnavailableError: On 503.
            HttpStatusError: On any other non-2xx status.
            ParseError: On a 2xx response with an empty body (unless allow_empty).
        """
        status = response.status_code

        if response.is_success:
            self.rate_limiter.record_success()
            if not allow_empty and not response.content.strip():
                raise ParseError(f"Parse error: empty response body from {response.url}")
            return ApiResult.ok(
                data=response,
                message=f"HTTP {status} from {response.url} ({response.client_name})",
            )

        if status == 429:
            if self.rate_limiter.record_429():
                raise BanSuspectedError(
                    self.rate_limiter.consecutive_429_count,
                    self.rate_limiter.ban_threshold,
                )
            raise RateLimitedError(response)

        if status == 503:
            raise ServiceUnavailableError(response)

        raise HttpStatusError(status, url=response.url)
