"""
HTTP client abstraction for the istatkit client.

Every component performs HTTP calls through the HttpClient interface, which
returns a library-neutral HttpResponse and maps transport failures onto the
istatkit error taxonomy. HTTP status codes are never raised here: deciding
what a 429 or a 404 means is the job of the RetryingTransport.

Available implementations:
    - RequestsHttpClient: Primary strategy backed by a requests.Session.
    - HttpxHttpClient: Fallback strategy backed by an httpx.Client.
    - FallbackHttpClient: Tries the primary, then the fallback on transport errors.

Example:
    >>> from istatkit._http import default_http_client
    >>> client = default_http_client()
    >>> response = client.get("https://esploradati.istat.it/SDMXWS/rest/dataflow/IT1")
    >>> response.status_code
    200
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import override

import httpx
import requests

from istatkit._errors import ConnectivityError, RequestTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "istatkit Python client (https://esploradati.istat.it)"


# =============================================================================
# Response
# =============================================================================


@dataclass(frozen=True)
class HttpResponse:
    """
    Library-neutral HTTP response.

    Attributes:
        status_code: The HTTP status code.
        headers: Response headers (use ``header()`` for case-insensitive lookup).
        content: Raw response body.
        url: The final URL of the request.
        client_name: Name of the strategy that produced the response.
    """

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    content: bytes = b""
    url: str = ""
    client_name: str = ""

    def header(self, name: str) -> str | None:
        """Return a header value by case-insensitive name, or None."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP execution strategies.

    Implementations must raise RequestTimeoutError when a request times out and
    ConnectivityError for any other transport failure. They must return the
    response untouched for every HTTP status code.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def get(self, url, headers=None, timeout=240):
        ...         ...
        ...     def post(self, url, data=None, headers=None, timeout=240):
        ...         ...
        ...     def head(self, url, headers=None, timeout=240):
        ...         ...
    """

    name: str = "http"

    @abstractmethod
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        """
        Execute a GET request.

        Args:
            url: The full URL to request.
            headers: Additional headers to include.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response, whatever its status code.

        Raises:
            RequestTimeoutError: If the request timed out.
            ConnectivityError: If the server could not be reached.
        """
        pass

    @abstractmethod
    def post(
        self,
        url: str,
        data: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        """
        Execute a POST request with a form-encoded body.

        Args:
            url: The full URL to request.
            data: Request body (already encoded).
            headers: Additional headers to include.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response, whatever its status code.

        Raises:
            RequestTimeoutError: If the request timed out.
            ConnectivityError: If the server could not be reached.
        """
        pass

    @abstractmethod
    def head(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        """Execute a HEAD request. Same error contract as ``get()``."""
        pass


# =============================================================================
# requests Implementation (primary)
# =============================================================================


class RequestsHttpClient(HttpClient):
    """
    Primary HTTP strategy backed by ``requests``.

    Args:
        user_agent: User-Agent header sent with every request.
        session: Optional pre-configured session (useful for testing).
    """

    name = "requests"

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, session: requests.Session | None = None):
        assert user_agent, "user_agent cannot be empty"

        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})

    def _request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None,
        timeout: float,
        data: str | None = None,
    ) -> HttpResponse:
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        try:
            response = self._session.request(
                method, url, headers=headers, data=data, timeout=timeout
            )
        except requests.Timeout as e:
            raise RequestTimeoutError(f"Request timed out after {timeout}s: {url}", url=url) from e
        except requests.RequestException as e:
            raise ConnectivityError(f"Connection error for {url}: {e}", url=url) from e

        return HttpResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            content=response.content or b"",
            url=str(response.url or url),
            client_name=self.name,
        )

    @override
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._request("GET", url, headers, timeout)

    @override
    def post(
        self,
        url: str,
        data: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._request("POST", url, headers, timeout, data=data)

    @override
    def head(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._request("HEAD", url, headers, timeout)


# =============================================================================
# httpx Implementation (fallback)
# =============================================================================


class HttpxHttpClient(HttpClient):
    """
    Fallback HTTP strategy backed by ``httpx``.

    A different HTTP stack sometimes succeeds where the primary one fails
    (proxy or TLS quirks), which makes it a useful second attempt.

    Args:
        user_agent: User-Agent header sent with every request.
        client: Optional pre-configured httpx.Client (useful for testing).
    """

    name = "httpx"

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, client: httpx.Client | None = None):
        assert user_agent, "user_agent cannot be empty"

        self._client = client or httpx.Client(follow_redirects=True)
        self._client.headers["User-Agent"] = user_agent

    def _request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None,
        timeout: float,
        data: str | None = None,
    ) -> HttpResponse:
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        try:
            response = self._client.request(
                method, url, headers=headers, content=data, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request timed out after {timeout}s: {url}", url=url) from e
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Connection error for {url}: {e}", url=url) from e

        return HttpResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            content=response.content or b"",
            url=str(response.url),
            client_name=self.name,
        )

    @override
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._request("GET", url, headers, timeout)

    @override
    def post(
        self,
        url: str,
        data: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._request("POST", url, headers, timeout, data=data)

    @override
    def head(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._request("HEAD", url, headers, timeout)


# =============================================================================
# Fallback chain
# =============================================================================


class FallbackHttpClient(HttpClient):
    """
    Chain of responsibility over two HTTP strategies.

    The primary strategy handles every request. When it fails at transport
    level (timeout or connectivity), the same request is sent through the
    fallback strategy. If the fallback fails too, its error surfaces. HTTP
    status codes never trigger the fallback.

    The fallback send is a new outbound request, so it waits on ``throttle``
    first. RetryingTransport binds its RateLimiter here when none is set.

    Example:
        >>> client = FallbackHttpClient(
        ...     primary=RequestsHttpClient(),
        ...     fallback=HttpxHttpClient(),
        ...     throttle=limiter.throttle,
        ... )

    Args:
        primary: Strategy tried first.
        fallback: Strategy tried when the primary fails at transport level.
        throttle: Called before the fallback send.
    """

    name = "fallback"

    def __init__(
        self,
        primary: HttpClient,
        fallback: HttpClient,
        throttle: Callable[[], object] | None = None,
    ):
        assert primary is not None, "primary cannot be None"
        assert fallback is not None, "fallback cannot be None"

        self.primary = primary
        self.fallback = fallback
        self.throttle = throttle

    def _call(self, method: str, url: str, **kwargs) -> HttpResponse:
        try:
            return getattr(self.primary, method)(url, **kwargs)
        except (ConnectivityError, RequestTimeoutError) as e:
            logger.warning(
                f"⚠️ {self.primary.name} client failed ({e}). "
                f"Retrying the request with the {self.fallback.name} client."
            )
        if self.throttle is not None:
            self.throttle()
        return getattr(self.fallback, method)(url, **kwargs)

    @override
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._call("get", url, headers=headers, timeout=timeout)

    @override
    def post(
        self,
        url: str,
        data: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._call("post", url, data=data, headers=headers, timeout=timeout)

    @override
    def head(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 240,
    ) -> HttpResponse:
        return self._call("head", url, headers=headers, timeout=timeout)


def default_http_client(user_agent: str | None = None) -> HttpClient:
    """
    Build the default requests → httpx chain.

    Args:
        user_agent: User-Agent override. Defaults to ``ISTAT.config.http.user_agent``.
    """
    if user_agent is None:
        from istatkit._config import ISTAT

        user_agent = ISTAT.config.http.user_agent
    return FallbackHttpClient(
        primary=RequestsHttpClient(user_agent=user_agent),
        fallback=HttpxHttpClient(user_agent=user_agent),
    )
