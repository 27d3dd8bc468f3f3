"""Tests for the retrying transport."""

from unittest.mock import patch

from istatkit._config import RateLimitConfig
from istatkit._errors import ConnectivityError, ErrorCategory, ExitCode, RequestTimeoutError
from istatkit._http import FallbackHttpClient, HttpClient, HttpResponse
from istatkit._models import Dialect, EndpointKind, HttpMethod, RequestDescriptor
from istatkit._transport import RetryingTransport

URL = "https://esploradati.istat.it/SDMXWS/rest/data/150_908/A..IT/all"


class TestGetWithRetry:
    """Tests for RetryingTransport.get_with_retry()."""

    def test_success_on_first_attempt(self, make_transport):
        transport, client = make_transport(200)

        result = transport.get_with_retry(URL)

        assert result.success is True
        assert result.exit_code is ExitCode.SUCCESS
        assert result.data.status_code == 200
        assert len(client.calls) == 1

    def test_429_twice_then_success_makes_three_attempts(self, make_transport, limiter):
        transport, client = make_transport(429, 429, 200)

        result = transport.get_with_retry(URL)

        assert result.success is True
        assert len(client.calls) == 3
        assert limiter.consecutive_429_count == 0

    def test_404_is_not_retried(self, make_transport):
        transport, client = make_transport(404)

        result = transport.get_with_retry(URL)

        assert result.success is False
        assert result.category is ErrorCategory.HTTP_STATUS
        assert result.exit_code is ExitCode.GENERIC_ERROR
        assert len(client.calls) == 1

    def test_503_is_retried_without_touching_429_counter(self, make_transport, limiter):
        transport, client = make_transport(503, 200)

        result = transport.get_with_retry(URL)

        assert result.success is True
        assert len(client.calls) == 2
        assert limiter.consecutive_429_count == 0

    def test_persistent_503_exhausts_attempts(self, make_transport):
        transport, client = make_transport(503, max_retries=3)

        result = transport.get_with_retry(URL)

        assert result.success is False
        assert result.exit_code is ExitCode.GENERIC_ERROR
        assert len(client.calls) == 3

    def test_timeouts_exhaust_attempts_with_timeout_exit_code(self, make_transport):
        transport, client = make_transport(RequestTimeoutError("timed out", url=URL))

        result = transport.get_with_retry(URL)

        assert result.success is False
        assert result.is_timeout is True
        assert result.exit_code is ExitCode.TIMEOUT
        assert len(client.calls) == 3

    def test_connectivity_error_is_not_retried(self, make_transport):
        transport, client = make_transport(ConnectivityError("Connection refused", url=URL))

        result = transport.get_with_retry(URL)

        assert result.success is False
        assert result.category is ErrorCategory.CONNECTIVITY
        assert len(client.calls) == 1

    def test_empty_success_body_is_parse_error(self, make_transport, response):
        transport, client = make_transport(response(200, b"  "))

        result = transport.get_with_retry(URL)

        assert result.success is False
        assert result.category is ErrorCategory.PARSE
        assert len(client.calls) == 1

    def test_backoff_waits_follow_schedule(self, make_transport, fake_clock):
        transport, _ = make_transport(503, 503, 200)

        transport.get_with_retry(URL)

        # throttle waits (13s) interleave with backoff waits (60s, 120s)
        assert 60.0 in fake_clock.sleeps
        assert 120.0 in fake_clock.sleeps

    def test_retry_after_header_is_honoured(self, make_transport, fake_clock, response):
        transport, _ = make_transport(response(429, headers={"Retry-After": "7"}), 200)

        transport.get_with_retry(URL)

        assert 7.0 in fake_clock.sleeps

    def test_retry_after_http_date_is_honoured(self, make_transport, fake_clock, response):
        headers = {"Retry-After": "Tue, 01 Oct 2024 10:00:45 GMT", "Date": "Tue, 01 Oct 2024 10:00:00 GMT"}
        transport, _ = make_transport(response(503, headers=headers), 200)

        transport.get_with_retry(URL)

        assert 45.0 in fake_clock.sleeps

    def test_passes_headers_and_timeout(self, make_transport):
        transport, client = make_transport(200)

        transport.get_with_retry(URL, headers={"Accept": "text/csv"})

        assert client.calls[0]["headers"] == {"Accept": "text/csv"}
        assert client.calls[0]["timeout"] == 30


class TestBanDetection:
    """Tests for consecutive-429 ban handling."""

    def test_third_consecutive_429_aborts(self, make_transport, limiter):
        transport, client = make_transport(429, max_retries=5)

        result = transport.get_with_retry(URL)

        assert result.success is False
        assert result.ban_suspected is True
        assert result.exit_code is ExitCode.RATE_LIMITED
        assert len(client.calls) == 3

    def test_counter_spans_requests(self, make_transport, limiter):
        limiter.record_429()
        limiter.record_429()
        transport, client = make_transport(429)

        result = transport.get_with_retry(URL)

        assert result.ban_suspected is True
        assert len(client.calls) == 1

    def test_two_429s_exhausting_retries_are_rate_limited(self, make_transport):
        transport, client = make_transport(429, max_retries=2)

        result = transport.get_with_retry(URL)

        assert result.success is False
        assert result.ban_suspected is False
        assert result.is_rate_limited is True
        assert len(client.calls) == 2


class TestThrottling:
    """Tests for throttle interaction."""

    def test_every_request_is_throttled(self, make_transport, fake_clock, limiter):
        transport, _ = make_transport(200)

        transport.get_with_retry(URL)
        transport.get_with_retry(URL)
        transport.head(URL)

        assert fake_clock.sleeps == [13.0, 13.0]

    def test_fallback_send_is_throttled(self, fake_clock, limiter):
        primary = CountingClient("requests", error=RequestTimeoutError("timed out", url=URL))
        fallback = CountingClient("httpx")

        with patch.object(limiter, "throttle", wraps=limiter.throttle) as throttle:
            transport = RetryingTransport(
                http_client=FallbackHttpClient(primary, fallback),
                rate_limiter=limiter,
                config=RateLimitConfig(max_retries=3),
                timeout=30,
            )
            transport.get_with_retry(URL)
            result = transport.get_with_retry(URL)

        assert result.success is True
        assert primary.sent + fallback.sent == 4
        assert throttle.call_count == 4
        assert fake_clock.sleeps == [13.0, 13.0, 13.0]

    def test_explicit_throttle_is_kept(self, limiter):
        own_throttle = lambda: None  # noqa: E731
        client = FallbackHttpClient(CountingClient("a"), CountingClient("b"), throttle=own_throttle)

        RetryingTransport(http_client=client, rate_limiter=limiter, timeout=30)

        assert client.throttle is own_throttle


class CountingClient(HttpClient):
    """Strategy that counts sends, raising ``error`` when set."""

    def __init__(self, name: str, error: Exception | None = None):
        self.name = name
        self.error = error
        self.sent = 0

    def _send(self, url: str) -> HttpResponse:
        self.sent += 1
        if self.error is not None:
            raise self.error
        return HttpResponse(status_code=200, content=b"ok", url=url, client_name=self.name)

    def get(self, url, headers=None, timeout=240):
        return self._send(url)

    def post(self, url, data=None, headers=None, timeout=240):
        return self._send(url)

    def head(self, url, headers=None, timeout=240):
        return self._send(url)


class TestPostAndExecute:
    """Tests for POST and descriptor execution."""

    def test_post_sets_form_content_type(self, make_transport):
        transport, client = make_transport(200)

        transport.post_with_retry(URL, "c[FREQ]=A")

        call = client.calls[0]
        assert call["method"] == "POST"
        assert call["data"] == "c[FREQ]=A"
        assert call["headers"]["Content-Type"] == "application/x-www-form-urlencoded"

    def test_execute_dispatches_on_method(self, make_transport):
        transport, client = make_transport(200)
        get = RequestDescriptor(
            endpoint=EndpointKind.DATA, dialect=Dialect.LEGACY, url=URL, headers={"Accept": "text/csv"}
        )
        post = RequestDescriptor(
            endpoint=EndpointKind.DATA, dialect=Dialect.LEGACY, url=URL, method=HttpMethod.POST, body="a=1"
        )

        transport.execute(get)
        transport.execute(post)

        assert [c["method"] for c in client.calls] == ["GET", "POST"]
        assert client.calls[0]["headers"] == {"Accept": "text/csv"}


class TestHead:
    """Tests for single-attempt HEAD requests."""

    def test_empty_body_is_accepted(self, make_transport, response):
        head = response(200, b"", headers={"Last-Modified": "Tue, 01 Oct 2024 10:00:00 GMT"})
        transport, _ = make_transport(head)

        result = transport.head(URL)

        assert result.success is True
        assert result.data.header("Last-Modified").startswith("Tue")

    def test_failure_is_not_retried(self, make_transport):
        transport, client = make_transport(503)

        result = transport.head(URL)

        assert result.success is False
        assert len(client.calls) == 1
