"""Shared fixtures: scripted HTTP client, fake clock and fast transports."""

from collections.abc import Iterable
from typing import override

import pytest

from istatkit._config import ISTAT, RateLimitConfig
from istatkit._http import HttpClient, HttpResponse
from istatkit._rate_limit import Jitter, RateLimiter
from istatkit._transport import RetryingTransport


class FakeClock:
    """Manual monotonic clock: sleeping advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds


class StubHttpClient(HttpClient):
    """
    HttpClient returning scripted responses in order.

    Each script item is an HttpResponse, an int status code (empty headers,
    body ``b"x"``) or an exception instance to raise. The last item repeats
    once the script is exhausted.
    """

    name = "stub"

    def __init__(self, script: Iterable[HttpResponse | int | Exception] = (200,)):
        self.script = list(script)
        self.calls: list[dict] = []

    def _next(self, method: str, url: str, **kwargs) -> HttpResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return HttpResponse(status_code=item, content=b"x", url=url, client_name=self.name)
        return item

    @property
    def urls(self) -> list[str]:
        return [c["url"] for c in self.calls]

    @override
    def get(self, url, headers=None, timeout=240):
        return self._next("GET", url, headers=headers, timeout=timeout)

    @override
    def post(self, url, data=None, headers=None, timeout=240):
        return self._next("POST", url, data=data, headers=headers, timeout=timeout)

    @override
    def head(self, url, headers=None, timeout=240):
        return self._next("HEAD", url, headers=headers, timeout=timeout)


def make_response(status: int = 200, body: bytes | str = b"x", headers: dict | None = None, url: str = "") -> HttpResponse:
    content = body.encode("utf-8") if isinstance(body, str) else body
    return HttpResponse(status_code=status, headers=headers or {}, content=content, url=url, client_name="stub")


@pytest.fixture(autouse=True)
def reset_global_config():
    """Every test starts from default configuration."""
    ISTAT.reset()
    yield
    ISTAT.reset()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(fake_clock) -> RateLimiter:
    return RateLimiter(
        min_delay=13.0,
        clock=fake_clock.now,
        sleep=fake_clock.advance,
        jitter=Jitter(factor=0.0),
    )


@pytest.fixture
def make_transport(limiter):
    """Factory building a RetryingTransport over a StubHttpClient script."""

    def factory(*script, max_retries: int = 3) -> tuple[RetryingTransport, StubHttpClient]:
        client = StubHttpClient(script or (200,))
        config = RateLimitConfig(max_retries=max_retries, initial_backoff=60.0, max_backoff=300.0)
        transport = RetryingTransport(http_client=client, rate_limiter=limiter, config=config, timeout=30)
        return transport, client

    return factory


@pytest.fixture
def response():
    """Factory for HttpResponse objects."""
    return make_response
