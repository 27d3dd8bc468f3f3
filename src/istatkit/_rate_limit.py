"""
Client-side throttling and ban detection for the ISTAT services.

ISTAT enforces an IP-wide limit (a few requests per minute) and temporarily
bans clients that keep sending requests after being rate-limited. A single
RateLimiter instance is therefore shared by every outbound call, regardless of
dataset or API dialect, and spaces calls at least ``min_delay`` seconds apart.

Available components:
    - Jitter: Per-process seeded random multiplier.
    - RateLimiter: Minimum-delay throttle plus consecutive-429 counter.
    - detect_ban: Pure threshold check used by RateLimiter.record_429().
    - shared_rate_limiter: Process-wide default RateLimiter built from ISTAT.config.

Example:
    >>> from istatkit._rate_limit import RateLimiter
    >>> limiter = RateLimiter(min_delay=13.0)
    >>> limiter.throttle()   # first call never waits
    0.0
    >>> limiter.throttle()   # waits ~13s (±10%)
"""

import logging
import os
import random
import socket
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from istatkit._config import RateLimitConfig

logger = logging.getLogger(__name__)


class Jitter:
    """
    Structural jitter for desynchronizing processes sharing a quota.

    Uses a per-process seeded RNG so the same process produces a reproducible
    sequence while different processes drift apart.

    A factor of 0.10 means values are multiplied by a random number in the
    range [0.90, 1.10] (±10%).

    Example:
        >>> jitter = Jitter(factor=0.10)
        >>> jitter.apply(100.0)  # Returns ~90-110
        >>> 100.0 * jitter       # Same effect

    Args:
        factor: Jitter factor (default: 0.10 = ±10%).
        rng: Optional RNG for testing. If None, creates a per-process seeded RNG.
    """

    def __init__(self, factor: float = 0.10, rng: random.Random | None = None):
        assert factor >= 0, "factor must be non-negative"
        assert factor < 1, "factor must be less than 1"

        self.factor = factor
        self._rng = rng or self._create_process_local_rng()

    @staticmethod
    def _create_process_local_rng() -> random.Random:
        """Create a deterministic RNG seeded with hostname and PID."""
        seed = hash((socket.gethostname(), os.getpid()))
        return random.Random(seed)

    def next(self) -> float:
        """Return a random jitter multiplier in [1-factor, 1+factor]."""
        return self._rng.uniform(1.0 - self.factor, 1.0 + self.factor)

    def apply(self, value: float) -> float:
        """Multiply value by a jittered factor in [1-factor, 1+factor]."""
        return value * self.next()

    def __mul__(self, other: float) -> float:
        return self.apply(other)

    def __rmul__(self, other: float) -> float:
        return self.apply(other)


def detect_ban(consecutive_429s: int, threshold: int = 3) -> bool:
    """
    Tell whether consecutive 429 responses suggest a temporary IP ban.

    Args:
        consecutive_429s: Number of consecutive HTTP 429 responses.
        threshold: Count at which a ban is suspected (default: 3).

    Returns:
        True iff ``consecutive_429s >= threshold``.

    Example:
        >>> detect_ban(2)
        False
        >>> detect_ban(3)
        True
    """
    return consecutive_429s >= threshold


class RateLimiter:
    """
    Shared throttle and consecutive-429 counter.

    Every outbound request must call throttle() first. The limiter spaces
    requests at least ``min_delay`` seconds apart (randomized by
    ``jitter_fraction``) and tracks consecutive HTTP 429 responses to detect a
    likely ban.

    The lock is held while sleeping, so concurrent callers are serialized in
    arrival order and no two requests ever leave the process together.

    Example:
        >>> clock = FakeClock()
        >>> limiter = RateLimiter(min_delay=13.0, clock=clock.now, sleep=clock.advance)
        >>> limiter.throttle()
        0.0

    Args:
        min_delay: Minimum seconds between two consecutive requests (default: 13).
        jitter_fraction: Relative randomization of the throttle wait (default: 0.1).
        ban_threshold: Consecutive 429s that trigger ban suspicion (default: 3).
        clock: Monotonic clock function returning seconds.
        sleep: Sleep function. Also used by the retry loop for backoff waits.
        jitter: Optional Jitter instance (built from jitter_fraction when None).
    """

    def __init__(
        self,
        min_delay: float = 13.0,
        jitter_fraction: float = 0.1,
        ban_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Jitter | None = None,
    ):
        assert min_delay >= 0, "min_delay must be >= 0"
        assert 0 <= jitter_fraction < 1, "jitter_fraction must be in [0, 1)"
        assert ban_threshold >= 1, "ban_threshold must be >= 1"
        assert clock is not None, "clock cannot be None"
        assert sleep is not None, "sleep cannot be None"

        self.min_delay = min_delay
        self.jitter_fraction = jitter_fraction
        self.ban_threshold = ban_threshold
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter or Jitter(factor=jitter_fraction)

        self._lock = threading.Lock()
        self._last_request_time: float | None = None
        self._consecutive_429_count = 0

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def last_request_time(self) -> float | None:
        return self._last_request_time

    @property
    def consecutive_429_count(self) -> int:
        return self._consecutive_429_count

    @property
    def jitter(self) -> Jitter:
        return self._jitter

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def throttle(self) -> float:
        """
        Wait until at least ``min_delay`` seconds passed since the previous request.

        The first call in a fresh limiter never waits. The last request time is
        always updated afterwards.

        Returns:
            The number of seconds slept (0.0 when no wait was needed).
        """
        with self._lock:
            waited = 0.0
            if self._last_request_time is not None:
                elapsed = self._clock() - self._last_request_time
                if elapsed < self.min_delay:
                    waited = max(0.0, self._jitter.apply(self.min_delay - elapsed))
                    logger.debug(f"Throttling for {waited:.2f}s (min_delay={self.min_delay}s)")
                    self._sleep(waited)
            self._last_request_time = self._clock()
            return waited

    def record_429(self) -> bool:
        """
        Register an HTTP 429 response.

        Returns:
            True when the consecutive count reached the ban threshold. The
            caller must stop retrying the current request in that case.
        """
        with self._lock:
            self._consecutive_429_count += 1
            count = self._consecutive_429_count

        banned = detect_ban(count, self.ban_threshold)
        if banned:
            logger.warning(
                f"⚠️ Received {count} consecutive HTTP 429 responses. "
                "The ISTAT server may have temporarily banned this IP address. "
                "Stop sending requests and wait before retrying (bans usually last 1-2 days)."
            )
        else:
            logger.warning(f"HTTP 429 received ({count}/{self.ban_threshold} before ban suspicion).")
        return banned

    def record_success(self) -> None:
        """Reset the consecutive-429 counter after a successful response."""
        with self._lock:
            self._consecutive_429_count = 0

    def reset(self) -> None:
        """Clear all state. Meant for operators and tests, not for the request flow."""
        with self._lock:
            self._last_request_time = None
            self._consecutive_429_count = 0

    def reconfigure(self, min_delay: float, jitter_fraction: float, ban_threshold: int) -> None:
        """
        Change the throttle and ban settings in place.

        The consecutive-429 counter and the last request time are kept, so a
        stricter configuration applied after a 429 still sees that history.
        """
        assert min_delay >= 0, "min_delay must be >= 0"
        assert 0 <= jitter_fraction < 1, "jitter_fraction must be in [0, 1)"
        assert ban_threshold >= 1, "ban_threshold must be >= 1"

        with self._lock:
            self.min_delay = min_delay
            self.ban_threshold = ban_threshold
            if jitter_fraction != self.jitter_fraction:
                self.jitter_fraction = jitter_fraction
                self._jitter = Jitter(factor=jitter_fraction)

    def sleep(self, seconds: float) -> None:
        """Sleep through the injected sleep function."""
        if seconds > 0:
            self._sleep(seconds)

    def __repr__(self) -> str:
        return (
            f"RateLimiter(min_delay={self.min_delay}, jitter_fraction={self.jitter_fraction}, "
            f"ban_threshold={self.ban_threshold}, consecutive_429_count={self._consecutive_429_count})"
        )


# =============================================================================
# Process-wide default
# =============================================================================

_shared_limiter: RateLimiter | None = None
_shared_lock = threading.Lock()


def shared_rate_limiter() -> RateLimiter:
    """
    Return the process-wide RateLimiter, creating it from ISTAT.config on first use.

    Uses double-checked locking for thread-safe lazy initialization.
    """
    global _shared_limiter
    if _shared_limiter is None:
        with _shared_lock:
            if _shared_limiter is None:
                from istatkit._config import ISTAT

                cfg = ISTAT.config.rate_limit
                _shared_limiter = RateLimiter(
                    min_delay=cfg.min_delay,
                    jitter_fraction=cfg.jitter_fraction,
                    ban_threshold=cfg.ban_threshold,
                )
    return _shared_limiter


def apply_rate_limit_config(config: "RateLimitConfig") -> None:
    """
    Push ``rate_limit`` settings into the shared limiter, if it was created.

    Called by ``ISTAT.configure()`` and ``ISTAT.reset()`` so transports that
    already hold the shared limiter follow later configuration.
    """
    with _shared_lock:
        if _shared_limiter is not None:
            _shared_limiter.reconfigure(
                min_delay=config.min_delay,
                jitter_fraction=config.jitter_fraction,
                ban_threshold=config.ban_threshold,
            )
            logger.debug(f"Shared rate limiter reconfigured: {_shared_limiter!r}")


def reset_rate_limiter() -> None:
    """
    Reset the shared limiter state (counter and last request time).

    Operators call it after a ban cooldown.
    """
    with _shared_lock:
        if _shared_limiter is not None:
            _shared_limiter.reset()
