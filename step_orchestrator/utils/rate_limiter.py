"""
Rate Limiter - Shared rate limiting for chat model calls.

Provides thread-safe rate limiting with configurable:
- Requests per minute (RPM)
- Requests per second (RPS)
- Minimum delay between requests

The chat-model planner waits on a limiter before every call; executors that
call the model or other external services can share the same instance.

Usage:
    from step_orchestrator.utils.rate_limiter import global_rate_limiter

    # Wait before making an LLM call (blocks if rate limit exceeded)
    global_rate_limiter.wait()

    # Or configure from environment
    global_rate_limiter.configure_from_env()
"""

import time
import threading
from collections import deque
from typing import Optional, TYPE_CHECKING

from step_orchestrator.config.env_config import EnvConfig
from step_orchestrator.utils.logger import get_logger

if TYPE_CHECKING:
    from step_orchestrator.config.orchestrator_config import RateLimitConfig

logger = get_logger(__name__)


class RateLimiter:
    """
    Thread-safe sliding window rate limiter.

    Tracks request timestamps and enforces the limits across every caller
    sharing the instance.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        requests_per_second: int = 0,
        min_request_delay: float = 0.5,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_minute: Max requests per minute (0 = unlimited)
            requests_per_second: Max requests per second (0 = unlimited, overrides RPM if set)
            min_request_delay: Minimum seconds between requests (0 = no delay)
        """
        self._lock = threading.Lock()
        self._request_times: deque = deque()
        self._last_request_time: float = 0

        self.requests_per_minute = requests_per_minute
        self.requests_per_second = requests_per_second
        self.min_request_delay = min_request_delay
        self._recalculate_window()

        logger.debug(
            f"Rate limiter initialized: RPM={requests_per_minute}, "
            f"RPS={requests_per_second}, min_delay={min_request_delay}s"
        )

    @classmethod
    def from_config(cls, config: "RateLimitConfig") -> "RateLimiter":
        """Build a limiter from a RateLimitConfig."""
        return cls(
            requests_per_minute=config.requests_per_minute,
            requests_per_second=config.requests_per_second,
            min_request_delay=config.min_request_delay,
        )

    def _recalculate_window(self) -> None:
        if self.requests_per_second > 0:
            self._window_seconds = 1.0
            self._max_requests = self.requests_per_second
        elif self.requests_per_minute > 0:
            self._window_seconds = 60.0
            self._max_requests = self.requests_per_minute
        else:
            self._window_seconds = 0
            self._max_requests = 0

    def configure(
        self,
        requests_per_minute: Optional[int] = None,
        requests_per_second: Optional[int] = None,
        min_request_delay: Optional[float] = None,
    ) -> None:
        """
        Reconfigure rate limiter settings.

        Args:
            requests_per_minute: Max requests per minute (0 = unlimited)
            requests_per_second: Max requests per second (0 = unlimited)
            min_request_delay: Minimum seconds between requests
        """
        with self._lock:
            if requests_per_minute is not None:
                self.requests_per_minute = requests_per_minute
            if requests_per_second is not None:
                self.requests_per_second = requests_per_second
            if min_request_delay is not None:
                self.min_request_delay = min_request_delay

            self._recalculate_window()

            logger.info(
                f"Rate limiter reconfigured: RPM={self.requests_per_minute}, "
                f"RPS={self.requests_per_second}, min_delay={self.min_request_delay}s"
            )

    def configure_from_env(self) -> None:
        """Configure rate limiter from LLM_RATE_LIMIT_RPM, LLM_RATE_LIMIT_RPS and LLM_MIN_REQUEST_DELAY."""
        self.configure(
            requests_per_minute=EnvConfig.get_int('LLM_RATE_LIMIT_RPM', 60),
            requests_per_second=EnvConfig.get_int('LLM_RATE_LIMIT_RPS', 0),
            min_request_delay=EnvConfig.get_float('LLM_MIN_REQUEST_DELAY', 0.5),
        )

    def _cleanup_old_requests(self, current_time: float) -> None:
        """Remove request timestamps outside the current window."""
        if self._window_seconds <= 0:
            return

        cutoff = current_time - self._window_seconds
        while self._request_times and self._request_times[0] < cutoff:
            self._request_times.popleft()

    def wait(self) -> float:
        """
        Wait until a request can be made within rate limits.

        Returns:
            Actual wait time in seconds (0 if no wait needed)
        """
        with self._lock:
            current_time = time.time()
            total_wait = 0.0

            if self.min_request_delay > 0 and self._last_request_time > 0:
                time_since_last = current_time - self._last_request_time
                if time_since_last < self.min_request_delay:
                    delay_wait = self.min_request_delay - time_since_last
                    total_wait += delay_wait
                    current_time += delay_wait

            if self._max_requests > 0:
                self._cleanup_old_requests(current_time)

                while len(self._request_times) >= self._max_requests:
                    oldest = self._request_times[0]
                    window_wait = oldest + self._window_seconds - current_time

                    if window_wait > 0:
                        total_wait += window_wait
                        current_time += window_wait

                    self._cleanup_old_requests(current_time)

            if total_wait > 0:
                logger.debug(f"Rate limiter: waiting {total_wait:.2f}s")
                # Release lock while sleeping
                self._lock.release()
                try:
                    time.sleep(total_wait)
                finally:
                    self._lock.acquire()
                current_time = time.time()

            self._request_times.append(current_time)
            self._last_request_time = current_time

            return total_wait

    def get_stats(self) -> dict:
        """
        Get current rate limiter statistics.

        Returns:
            Dictionary with stats including requests in current window
        """
        with self._lock:
            self._cleanup_old_requests(time.time())

            return {
                "requests_in_window": len(self._request_times),
                "max_requests": self._max_requests,
                "window_seconds": self._window_seconds,
                "min_request_delay": self.min_request_delay,
                "requests_per_minute": self.requests_per_minute,
                "requests_per_second": self.requests_per_second,
            }

    def reset(self) -> None:
        """Reset rate limiter state (clear all tracked requests)."""
        with self._lock:
            self._request_times.clear()
            self._last_request_time = 0
            logger.debug("Rate limiter reset")


# Shared instance for every chat model call in the process
global_rate_limiter = RateLimiter()
EnvConfig.load_env_file()
global_rate_limiter.configure_from_env()
