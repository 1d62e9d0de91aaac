"""Outbound HTTP plumbing: errors, rate limiting, retries"""
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ApiError(Exception):
    """Raised when an external API answers with a non-2xx status."""

    def __init__(
        self,
        service: str,
        status_code: Optional[int],
        message: str,
        *,
        retry_after: Optional[float] = None,
    ):
        self.service = service
        self.status_code = status_code
        self.message = message
        # Seconds the server asked us to wait (Retry-After / rate limit reset)
        self.retry_after = retry_after
        super().__init__(f"{service} API error: {status_code} - {message}")

    @property
    def code(self) -> Optional[str]:
        if self.status_code is None:
            return None
        return f"HTTP_{self.status_code}"

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_client_error(self) -> bool:
        """4xx other than 429: the request itself is wrong, retrying won't help."""
        return self.status_code is not None and 400 <= self.status_code < 500 and not self.is_rate_limited


class RateLimiter:
    """Token bucket limiting calls to one external system.

    Capacity equals the per-minute budget; tokens refill continuously.
    """

    def __init__(
        self,
        requests_per_minute: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(requests_per_minute)
        self._last_refill = clock()
        self._lock = threading.Lock()

    @property
    def tokens(self) -> float:
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        refill = (elapsed / 60.0) * self.requests_per_minute
        self._tokens = min(float(self.requests_per_minute), self._tokens + refill)
        self._last_refill = now

    def acquire(self) -> float:
        """Take one token, sleeping until one is available. Returns seconds waited."""
        with self._lock:
            self._refill()
            waited = 0.0
            if self._tokens < 1:
                waited = (1 - self._tokens) / self.requests_per_minute * 60.0
                self._sleep(waited)
                self._refill()
                # The wait was computed to yield exactly one token.
                self._tokens = max(self._tokens, 1.0)
            self._tokens -= 1
            return waited


class RetryPolicy:
    """Bounded exponential backoff with jitter for outbound calls."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._rng = rng

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Retry predicate: rate limits, server errors and network failures."""
        if isinstance(exc, ApiError):
            return not exc.is_client_error
        return isinstance(exc, requests.RequestException)

    def _delay_for(self, exc: Exception, attempt: int) -> float:
        backoff = self.base_delay * (2 ** attempt)
        if isinstance(exc, ApiError) and exc.is_rate_limited:
            hint = exc.retry_after if exc.retry_after is not None else backoff
            return min(hint, self.max_delay) + self._rng() * 0.1
        delay = min(backoff, self.max_delay)
        return delay + self._rng() * delay * 0.1

    def call(self, fn: Callable[[], T], *, description: str = "request") -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= self.max_retries or not self._should_retry(e):
                    raise
                delay = self._delay_for(e, attempt)
                if isinstance(e, ApiError) and e.is_rate_limited:
                    logger.warning(
                        f"Rate limited on {description}, waiting {delay:.2f}s before retry "
                        f"{attempt + 1}/{self.max_retries}"
                    )
                else:
                    logger.warning(
                        f"{description} failed ({e}), retry {attempt + 1}/{self.max_retries} in {delay:.2f}s"
                    )
                self._sleep(delay)
                attempt += 1


class JsonApi:
    """Shared request path for the GitHub and Todoist clients.

    Every attempt takes a rate limiter token; the whole attempt is wrapped by the retry policy.
    """

    service = "HTTP"

    def __init__(
        self,
        base_url: str,
        headers: Dict[str, str],
        *,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(headers)
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}{path}"

    def _error_from_response(self, response: requests.Response) -> ApiError:
        retry_after = None
        header = response.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return ApiError(self.service, response.status_code, response.text[:500], retry_after=retry_after)

    def _send(self, method: str, path: str, *, allow_404: bool = False, **kwargs) -> Optional[requests.Response]:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        response = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        if allow_404 and response.status_code == 404:
            return None
        if not response.ok:
            raise self._error_from_response(response)
        return response

    def request(self, method: str, path: str, *, allow_404: bool = False, **kwargs) -> Any:
        """Send a request and decode the JSON body (None for empty bodies or tolerated 404s)."""

        def _do():
            response = self._send(method, path, allow_404=allow_404, **kwargs)
            if response is None or response.status_code == 204 or not response.content:
                return None
            return response.json()

        return self.retry_policy.call(_do, description=f"{self.service} {method} {path}")


_limiters: Dict[str, RateLimiter] = {}
_limiters_lock = threading.Lock()


def shared_rate_limiter(name: str, requests_per_minute: int) -> RateLimiter:
    """One bucket per external system for the whole process, so budgets survive across cycles."""
    with _limiters_lock:
        limiter = _limiters.get(name)
        if limiter is None or limiter.requests_per_minute != requests_per_minute:
            limiter = RateLimiter(requests_per_minute)
            _limiters[name] = limiter
        return limiter
