"""
HTTP client with connection pooling, retries, and rate limiting.

Provides:
- RateLimitedSession: pooled requests session with urllib3 retries and a
  per-host token bucket, so concurrent provider rounds stay polite
- HttpTransport: executes a RequestDescriptor and maps every transport or
  HTTP level failure onto the provider error taxonomy
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from constants import (
    MAX_RETRIES,
    RATE_LIMIT_IMDB_SUGGESTION,
    RATE_LIMIT_OMDB,
    RATE_LIMIT_TMDB,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_BASE,
    SERVICE_NAME,
    SERVICE_VERSION,
)
from errors import ProviderClientError, TransportFailure
from metrics import metrics
from models import RawResponse, RequestDescriptor

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""
    requests_per_second: float
    burst_size: int = 1


class TokenBucketRateLimiter:
    """
    Thread-safe token bucket rate limiter.

    Allows bursting up to `burst_size` requests, then enforces
    the `requests_per_second` rate.
    """

    def __init__(self, requests_per_second: float, burst_size: int = 1):
        self.rate = requests_per_second
        self.burst_size = burst_size
        self.tokens = float(burst_size)
        self.last_update = time.monotonic()
        self._lock = threading.Lock()

    def acquire(self, timeout: float = 30.0) -> bool:
        """
        Acquire a token, blocking until available or timeout.

        Args:
            timeout: Maximum time to wait for a token

        Returns:
            True if token acquired, False if timeout
        """
        deadline = time.monotonic() + timeout

        while True:
            with self._lock:
                now = time.monotonic()
                elapsed = now - self.last_update
                self.tokens = min(self.burst_size, self.tokens + elapsed * self.rate)
                self.last_update = now

                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return True

                wait_time = (1.0 - self.tokens) / self.rate

            if time.monotonic() + wait_time > deadline:
                logger.warning("Rate limit timeout exceeded")
                return False

            # Sleep in small increments to allow for cancellation
            time.sleep(min(wait_time, 0.1))


class RateLimitedSession:
    """
    Requests session wrapper with rate limiting, retries, and pooling.

    Usage:
        with RateLimitedSession() as session:
            response = session.request("GET", "https://api.themoviedb.org/3/find/tt0120338")
    """

    # Class-level rate limiters shared across all instances
    _rate_limiters: Dict[str, TokenBucketRateLimiter] = {}
    _rate_limiter_lock = threading.Lock()

    DEFAULT_RATE_LIMITS: Dict[str, RateLimitConfig] = {
        "api.themoviedb.org": RateLimitConfig(RATE_LIMIT_TMDB, burst_size=5),
        "omdbapi.com": RateLimitConfig(RATE_LIMIT_OMDB, burst_size=2),
        "media-imdb.com": RateLimitConfig(RATE_LIMIT_IMDB_SUGGESTION, burst_size=3),
    }

    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_factor: float = RETRY_BACKOFF_BASE,
        user_agent: str = None,
    ):
        """
        Initialize rate-limited session.

        Args:
            timeout: Default request timeout in seconds
            max_retries: Maximum number of retry attempts
            backoff_factor: Base for exponential backoff
            user_agent: Custom user agent string
        """
        self.timeout = timeout
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=10,
            pool_maxsize=20,
        )
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update({
            "User-Agent": user_agent or f"{SERVICE_NAME}/{SERVICE_VERSION}",
            "Accept": "application/json, text/javascript, */*",
            "Accept-Language": "en-US,en;q=0.9",
        })

    def _get_rate_limiter(self, url: str) -> Optional[TokenBucketRateLimiter]:
        """Rate limiter for the URL's host, or None if no limit configured."""
        host = urlparse(url).netloc.lower()

        config = None
        for pattern, cfg in self.DEFAULT_RATE_LIMITS.items():
            if pattern in host:
                config = cfg
                break

        if not config:
            return None

        with self._rate_limiter_lock:
            if host not in self._rate_limiters:
                self._rate_limiters[host] = TokenBucketRateLimiter(
                    config.requests_per_second,
                    config.burst_size
                )
            return self._rate_limiters[host]

    def _apply_rate_limit(self, url: str) -> None:
        """
        Block until rate limit allows request.

        Raises:
            requests.exceptions.Timeout: If rate limit wait times out
        """
        limiter = self._get_rate_limiter(url)
        if limiter and not limiter.acquire(timeout=60.0):
            raise requests.exceptions.Timeout(
                f"Rate limit timeout for {urlparse(url).netloc}"
            )

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Make a rate-limited request with any method."""
        self._apply_rate_limit(url)
        kwargs.setdefault("timeout", self.timeout)
        return self.session.request(method, url, **kwargs)

    def close(self) -> None:
        """Close the session and release resources."""
        self.session.close()

    def __enter__(self) -> "RateLimitedSession":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def create_session(
    timeout: float = REQUEST_TIMEOUT,
    user_agent: str = None,
) -> RateLimitedSession:
    """Create a configured rate-limited session."""
    return RateLimitedSession(timeout=timeout, user_agent=user_agent)


class SessionAwareComponent:
    """
    Mixin for components that optionally manage HTTP sessions.

    Usage:
        class MyClient(SessionAwareComponent):
            def __init__(self, session=None):
                self.init_session(session, timeout=15.0)
    """

    session: RateLimitedSession
    _owns_session: bool

    def init_session(
        self,
        session: RateLimitedSession = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        """
        Initialize session with ownership tracking.

        Args:
            session: Optional existing session to use
            timeout: Timeout for new session if created
        """
        self.session = session or create_session(timeout=timeout)
        self._owns_session = session is None

    def close(self) -> None:
        """Close session if we own it."""
        if self._owns_session:
            self.session.close()


# =============================================================================
# Transport
# =============================================================================

CLIENT_ERROR_MESSAGES: Dict[int, str] = {
    400: "400 - The request was invalid",
    401: "401 - The action requires a logged in user",
    403: "403 - The current user is not allowed to perform this action",
    404: "404 - The requested resource was not found",
}

DNS_FAILURE_MESSAGE = "6 - Couldn't resolve host or name lookup timed out"

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "name resolution",
    "getaddrinfo failed",
    "no address associated",
)


def _error_from_body(body: bytes) -> Optional[str]:
    """Human readable message from a structured 400 body ("invalid-title" -> "Invalid title")."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None

    message = payload.get("error") or payload.get("Error") or payload.get("status_message")
    if not isinstance(message, str) or not message.strip():
        return None
    message = message.strip().replace("-", " ").replace("_", " ")
    return message[0].upper() + message[1:]


def client_error_message(status_code: int, body: bytes) -> str:
    """Message for a 4xx response."""
    if status_code == 400:
        return _error_from_body(body) or CLIENT_ERROR_MESSAGES[400]
    if status_code in CLIENT_ERROR_MESSAGES:
        return CLIENT_ERROR_MESSAGES[status_code]
    return _error_from_body(body) or f"{status_code} - The request failed"


class HttpTransport(SessionAwareComponent):
    """
    Executes provider requests over a shared rate-limited session.

    Every outcome is either a RawResponse (2xx/3xx) or one of:
        TransportFailure     DNS, connection, timeout, retries exhausted, 5xx
        ProviderClientError  4xx
    """

    def __init__(self, session: RateLimitedSession = None, timeout: float = REQUEST_TIMEOUT):
        self.timeout = timeout
        self.init_session(session, timeout=timeout)

    def execute(self, request: RequestDescriptor) -> RawResponse:
        """
        Execute a request.

        Args:
            request: Fully built request

        Returns:
            Undecoded response

        Raises:
            TransportFailure: Network level failure or server error
            ProviderClientError: 4xx response
        """
        timeout = request.timeout or self.timeout
        logger.debug(f"{request.method} {request.log_url} (timeout {timeout}s)")

        try:
            with metrics.timer("provider_request_duration_ms", labels={"provider": request.provider}):
                response = self.session.request(
                    request.method,
                    request.url,
                    headers=request.headers or None,
                    timeout=timeout,
                )
        except requests.exceptions.Timeout as e:
            raise TransportFailure(request.provider, f"Request timed out after {timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            text = str(e).lower()
            if any(marker in text for marker in _DNS_MARKERS):
                raise TransportFailure(request.provider, DNS_FAILURE_MESSAGE) from e
            raise TransportFailure(request.provider, f"Connection failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportFailure(request.provider, f"Request failed: {e}") from e

        status = response.status_code
        if status >= 500:
            raise TransportFailure(request.provider, f"{status} - Server error")
        if status >= 400:
            raise ProviderClientError(
                request.provider, status, client_error_message(status, response.content)
            )

        return RawResponse(
            status_code=status,
            body=response.content,
            url=response.url or request.url,
            headers=dict(response.headers),
        )
