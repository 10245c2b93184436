"""
HTTP fetching with bounded retries.

429, 5xx and network errors are retried with exponential backoff plus
jitter, honoring Retry-After when the upstream sends one. Any other 4xx
fails on the first attempt.
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Literal, Optional
import logging

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from regwatch.config import ResilienceSettings
from regwatch.services.ingestion.errors import (
    IngestionError,
    NetworkError,
    ParseError,
    RateLimitExceeded,
    UpstreamHTTPError,
)
from regwatch.services.ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

Expect = Literal["xml", "json", "html", "any"]

# Called with (error, attempt number, seconds until the next attempt)
RetryCallback = Callable[[BaseException, int, float], None]

USER_AGENT = "RegWatch/0.1 (regulatory alert monitor)"

# Statuses meaning "this URL is gone"; the only ones that trigger a backup URL
MOVED_STATUSES = {404, 410}


def compute_backoff(attempt: int, base: float, ceiling: float) -> float:
    """Delay before retry number `attempt` (0-based), without jitter."""
    if attempt < 0:
        attempt = 0
    # Cap the exponent so huge attempt numbers don't overflow
    return min(base * (2 ** min(attempt, 32)), ceiling)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()

    try:
        return max(float(value), 0.0)
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


@dataclass
class FetchResult:
    """Body of a successful fetch."""
    url: str
    status_code: int
    text: str
    content_type: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    used_backup: bool = False


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, IngestionError) and bool(exc.retryable)


class RetryingFetcher:
    """
    Async HTTP GET with retry, timeout and error classification.

    Features:
    - Bounded retries (max_retries after the first attempt)
    - Retry-After honored for 429/503, capped at max_retry_after_seconds
    - HTML error pages rejected when XML or JSON was expected
    - Every attempt recorded against the rate limiter key
    - Injectable sleep and random source for deterministic tests
    """

    def __init__(
        self,
        settings: Optional[ResilienceSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or ResilienceSettings()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.settings.request_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        self.rate_limiter = rate_limiter
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def __aenter__(self) -> "RetryingFetcher":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    def backoff_for(self, attempt: int) -> float:
        """Backoff for a 0-based attempt index, jitter included."""
        delay = compute_backoff(
            attempt,
            self.settings.backoff_base_seconds,
            self.settings.backoff_max_seconds,
        )
        if self.settings.backoff_jitter_seconds > 0:
            delay += self._rng.uniform(0, self.settings.backoff_jitter_seconds)
        return delay

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, UpstreamHTTPError) and exc.retry_after is not None:
            return min(exc.retry_after, self.settings.max_retry_after_seconds)
        return self.backoff_for(retry_state.attempt_number - 1)

    def _before_sleep(self, url: str, on_retry: Optional[RetryCallback]):
        def log_retry(retry_state: RetryCallState):
            exc = retry_state.outcome.exception()
            wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{self.settings.max_retries + 1} "
                f"for {url} failed: {exc}; retrying in {wait:.1f}s"
            )
            if on_retry is not None:
                on_retry(exc, retry_state.attempt_number, wait)

        return log_retry

    async def fetch(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        expect: Expect = "any",
        rate_limit_key: Optional[str] = None,
        authenticated: bool = False,
        headers: Optional[dict[str, str]] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> FetchResult:
        """
        GET `url`, retrying transient failures.

        Raises:
            UpstreamHTTPError: non-retryable status, or retries exhausted
            NetworkError: connection failures after retries are exhausted
            ParseError: an HTML error page arrived where XML/JSON was expected
            RateLimitExceeded: the upstream quota ran out between attempts
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._before_sleep(url, on_retry),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                return await self._attempt(
                    url,
                    params=params,
                    expect=expect,
                    rate_limit_key=rate_limit_key,
                    authenticated=authenticated,
                    headers=headers,
                    attempt_number=attempt.retry_state.attempt_number,
                )

        raise NetworkError(f"No attempt was made for {url}", {"endpoint": url})

    async def fetch_with_fallback(
        self,
        url: str,
        backup_url: Optional[str] = None,
        **kwargs,
    ) -> FetchResult:
        """
        Fetch `url`; if it answers 404/410 and a backup is configured,
        fetch the backup once instead.
        """
        try:
            return await self.fetch(url, **kwargs)
        except UpstreamHTTPError as e:
            if backup_url is None or e.status_code not in MOVED_STATUSES:
                raise
            logger.info(f"{url} returned {e.status_code}, falling back to {backup_url}")

        result = await self.fetch(backup_url, **kwargs)
        result.used_backup = True
        return result

    async def _attempt(
        self,
        url: str,
        params: Optional[dict[str, Any]],
        expect: Expect,
        rate_limit_key: Optional[str],
        authenticated: bool,
        headers: Optional[dict[str, str]],
        attempt_number: int,
    ) -> FetchResult:
        context = {"endpoint": url, "attempt": attempt_number}

        if rate_limit_key and self.rate_limiter:
            if not self.rate_limiter.check(rate_limit_key, authenticated):
                raise RateLimitExceeded(f"Quota exhausted for {rate_limit_key}", context)
            self.rate_limiter.record(rate_limit_key)

        try:
            response = await self.client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout fetching {url}", context) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error fetching {url}: {e}", context) from e

        if response.status_code >= 400:
            raise UpstreamHTTPError(
                response.status_code,
                url,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                context={**context, "status_code": response.status_code},
            )

        content_type = response.headers.get("content-type", "")
        text = response.text

        if self._looks_like_html_error(text, content_type, expect):
            raise ParseError(
                f"Expected {expect.upper()} from {url} but received an HTML page",
                {**context, "content_type": content_type},
            )

        return FetchResult(
            url=str(response.url),
            status_code=response.status_code,
            text=text,
            content_type=content_type,
            headers=dict(response.headers),
        )

    def _looks_like_html_error(self, text: str, content_type: str, expect: Expect) -> bool:
        if expect in ("html", "any"):
            return False

        head = text[:512].lstrip().lower()
        if head.startswith("<!doctype html") or head.startswith("<html"):
            return True
        if expect == "json" and "text/html" in content_type.lower():
            return not head.startswith(("{", "["))
        return False
