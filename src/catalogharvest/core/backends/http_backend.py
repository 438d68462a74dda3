"""
HTTP Backend implementation using httpx.

Provides async HTTP fetching with:
- Persistent connection pooling
- Automatic retry with exponential backoff
- Rate limit and block detection
"""

from __future__ import annotations

import time

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .base import (
    Backend,
    BinaryResult,
    BlockedError,
    FetchError,
    FetchResult,
    RateLimitError,
    RequestSpec,
)


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36"
)

# Status codes that indicate blocking
BLOCKED_STATUS_CODES = {403, 406, 418, 451}

# Small pages containing one of these are treated as anti-bot walls
BLOCKED_INDICATORS = (
    "captcha",
    "challenge-platform",
    "cf-browser-verification",
    "please verify you are human",
    "unusual traffic",
)


class HttpBackend(Backend):
    """HTTP backend using httpx for async requests."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        user_agent: str | None = None,
        default_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize HTTP backend.

        Args:
            timeout: Default request timeout in seconds
            max_retries: Maximum attempts per request
            retry_backoff: Exponential backoff multiplier
            user_agent: Custom user agent
            default_headers: Default headers for all requests
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self._transport = transport

        self.default_headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "ru-RU,ru;q=0.9,en-US;q=0.8,en;q=0.7",
            **(default_headers or {}),
        }

        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return "http"

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                headers=self.default_headers,
                transport=self._transport,
                limits=httpx.Limits(
                    max_connections=10,
                    max_keepalive_connections=5,
                ),
            )
        return self._client

    def _check_rate_limit(self, response: httpx.Response) -> None:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            retry_seconds = None

            if retry_after:
                try:
                    retry_seconds = float(retry_after)
                except ValueError:
                    pass

            raise RateLimitError(
                "Rate limit exceeded",
                url=str(response.url),
                retry_after=retry_seconds,
            )

    def _check_blocked(self, response: httpx.Response, html: str) -> None:
        if response.status_code in BLOCKED_STATUS_CODES:
            raise BlockedError(
                f"Request blocked with status {response.status_code}",
                url=str(response.url),
                status_code=response.status_code,
            )

        if len(html) < 50000:
            html_lower = html.lower()
            for indicator in BLOCKED_INDICATORS:
                if indicator in html_lower:
                    raise BlockedError(
                        f"Possible anti-bot block detected: '{indicator}' in response",
                        url=str(response.url),
                        status_code=response.status_code,
                    )

    async def _send(self, request: RequestSpec) -> tuple[httpx.Response, int, float]:
        """GET with retries on transport errors and rate limiting.

        Returns:
            Tuple of (response, retry_count, elapsed_ms)
        """
        client = await self._ensure_client()
        headers = {**self.default_headers, **request.headers}
        retry_count = 0

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=self.retry_backoff, min=1, max=30),
                retry=retry_if_exception_type((httpx.TransportError, RateLimitError)),
                reraise=True,
            ):
                with attempt:
                    retry_count = attempt.retry_state.attempt_number - 1
                    started = time.monotonic()

                    response = await client.get(
                        request.url,
                        headers=headers,
                        params=request.params or None,
                        follow_redirects=request.follow_redirects,
                        timeout=request.timeout,
                    )
                    self._check_rate_limit(response)

                    elapsed_ms = (time.monotonic() - started) * 1000
                    return response, retry_count, elapsed_ms

        except RateLimitError:
            raise
        except httpx.TransportError as e:
            raise FetchError(
                f"Transport error after {retry_count + 1} attempts: {e}",
                url=request.url,
                cause=e,
            ) from e

        raise FetchError("Retry loop exited without a response", url=request.url)

    async def fetch(self, request: RequestSpec) -> FetchResult:
        """Fetch a page with automatic retry."""
        response, retry_count, elapsed_ms = await self._send(request)
        html = response.text
        self._check_blocked(response, html)

        return FetchResult(
            url=request.url,
            final_url=str(response.url),
            status_code=response.status_code,
            html=html,
            headers=dict(response.headers),
            elapsed_ms=elapsed_ms,
            retry_count=retry_count,
        )

    async def fetch_bytes(self, request: RequestSpec) -> BinaryResult:
        """Download an attachment with automatic retry."""
        response, _, _ = await self._send(request)

        return BinaryResult(
            url=request.url,
            final_url=str(response.url),
            status_code=response.status_code,
            content=response.content,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
