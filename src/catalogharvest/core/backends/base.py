"""
Backend base classes and data structures.

Defines the interface contract for all fetch backends.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RequestSpec:
    """Specification for an HTTP request."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    follow_redirects: bool = True

    # Metadata for logging/debugging
    page_type: str | None = None  # "product", "attachment"


@dataclass
class FetchResult:
    """Result of a page fetch."""

    url: str
    final_url: str  # After redirects
    status_code: int
    html: str
    headers: dict[str, str]

    elapsed_ms: float
    fetched_at: datetime = field(default_factory=_utcnow)
    retry_count: int = 0

    @property
    def ok(self) -> bool:
        """Check if request was successful (2xx status)."""
        return 200 <= self.status_code < 300

    @property
    def content_length(self) -> int:
        """Get content length in bytes."""
        return len(self.html.encode("utf-8"))


@dataclass
class BinaryResult:
    """Result of a binary download (attachments)."""

    url: str
    final_url: str
    status_code: int
    content: bytes
    headers: dict[str, str]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Backend(ABC):
    """Abstract base class for fetch backends.

    ``fetch`` returns page markup; ``fetch_bytes`` downloads attachments.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier."""
        pass

    @property
    def supports_javascript(self) -> bool:
        """Whether this backend can execute JavaScript."""
        return False

    @abstractmethod
    async def fetch(self, request: RequestSpec) -> FetchResult:
        """Fetch a URL and return the response.

        Raises:
            BackendError: On unrecoverable fetch failure
        """
        pass

    @abstractmethod
    async def fetch_bytes(self, request: RequestSpec) -> BinaryResult:
        """Download a URL as raw bytes.

        Raises:
            BackendError: On unrecoverable fetch failure
        """
        pass

    async def open(self) -> None:
        """Acquire resources before the first request.

        Failures here are backend-wide, not tied to any single URL.
        """
        pass

    async def close(self) -> None:
        """Clean up backend resources."""
        pass

    async def __aenter__(self) -> "Backend":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


class BackendError(Exception):
    """Base exception for backend errors."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.cause = cause


class FetchError(BackendError):
    """Error during fetch operation."""
    pass


class RenderError(BackendError):
    """Error while rendering a page in the browser."""
    pass


class RateLimitError(BackendError):
    """Rate limit hit (429 or similar)."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, url, status_code=429)
        self.retry_after = retry_after


class BlockedError(BackendError):
    """Request blocked by anti-bot measures."""
    pass
