"""Backend implementations for fetching catalog pages and attachments."""

from .base import (
    Backend,
    BackendError,
    BinaryResult,
    BlockedError,
    FetchError,
    FetchResult,
    RateLimitError,
    RenderError,
    RequestSpec,
)
from .factory import create_backend
from .http_backend import HttpBackend
from .playwright_backend import NavigationTimeout, PlaywrightBackend

__all__ = [
    # Base classes
    "Backend",
    "RequestSpec",
    "FetchResult",
    "BinaryResult",
    # Errors
    "BackendError",
    "FetchError",
    "RenderError",
    "RateLimitError",
    "BlockedError",
    "NavigationTimeout",
    # Implementations
    "HttpBackend",
    "PlaywrightBackend",
    "create_backend",
]
