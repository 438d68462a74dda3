"""
Backend selection from scraper configuration.
"""

from __future__ import annotations

import logging

from catalogharvest.core.config.models import BackendType, ScraperConfig

from .base import Backend
from .http_backend import HttpBackend

logger = logging.getLogger(__name__)


def create_backend(config: ScraperConfig) -> Backend:
    """Create the backend named by ``config.backend``.

    Args:
        config: Scraper settings

    Returns:
        Unopened backend instance
    """
    if config.backend == BackendType.PLAYWRIGHT:
        from .playwright_backend import PlaywrightBackend

        logger.debug("Using Playwright backend")
        return PlaywrightBackend(
            headless=config.headless,
            timeout=config.timeout_seconds,
            user_agent=config.user_agent,
        )

    logger.debug("Using HTTP backend")
    return HttpBackend(
        timeout=config.timeout_seconds,
        max_retries=config.max_retries,
        user_agent=config.user_agent,
    )
