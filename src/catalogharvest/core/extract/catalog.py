"""
Catalog extractor.

Fetches one product page per article, strictly one at a time with a pause
between items, and parses each page into a record. A failure on a single
item becomes a degraded record; only failures that affect the whole batch
(such as the backend failing to start) are raised.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence
from urllib.parse import quote, urljoin

from catalogharvest.core.backends import Backend, FetchError, RequestSpec, create_backend
from catalogharvest.core.config.models import ScraperConfig

from .base import (
    ERROR_KEY,
    URL_KEY,
    ExtractionOutcome,
    ExtractionSuccess,
    LogSink,
    NeedsResolution,
    record_title,
)
from .product import ProductPageParser

if TYPE_CHECKING:
    from catalogharvest.core.orchestrator.cancellation import CancellationToken

logger = logging.getLogger(__name__)


# Per-item error messages kept in degraded records
MAX_ERROR_LENGTH = 200

FILENAME_PREFIX = "catalog_products"


def suggested_filename(now: datetime | None = None) -> str:
    """Timestamped CSV filename, e.g. ``catalog_products_2024-05-01_12-30-05-123.csv``."""
    now = now or datetime.now()
    stamp = now.strftime("%Y-%m-%d_%H-%M-%S") + f"-{now.microsecond // 1000:03d}"
    return f"{FILENAME_PREFIX}_{stamp}.csv"


class CatalogExtractor:
    """Default extractor for the product catalog.

    Usage:
        extractor = CatalogExtractor(config.scraper)
        outcome = await extractor(items, replacements, log, token)
    """

    def __init__(
        self,
        config: ScraperConfig,
        backend_factory: Callable[[], Backend] | None = None,
        parser: ProductPageParser | None = None,
    ):
        """Initialize the extractor.

        Args:
            config: Scraper settings (base URL, pause, timeouts)
            backend_factory: Builds a fresh backend per attempt; defaults to
                the backend named in ``config``
            parser: Product page parser
        """
        self.config = config
        self._backend_factory = backend_factory or (lambda: create_backend(config))
        self.parser = parser or ProductPageParser(config.base_url)

    @property
    def delay_seconds(self) -> float:
        return self.config.delay_between_items_ms / 1000

    def product_url(self, article: str) -> str:
        return urljoin(self.config.base_url, f"product/{quote(article.strip(), safe='')}")

    async def __call__(
        self,
        items: Sequence[str],
        replacements: Mapping[str, str],
        log: LogSink,
        token: "CancellationToken",
    ) -> ExtractionOutcome:
        total = len(items)
        records: list[dict[str, Any]] = []
        long_labels: list[str] = []

        log(f"Starting extraction of {total} item(s)")
        backend = self._backend_factory()

        try:
            await backend.open()

            for index, raw in enumerate(items):
                token.raise_if_cancelled()
                if index > 0:
                    await token.sleep(self.delay_seconds)
                    token.raise_if_cancelled()

                article = raw.strip()
                url = self.product_url(article)
                log(f"[{index + 1}/{total}] Fetching {article}")

                try:
                    result = await backend.fetch(
                        RequestSpec(url=url, timeout=self.config.timeout_seconds, page_type="product")
                    )
                    if not result.ok:
                        raise FetchError(
                            f"HTTP {result.status_code}",
                            url=url,
                            status_code=result.status_code,
                        )
                    parsed = self.parser.parse(result.html, article, replacements)
                except Exception as e:
                    message = str(e) or type(e).__name__
                    logger.warning(f"Item {article} failed: {message}")
                    log(f"Failed {article}: {message}")
                    records.append({
                        "article": article,
                        URL_KEY: url,
                        ERROR_KEY: message[:MAX_ERROR_LENGTH],
                    })
                    continue

                for label in parsed.long_labels:
                    if label not in long_labels:
                        long_labels.append(label)
                records.append(parsed.record)
                log(f"OK: {record_title(parsed.record)}")
        finally:
            await backend.close()

        if long_labels:
            log(f"Found {len(long_labels)} attribute label(s) that need shorter names")
            return NeedsResolution(long_labels=tuple(long_labels))

        filename = suggested_filename()
        titles = tuple(t for t in (record_title(r) for r in records) if t)
        log(f"Extraction finished: {len(records)} record(s), {filename}")
        return ExtractionSuccess(records=records, suggested_filename=filename, titles=titles)
