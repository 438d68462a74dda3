"""Product extraction: the extractor contract and the default catalog extractor."""

from .base import (
    ERROR_KEY,
    URL_KEY,
    ExtractionOutcome,
    ExtractionSuccess,
    Extractor,
    LogSink,
    NeedsResolution,
    record_title,
)
from .catalog import CatalogExtractor, suggested_filename
from .product import ParsedProduct, ProductPageParser, ProductSelectors, attachment_links, parse_price

__all__ = [
    # Contract
    "Extractor",
    "ExtractionOutcome",
    "ExtractionSuccess",
    "NeedsResolution",
    "LogSink",
    "ERROR_KEY",
    "URL_KEY",
    "record_title",
    # Catalog
    "CatalogExtractor",
    "suggested_filename",
    "ProductPageParser",
    "ProductSelectors",
    "ParsedProduct",
    "attachment_links",
    "parse_price",
]
