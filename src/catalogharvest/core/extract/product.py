"""
Product page parser.

Pulls the product card fields out of a catalog product page with lxml and
CSS selectors. Characteristic labels go through the replacement map; any
label still at or above ``MAX_LABEL_LENGTH`` is reported back rather than
truncated.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urljoin

from lxml import html as lxml_html
from lxml.html import HtmlElement

from catalogharvest.core.config.models import MAX_LABEL_LENGTH


_LEADING_INT = re.compile(r"^-?\d+")

# Link columns that the packager downloads instead of writing to the CSV
DOC_KEY_PATTERN = re.compile(r"^doc\d+$", re.IGNORECASE)
CERT_KEY_PATTERN = re.compile(r"^cert\d+$", re.IGNORECASE)


@dataclass
class ProductSelectors:
    """CSS selectors for the catalog's product page layout."""

    title: str = ".page-title h1"
    subtitle_row: str = ".product-detail__row-1"
    property_row: str = ".product-detail__property"
    manufacturer_index: int = 1
    price: str = ".product-detail__price-value"
    description: str = ".product-detail__short-description span"
    image: str = ".product-images-slider__main-slide img"
    characteristic: str = ".product-detail__characteristic-column"
    document_item: str = ".product-detail__documentation-item"
    document_name: str = ".product-detail__documentation-item-name"
    certificate_link: str = ".product-detail__certificates-link a"


@dataclass
class ParsedProduct:
    """One product card plus any labels that need replacing."""

    record: dict[str, Any]
    long_labels: list[str] = field(default_factory=list)

    @property
    def title(self) -> str | None:
        return self.record.get("title")


def _text(element: HtmlElement) -> str:
    return element.text_content().strip()


def _joined_text(elements: list[HtmlElement]) -> str:
    return "".join(e.text_content() for e in elements).strip()


def parse_price(raw: str) -> int | None:
    """Parse a price like ``"12 345,50 ₽"`` into whole units (12345)."""
    compact = re.sub(r"\s", "", raw)
    compact = re.sub(r",.*$", "", compact)
    match = _LEADING_INT.match(compact)
    return int(match.group(0)) if match else None


class ProductPageParser:
    """Extract a product record from product page HTML."""

    def __init__(
        self,
        base_url: str,
        selectors: ProductSelectors | None = None,
        max_label_length: int = MAX_LABEL_LENGTH,
    ):
        self.base_url = base_url
        self.selectors = selectors or ProductSelectors()
        self.max_label_length = max_label_length

    def parse(
        self,
        html: str,
        article: str,
        replacements: Mapping[str, str] | None = None,
    ) -> ParsedProduct:
        """Parse one product page.

        Args:
            html: Page markup
            article: Catalog article the page was fetched for
            replacements: Long label -> short label map

        Returns:
            ParsedProduct with the record and any over-length labels
        """
        s = self.selectors
        tree = lxml_html.fromstring(html)
        record: dict[str, Any] = {"article": article}
        long_labels: list[str] = []

        title = _joined_text(tree.cssselect(s.title))
        subtitle = ""
        for row in tree.cssselect(s.subtitle_row):
            subtitle += _joined_text(row.cssselect("h2"))
        full_title = f"{subtitle} {title}".strip()
        if full_title:
            record["title"] = full_title

        properties = tree.cssselect(s.property_row)
        if len(properties) > s.manufacturer_index:
            manufacturer = _joined_text(properties[s.manufacturer_index].cssselect("a"))
            if manufacturer:
                record["manufacturer"] = manufacturer

        prices = tree.cssselect(s.price)
        if prices:
            price = parse_price(prices[0].text_content())
            if price is not None:
                record["price"] = price

        description = _joined_text(tree.cssselect(s.description))
        if description:
            record["description"] = description

        images = tree.cssselect(s.image)
        if images and images[0].get("src"):
            record["image"] = urljoin(self.base_url, images[0].get("src"))

        attr_index = 1
        for column in tree.cssselect(s.characteristic):
            paragraphs = column.cssselect("p")
            if len(paragraphs) < 2:
                continue
            name = _text(paragraphs[0])
            value = _text(paragraphs[1])
            if not name or not value:
                continue

            if replacements and name in replacements:
                name = replacements[name]
            if len(name) >= self.max_label_length and name not in long_labels:
                long_labels.append(name)

            record[f"Attribute {attr_index} name"] = name
            record[f"Attribute {attr_index} value"] = value
            attr_index += 1

        doc_index = 1
        for item in tree.cssselect(s.document_item):
            name = _joined_text(item.cssselect(s.document_name))
            links = item.cssselect("a")
            href = links[0].get("href") if links else None
            if name and href:
                record[f"doc{doc_index}"] = urljoin(self.base_url, href)
                doc_index += 1

        cert_index = 1
        for link in tree.cssselect(s.certificate_link):
            href = link.get("href")
            if href:
                record[f"cert{cert_index}"] = urljoin(self.base_url, href)
                cert_index += 1

        return ParsedProduct(record=record, long_labels=long_labels)


def attachment_links(record: Mapping[str, Any]) -> tuple[list[str], list[str]]:
    """Split a record's link columns into (documents, certificates)."""
    docs = [str(v) for k, v in record.items() if v and DOC_KEY_PATTERN.match(k)]
    certs = [str(v) for k, v in record.items() if v and CERT_KEY_PATTERN.match(k)]
    return docs, certs
