"""
ZIP archive packager.

Layout of ``<output_dir>/<base>.zip``::

    <base>.csv
    <product title>/Documents/<file>
    <product title>/Certificates/<file>

The CSV is UTF-8 with a BOM so spreadsheet tools pick up Cyrillic text.
Document and certificate link columns are downloaded instead of written to
the CSV. An attachment that fails to download or save is logged and skipped.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
import re
import zipfile
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import unquote, urlparse

from catalogharvest.core.backends import Backend, BackendError, HttpBackend, RequestSpec
from catalogharvest.core.config.models import PackagerConfig
from catalogharvest.core.errors import PackagingError
from catalogharvest.core.extract.base import record_title
from catalogharvest.core.extract.product import CERT_KEY_PATTERN, DOC_KEY_PATTERN, attachment_links

from .base import ArchiveRef

logger = logging.getLogger(__name__)


_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*]+')
_WHITESPACE = re.compile(r"\s+")
_CD_FILENAME_EXT = re.compile(r"filename\*=UTF-8''([^;\n]+)", re.IGNORECASE)
_CD_FILENAME = re.compile(r'filename="?([^";\n]+)"?', re.IGNORECASE)

MAX_NAME_LENGTH = 120


# =============================================================================
# Naming helpers
# =============================================================================


def sanitize_name(name: str | None, fallback: str = "item") -> str:
    """Make ``name`` safe to use as a file or folder name."""
    if not name:
        return fallback
    cleaned = _INVALID_NAME_CHARS.sub("_", str(name))
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()[:MAX_NAME_LENGTH]
    # Leading dots would hide the entry or walk out of the folder
    cleaned = cleaned.lstrip(".").strip()
    return cleaned or fallback


def attachment_filename(headers: Mapping[str, str], url: str, fallback: str) -> str:
    """Pick a filename from Content-Disposition, else the URL path."""
    disposition = None
    for key, value in headers.items():
        if key.lower() == "content-disposition":
            disposition = value
            break

    name = None
    if disposition:
        match = _CD_FILENAME_EXT.search(disposition) or _CD_FILENAME.search(disposition)
        if match:
            name = unquote(match.group(1).strip())

    if not name:
        name = unquote(urlparse(url).path.rsplit("/", 1)[-1])

    return sanitize_name(name, fallback=fallback)


def csv_columns(records: Sequence[Mapping[str, Any]]) -> list[str]:
    """Union of record keys in first-seen order, without attachment links."""
    columns: dict[str, None] = {}
    for record in records:
        for key in record:
            if DOC_KEY_PATTERN.match(key) or CERT_KEY_PATTERN.match(key):
                continue
            columns.setdefault(key, None)
    return list(columns)


def write_csv(path: Path, records: Sequence[Mapping[str, Any]]) -> None:
    """Write records as a BOM-prefixed UTF-8 CSV."""
    columns = csv_columns(records)
    with open(path, "w", newline="", encoding="utf-8-sig") as f:
        writer = csv.DictWriter(f, fieldnames=columns, restval="", extrasaction="ignore")
        writer.writeheader()
        for record in records:
            writer.writerow(record)


def zip_directory(source: Path, destination: Path) -> None:
    """Zip the contents of ``source`` into ``destination``.

    Written to a temporary file first so a reader never sees a partial archive.
    """
    tmp_path = destination.with_name(destination.name + ".part")
    with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for path in sorted(source.rglob("*")):
            if path.is_file():
                zf.write(path, path.relative_to(source).as_posix())
    os.replace(tmp_path, destination)


# =============================================================================
# Packager
# =============================================================================


class ArchivePackager:
    """Default packager: CSV plus downloaded attachments, zipped.

    Usage:
        packager = ArchivePackager(config.output_dir, config.packager)
        ref = await packager("catalog_products_....csv", records)
    """

    def __init__(
        self,
        output_dir: Path | str,
        config: PackagerConfig | None = None,
        backend_factory: Callable[[], Backend] | None = None,
    ):
        """Initialize the packager.

        Args:
            output_dir: Directory receiving the working folder and the archive
            config: Packaging settings
            backend_factory: Builds the backend used for attachment downloads
        """
        self.output_dir = Path(output_dir)
        self.config = config or PackagerConfig()
        self._backend_factory = backend_factory or HttpBackend

    async def __call__(
        self,
        suggested_filename: str,
        records: Sequence[dict[str, Any]],
    ) -> ArchiveRef:
        csv_name = sanitize_name(suggested_filename, fallback="products.csv")
        if not csv_name.lower().endswith(".csv"):
            csv_name += ".csv"
        base = csv_name[: -len(".csv")]
        work_dir = self.output_dir / base
        zip_name = f"{base}.zip"
        zip_path = self.output_dir / zip_name

        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(write_csv, work_dir / csv_name, records)
            logger.info(f"Wrote {len(records)} record(s) to {work_dir / csv_name}")

            if self.config.download_attachments:
                await self._download_attachments(work_dir, records)

            await asyncio.to_thread(zip_directory, work_dir, zip_path)
        except OSError as e:
            raise PackagingError(f"Failed to package {zip_name}: {e}") from e

        if not zip_path.exists() or zip_path.stat().st_size == 0:
            raise PackagingError(f"Archive {zip_name} is missing or empty")

        logger.info(f"Archive created: {zip_path}")
        return ArchiveRef(path=zip_path, name=zip_name)

    async def _download_attachments(
        self,
        work_dir: Path,
        records: Sequence[dict[str, Any]],
    ) -> None:
        planned: list[tuple[Path, list[str], str]] = []
        for index, record in enumerate(records, start=1):
            docs, certs = attachment_links(record)
            if not docs and not certs:
                continue
            product_dir = work_dir / sanitize_name(record_title(record), fallback=f"product_{index}")
            if docs:
                planned.append((product_dir / self.config.documents_dir_name, docs, "document"))
            if certs:
                planned.append((product_dir / self.config.certificates_dir_name, certs, "cert"))

        if not planned:
            return

        backend = self._backend_factory()
        try:
            await backend.open()
        except BackendError as e:
            raise PackagingError(f"Could not start attachment downloads: {e}") from e

        try:
            for folder, urls, kind in planned:
                folder.mkdir(parents=True, exist_ok=True)
                for position, url in enumerate(urls, start=1):
                    await self._download_one(backend, folder, url, f"{kind}_{position}")
        finally:
            await backend.close()

    async def _download_one(self, backend: Backend, folder: Path, url: str, fallback: str) -> None:
        try:
            result = await backend.fetch_bytes(RequestSpec(url=url, page_type="attachment"))
        except BackendError as e:
            logger.warning(f"Failed to download attachment {url}: {e}")
            return

        if not result.ok:
            logger.warning(f"Skipping attachment {url}: HTTP {result.status_code}")
            return

        target = folder / attachment_filename(result.headers, url, fallback)
        try:
            await asyncio.to_thread(target.write_bytes, result.content)
        except OSError as e:
            logger.warning(f"Failed to save attachment {url} to {target}: {e}")
            return
        logger.debug(f"Saved attachment {target}")

