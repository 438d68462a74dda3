"""Packaging of extracted records into downloadable archives."""

from .archive import ArchivePackager, attachment_filename, csv_columns, sanitize_name, write_csv
from .base import ArchiveRef, Packager

__all__ = [
    "ArchiveRef",
    "Packager",
    "ArchivePackager",
    "attachment_filename",
    "csv_columns",
    "sanitize_name",
    "write_csv",
]
