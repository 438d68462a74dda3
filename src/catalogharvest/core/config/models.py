"""
Pydantic configuration models for CatalogHarvest.

These models provide type-safe configuration with validation for:
- Application settings
- Catalog scraper and backend preferences
- Archive packaging
- The attribute label replacement map
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


# Attribute labels at or above this length need a human-chosen replacement
MAX_LABEL_LENGTH = 28

REPLACEMENTS_FORMAT_VERSION = 1


# =============================================================================
# Enums
# =============================================================================


class BackendType(str, Enum):
    """Supported fetch backend types."""

    HTTP = "http"
    PLAYWRIGHT = "playwright"


# =============================================================================
# Scraper Configuration
# =============================================================================


class ScraperConfig(BaseModel):
    """Catalog scraping settings."""

    base_url: str = Field(
        default="https://www.tinko.ru/catalog/",
        description="Catalog root; product pages live under <base_url>product/<article>",
    )
    backend: BackendType = Field(
        default=BackendType.HTTP,
        description="Backend used to fetch product pages",
    )
    timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Request timeout in seconds",
    )
    delay_between_items_ms: int = Field(
        default=2000,
        ge=0,
        description="Pause between consecutive items to bound load on the catalog",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum fetch attempts per request",
    )
    user_agent: str | None = Field(
        default=None,
        description="Custom user agent (backend default if unset)",
    )
    headless: bool = Field(
        default=True,
        description="Run the browser backend in headless mode",
    )

    @field_validator("base_url")
    @classmethod
    def base_url_has_trailing_slash(cls, v: str) -> str:
        """Product URLs are resolved relative to the base, so keep the slash."""
        return v if v.endswith("/") else v + "/"


# =============================================================================
# Packager Configuration
# =============================================================================


class PackagerConfig(BaseModel):
    """Archive packaging settings."""

    download_attachments: bool = Field(
        default=True,
        description="Download product documents and certificates into the archive",
    )
    documents_dir_name: str = Field(
        default="Documents",
        description="Per-product folder for documentation files",
    )
    certificates_dir_name: str = Field(
        default="Certificates",
        description="Per-product folder for certificate files",
    )


# =============================================================================
# Server / Database / Logging Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """Web server settings."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000, ge=1, le=65535)


class DatabaseConfig(BaseModel):
    """History database settings."""

    url: str = Field(
        default="sqlite:///data/history.db",
        description="SQLAlchemy database URL",
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging)",
    )


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    file: Path | None = Field(
        default=Path("logs/catalogharvest.log"),
        description="Log file path",
    )
    json_format: bool = Field(
        default=True,
        description="Use JSON format for file logs",
    )
    rich_console: bool = Field(
        default=True,
        description="Use Rich for console output",
    )


# =============================================================================
# Replacement Map
# =============================================================================


class ReplacementMap(BaseModel):
    """Mapping of over-length attribute labels to short canonical labels.

    Serialized as a versioned YAML document by ``ReplacementStore``.
    """

    version: int = Field(default=REPLACEMENTS_FORMAT_VERSION)
    replacements: dict[str, str] = Field(default_factory=dict)

    @field_validator("replacements")
    @classmethod
    def replacements_are_short(cls, v: dict[str, str]) -> dict[str, str]:
        """Reject empty labels and replacements that are still too long."""
        cleaned: dict[str, str] = {}
        for original, short in v.items():
            original = original.strip()
            short = short.strip()
            if not original or not short:
                raise ValueError("replacement labels must not be empty")
            if len(short) >= MAX_LABEL_LENGTH:
                raise ValueError(
                    f"replacement for '{original}' must be shorter than "
                    f"{MAX_LABEL_LENGTH} characters: '{short}'"
                )
            cleaned[original] = short
        return cleaned

    def merged(self, other: dict[str, str]) -> "ReplacementMap":
        """Return a new map with ``other`` layered over this one."""
        return ReplacementMap.model_validate(
            {"version": self.version, "replacements": {**self.replacements, **other}}
        )


# =============================================================================
# Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """Root application configuration.

    This is the main configuration object loaded from app.yaml.
    """

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Data storage directory",
    )
    output_dir: Path = Field(
        default=Path("out"),
        description="Run artifacts and archives",
    )
    replacements_path: Path = Field(
        default=Path("configs/replacements.yaml"),
        description="Persisted attribute label replacement map",
    )

    # Components
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    scraper: ScraperConfig = Field(default_factory=ScraperConfig)
    packager: PackagerConfig = Field(default_factory=PackagerConfig)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.data_dir, self.output_dir, self.replacements_path.parent]:
            dir_path.mkdir(parents=True, exist_ok=True)

        if self.logging.file:
            self.logging.file.parent.mkdir(parents=True, exist_ok=True)

    def summary(self) -> dict[str, Any]:
        """Short description for startup logging."""
        return {
            "backend": self.scraper.backend.value,
            "base_url": self.scraper.base_url,
            "output_dir": str(self.output_dir),
            "database": self.database.url,
        }
