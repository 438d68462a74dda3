"""
Persistent store for the attribute label replacement map.

The map lives in a small versioned YAML document::

    version: 1
    replacements:
      "Very Long Attribute Label Example": "Short Label"

A bare mapping (no ``replacements`` key) is read as the replacement table
itself. A missing or unreadable document loads as an empty map; write
failures are logged and never raised.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from catalogharvest.core.errors import ReplacementError
from .loader import ConfigError, load_yaml_file
from .models import ReplacementMap

logger = logging.getLogger(__name__)


def _validation_message(error: ValidationError) -> str:
    return "; ".join(e["msg"].removeprefix("Value error, ") for e in error.errors())


class ReplacementStore:
    """Load, validate and persist the replacement map."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._cached: ReplacementMap | None = None

    def load(self) -> ReplacementMap:
        """Read the map from disk, falling back to an empty map."""
        if not self.path.exists():
            self._cached = ReplacementMap()
            return self._cached

        try:
            data = load_yaml_file(self.path)
            if "replacements" not in data:
                data = {"replacements": data}
            self._cached = ReplacementMap.model_validate(data)
        except (ConfigError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable replacement map at {self.path}: {e}")
            self._cached = ReplacementMap()

        return self._cached

    def current(self) -> ReplacementMap:
        """Cached map, loading it on first use."""
        if self._cached is None:
            return self.load()
        return self._cached

    def as_dict(self) -> dict[str, str]:
        return dict(self.current().replacements)

    def merge(self, replacements: dict[str, str]) -> ReplacementMap:
        """Layer ``replacements`` over the stored map and persist the result.

        Raises:
            ReplacementError: If any entry fails validation
        """
        try:
            merged = self.current().merged(replacements)
        except ValidationError as e:
            raise ReplacementError(_validation_message(e)) from e

        self._cached = merged
        self.save(merged)
        return merged

    def replace_all(self, replacements: dict[str, str]) -> ReplacementMap:
        """Swap the whole map (maintenance interface)."""
        try:
            new_map = ReplacementMap(replacements=replacements)
        except ValidationError as e:
            raise ReplacementError(_validation_message(e)) from e

        self._cached = new_map
        self.save(new_map)
        return new_map

    def remove(self, label: str) -> bool:
        """Drop one entry. Returns False if it was not present."""
        current = self.current()
        if label not in current.replacements:
            return False

        remaining = {k: v for k, v in current.replacements.items() if k != label}
        self._cached = ReplacementMap(version=current.version, replacements=remaining)
        self.save(self._cached)
        return True

    def save(self, replacement_map: ReplacementMap) -> bool:
        """Write the map atomically. Returns False (and logs) on failure."""
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(
                    replacement_map.model_dump(),
                    f,
                    allow_unicode=True,
                    sort_keys=False,
                )
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write replacement map {self.path}: {e}")
            return False
        return True
