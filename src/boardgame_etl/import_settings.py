"""boardgame_etl.import_settings

YAML-based settings for the match-import pipeline.

Responsibilities:
  - Load and validate the settings file (config/import_settings.yml)
  - Provide DEFAULT_SETTINGS when no file is given
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from boardgame_etl.import_settings import load_import_settings

    settings = load_import_settings(Path("config/import_settings.yml"))
    settings.min_token_length  # → 3
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "foreign_player_prefix",
    "foreign_extension_prefix",
    "unknown_game_title",
    "unknown_player_name",
})

_STRING_KEYS = (
    "version",
    "foreign_player_prefix",
    "foreign_extension_prefix",
    "unknown_game_title",
    "unknown_player_name",
    "mixed_export_title",
    "player_avatar_url",
    "game_avatar_url",
    "date_format",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportSettingsValidationError(ValueError):
    """Raised when a YAML settings file fails schema validation."""


# ---------------------------------------------------------------------------
# ImportSettings dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportSettings:
    """Parsed, validated import settings."""

    version: str = "v1"
    foreign_player_prefix: str = "bg_"
    foreign_extension_prefix: str = "bg_ext_"
    unknown_game_title: str = "Unknown Game"
    unknown_player_name: str = "Unknown Player"
    mixed_export_title: str = "Mixed Export"
    min_token_length: int = 3
    unsupported_link_patterns: tuple[str, ...] = ("bgstatsapp.com",)
    player_avatar_url: str = "https://ui-avatars.com/api/?name={name}&background=random"
    game_avatar_url: str = "https://ui-avatars.com/api/?name={name}&background=random&size=512"
    date_format: str = "%Y-%m-%d"
    share_url_max_length: int = 8000
    yaml_hash: str | None = None
    raw_yaml: str = field(repr=False, default="")


DEFAULT_SETTINGS = ImportSettings()


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_import_settings(yaml_path: Path | None) -> ImportSettings:
    """Load, validate, and return ImportSettings from a YAML file.

    Args:
        yaml_path: Path to the YAML settings file, or None for defaults.

    Returns:
        A validated ImportSettings instance.  Keys absent from the file keep
        their DEFAULT_SETTINGS values.

    Raises:
        ImportSettingsValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return DEFAULT_SETTINGS
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_import_settings(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    kwargs: dict[str, Any] = {k: str(data[k]) for k in _STRING_KEYS if k in data}
    if "min_token_length" in data:
        kwargs["min_token_length"] = int(data["min_token_length"])
    if "share_url_max_length" in data:
        kwargs["share_url_max_length"] = int(data["share_url_max_length"])
    if "unsupported_link_patterns" in data:
        kwargs["unsupported_link_patterns"] = tuple(
            str(p) for p in (data.get("unsupported_link_patterns") or [])
        )
    return ImportSettings(yaml_hash=yaml_hash, raw_yaml=raw, **kwargs)


def validate_import_settings(data: dict[str, Any]) -> None:
    """Raise ImportSettingsValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - Foreign id prefixes non-empty and distinct
      - min_token_length and share_url_max_length are positive integers
      - Avatar URL templates carry a {name} placeholder
    """
    if not isinstance(data, dict):
        raise ImportSettingsValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise ImportSettingsValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    for key in _STRING_KEYS:
        if key in data and not isinstance(data[key], (str, int, float)):
            raise ImportSettingsValidationError(f"'{key}' must be a scalar string.")

    player_prefix = str(data["foreign_player_prefix"])
    ext_prefix = str(data["foreign_extension_prefix"])
    if not player_prefix or not ext_prefix:
        raise ImportSettingsValidationError("Foreign id prefixes must not be empty.")
    if player_prefix == ext_prefix:
        raise ImportSettingsValidationError(
            f"foreign_player_prefix and foreign_extension_prefix must differ (both {player_prefix!r})."
        )

    for key in ("min_token_length", "share_url_max_length"):
        if key not in data:
            continue
        val = data[key]
        if isinstance(val, bool) or not isinstance(val, int):
            raise ImportSettingsValidationError(f"'{key}' value '{val}' is not an integer.")
        if val < 1:
            raise ImportSettingsValidationError(f"'{key}' value {val} must be >= 1.")

    patterns = data.get("unsupported_link_patterns")
    if patterns is not None and not isinstance(patterns, list):
        raise ImportSettingsValidationError("'unsupported_link_patterns' must be a list.")

    for key in ("player_avatar_url", "game_avatar_url"):
        if key in data and "{name}" not in str(data[key]):
            raise ImportSettingsValidationError(f"'{key}' must contain a {{name}} placeholder.")
