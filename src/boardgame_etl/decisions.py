"""boardgame_etl.decisions

Mapping decisions for non-interactive imports, read from a YAML file.

File shape:

    version: v1
    select: [0, "Wingspan"]          # optional; dataset indices or titles
    datasets:
      Wingspan:                       # dataset title (case-insensitive) or index
        game: existing:g_123          # | new | {new: {title: ..., image: ...}} | suggested
        extensions:                   # keyed by foreign title or foreign id
          European Expansion: existing:ext_9
          Oceania Expansion: ignore   # | customize | {customize: {title: ...}}
        locations:                    # keyed by foreign location name
          Home: {custom: Home Office} # | new | existing:<location name>
        players:                      # keyed by foreign name or foreign id
          Alice: existing:p_1         # | new | {new: {name: ..., image: ...}}

The same choice grammar is used for interactive prompts.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from boardgame_etl.models import (
    IGNORE,
    CreateNew,
    CustomEntry,
    CustomExtension,
    Customized,
    ExportDataset,
    ExtensionChoice,
    GameChoice,
    LocationChoice,
    NewGame,
    NewPlayer,
    PlayerChoice,
    UseExisting,
)
from boardgame_etl.normalize import normalize_title, trim

GAME_KINDS = frozenset({"existing", "new", "suggested"})
EXTENSION_KINDS = frozenset({"existing", "ignore", "customize"})
LOCATION_KINDS = frozenset({"existing", "new", "custom"})
PLAYER_KINDS = frozenset({"existing", "new"})


class DecisionsValidationError(ValueError):
    """Raised when a decisions file does not match the expected schema."""


@dataclass(frozen=True)
class DatasetDecisions:
    game: Any = None
    extensions: dict[str, Any] = field(default_factory=dict)
    locations: dict[str, Any] = field(default_factory=dict)
    players: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ImportDecisions:
    select: tuple[Any, ...] | None = None
    datasets: dict[str, DatasetDecisions] = field(default_factory=dict)
    yaml_hash: str | None = None

    def for_dataset(self, index: int, title: str) -> DatasetDecisions:
        """Decisions keyed by the dataset's index, else by its title; empty if neither."""
        by_index = self.datasets.get(str(index))
        if by_index is not None:
            return by_index
        key = normalize_title(title)
        for name, decisions in self.datasets.items():
            if normalize_title(name) == key:
                return decisions
        return DatasetDecisions()


EMPTY_DECISIONS = ImportDecisions()


# ---------------------------------------------------------------------------
# Choice grammar
# ---------------------------------------------------------------------------

def split_choice(value: Any) -> tuple[str, Any]:
    """Return (kind, argument) for 'kind', 'kind:arg' or {kind: arg}."""
    if isinstance(value, str):
        kind, sep, arg = value.strip().partition(":")
        return kind.strip().lower(), (arg.strip() if sep else None)
    if isinstance(value, dict) and len(value) == 1:
        kind, arg = next(iter(value.items()))
        return str(kind).strip().lower(), arg
    raise DecisionsValidationError(f"cannot read choice {value!r}")


def _check_kind(value: Any, allowed: frozenset[str], where: str) -> None:
    kind, arg = split_choice(value)
    if kind not in allowed:
        raise DecisionsValidationError(
            f"{where}: choice {kind!r} is not one of {sorted(allowed)}"
        )
    if kind == "existing" and not (isinstance(arg, (str, int)) and str(arg).strip()):
        raise DecisionsValidationError(f"{where}: 'existing' needs an id")
    if kind in ("new", "customize") and arg is not None and not isinstance(arg, dict):
        raise DecisionsValidationError(f"{where}: {kind!r} options must be a mapping")


def parse_game_choice(
    value: Any,
    dataset: ExportDataset,
    suggested_game_id: str | None = None,
    default_image: str = "",
) -> GameChoice:
    kind, arg = split_choice(value)
    if kind == "existing":
        return UseExisting(str(arg))
    if kind == "suggested":
        if suggested_game_id is None:
            raise DecisionsValidationError(
                f"no game in the library matches {dataset.source_game_title!r}"
            )
        return UseExisting(suggested_game_id)
    if kind == "new":
        opts = arg or {}
        title = trim(opts.get("title")) or dataset.source_game_title
        return CreateNew(NewGame(
            title=title,
            image=str(opts.get("image") or default_image),
            type=str(opts.get("type") or "score"),
            winning_condition=opts.get("winning_condition"),
            score_type=opts.get("score_type"),
            custom_columns=tuple(opts.get("custom_columns") or ()),
        ))
    raise DecisionsValidationError(f"invalid game choice {value!r}")


def parse_extension_choice(value: Any, foreign_title: str) -> ExtensionChoice:
    kind, arg = split_choice(value)
    if kind == "existing":
        return UseExisting(str(arg))
    if kind == "ignore":
        return IGNORE
    if kind == "customize":
        opts = arg or {}
        return Customized(CustomExtension(
            title=trim(opts.get("title")) or foreign_title,
            image=str(opts.get("image") or ""),
            custom_columns=tuple(opts.get("custom_columns") or ()),
        ))
    raise DecisionsValidationError(f"invalid extension choice {value!r}")


def parse_location_choice(value: Any) -> LocationChoice:
    kind, arg = split_choice(value)
    if kind == "existing":
        return UseExisting(str(arg))
    if kind == "new":
        return CreateNew()
    if kind == "custom":
        return CustomEntry(str(arg or ""))
    raise DecisionsValidationError(f"invalid location choice {value!r}")


def parse_player_choice(value: Any) -> PlayerChoice:
    kind, arg = split_choice(value)
    if kind == "existing":
        return UseExisting(str(arg))
    if kind == "new":
        opts = arg or {}
        return CreateNew(NewPlayer(
            name=trim(opts.get("name")) or None,
            image=opts.get("image") or None,
        ))
    raise DecisionsValidationError(f"invalid player choice {value!r}")


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_decisions(yaml_path: Path) -> ImportDecisions:
    """Load and validate a decisions file.

    Raises:
        DecisionsValidationError: malformed file.
        FileNotFoundError: the file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    validate_decisions(data)

    datasets: dict[str, DatasetDecisions] = {}
    for key, entry in (data.get("datasets") or {}).items():
        entry = entry or {}
        datasets[str(key)] = DatasetDecisions(
            game=entry.get("game"),
            extensions={str(k): v for k, v in (entry.get("extensions") or {}).items()},
            locations={str(k): v for k, v in (entry.get("locations") or {}).items()},
            players={str(k): v for k, v in (entry.get("players") or {}).items()},
        )
    select = data.get("select")
    return ImportDecisions(
        select=tuple(select) if select is not None else None,
        datasets=datasets,
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_decisions(data: Any) -> None:
    if not isinstance(data, dict):
        raise DecisionsValidationError("decisions file must be a mapping")
    unknown = set(data) - {"version", "select", "datasets"}
    if unknown:
        raise DecisionsValidationError(f"unknown top-level keys: {sorted(unknown)}")

    select = data.get("select")
    if select is not None:
        if not isinstance(select, list):
            raise DecisionsValidationError("select must be a list of indices or titles")
        for item in select:
            if isinstance(item, bool) or not isinstance(item, (int, str)):
                raise DecisionsValidationError(f"select: invalid entry {item!r}")

    datasets = data.get("datasets") or {}
    if not isinstance(datasets, dict):
        raise DecisionsValidationError("datasets must be a mapping")
    for name, entry in datasets.items():
        entry = entry or {}
        if not isinstance(entry, dict):
            raise DecisionsValidationError(f"datasets.{name} must be a mapping")
        extra = set(entry) - {"game", "extensions", "locations", "players"}
        if extra:
            raise DecisionsValidationError(f"datasets.{name}: unknown keys {sorted(extra)}")
        if entry.get("game") is not None:
            _check_kind(entry["game"], GAME_KINDS, f"datasets.{name}.game")
        for section, allowed in (
            ("extensions", EXTENSION_KINDS),
            ("locations", LOCATION_KINDS),
            ("players", PLAYER_KINDS),
        ):
            table = entry.get(section) or {}
            if not isinstance(table, dict):
                raise DecisionsValidationError(f"datasets.{name}.{section} must be a mapping")
            for key, value in table.items():
                _check_kind(value, allowed, f"datasets.{name}.{section}.{key}")


def resolve_selection(select: tuple[Any, ...] | None, datasets: list[ExportDataset] | tuple[ExportDataset, ...]) -> list[int] | None:
    """Dataset indices named by ``select`` (ints or titles); None when not given."""
    if select is None:
        return None
    chosen: list[int] = []
    for item in select:
        if isinstance(item, int):
            if 0 <= item < len(datasets):
                chosen.append(item)
            continue
        key = normalize_title(item)
        for i, ds in enumerate(datasets):
            if normalize_title(ds.source_game_title) == key:
                chosen.append(i)
    return sorted(set(chosen))


def lookup(table: dict[str, Any], foreign_id: str, name: str) -> Any:
    """Decision for an entity, keyed by its foreign id or (case-insensitively) its name."""
    if foreign_id in table:
        return table[foreign_id]
    key = normalize_title(name)
    for k, v in table.items():
        if normalize_title(k) == key:
            return v
    return None
