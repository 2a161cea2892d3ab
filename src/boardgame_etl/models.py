"""boardgame_etl.models

Data model for the match-import pipeline.

Three groups of types live here:
  - Wire model: ExportDataset / Match / MatchResult, converted to and from the
    camelCase ``match_export`` JSON schema.  Unknown keys survive a round trip
    through ``extra``.
  - Catalog snapshot: the user's existing library as read from a data store
    (games with their extensions, players, locations).
  - Mapping choices: one tagged variant per reconciliation decision, replacing
    the '' / 'new' / 'ignore' / 'customized' string sentinels.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

log = logging.getLogger(__name__)

EXPORT_TYPE = "match_export"
EXPORT_VERSION = 1

_RESULT_KEYS = ("playerId", "score", "isWinner", "isStarter", "scoreBreakdown", "teamId")
_MATCH_KEYS = ("id", "gameId", "date", "duration", "location", "results", "extensionIds", "createdBy")


def _list_of(value: Any) -> list[Any]:
    """value when it is a list, else []."""
    return value if isinstance(value, list) else []


def _parse_version(value: Any) -> int:
    """Export version as an int; unreadable or missing values give EXPORT_VERSION."""
    if isinstance(value, bool):
        return EXPORT_VERSION
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return EXPORT_VERSION


# ---------------------------------------------------------------------------
# Wire model
# ---------------------------------------------------------------------------

@dataclass
class MatchResult:
    player_id: str
    score: int | float | str = 0
    is_winner: bool = False
    is_starter: bool = False
    score_breakdown: dict[str, float] | None = None
    team_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MatchResult:
        breakdown = data.get("scoreBreakdown")
        team_id = data.get("teamId")
        return cls(
            player_id=str(data.get("playerId", "")),
            score=data.get("score", 0),
            is_winner=data.get("isWinner") is True,
            is_starter=data.get("isStarter") is True,
            score_breakdown=dict(breakdown) if isinstance(breakdown, dict) else None,
            team_id=str(team_id) if team_id is not None else None,
            extra={k: v for k, v in data.items() if k not in _RESULT_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d["playerId"] = self.player_id
        d["score"] = self.score
        d["isWinner"] = self.is_winner
        d["isStarter"] = self.is_starter
        if self.score_breakdown is not None:
            d["scoreBreakdown"] = dict(self.score_breakdown)
        if self.team_id is not None:
            d["teamId"] = self.team_id
        return d


@dataclass
class Match:
    id: Any
    game_id: Any
    date: str
    results: list[MatchResult] = field(default_factory=list)
    duration: str | None = None
    location: str | None = None
    extension_ids: list[str] | None = None
    created_by: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Match:
        ext_ids = data.get("extensionIds")
        location = data.get("location")
        duration = data.get("duration")
        return cls(
            id=data.get("id"),
            game_id=data.get("gameId"),
            date="" if data.get("date") is None else str(data["date"]),
            results=[
                MatchResult.from_dict(r)
                for r in _list_of(data.get("results"))
                if isinstance(r, dict)
            ],
            duration=str(duration) if duration is not None else None,
            location=str(location) if location is not None else None,
            extension_ids=[str(e) for e in ext_ids] if isinstance(ext_ids, list) else None,
            created_by=data.get("createdBy"),
            extra={k: v for k, v in data.items() if k not in _MATCH_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d["id"] = self.id
        d["gameId"] = self.game_id
        d["date"] = self.date
        if self.duration is not None:
            d["duration"] = self.duration
        if self.location is not None:
            d["location"] = self.location
        d["results"] = [r.to_dict() for r in self.results]
        if self.created_by is not None:
            d["createdBy"] = self.created_by
        if self.extension_ids is not None:
            d["extensionIds"] = list(self.extension_ids)
        return d


@dataclass(frozen=True)
class PlayerRef:
    id: str
    name: str


@dataclass(frozen=True)
class ExtensionRef:
    id: str
    title: str


@dataclass
class ExportDataset:
    """One game's importable history, keyed by foreign ids."""

    source_game_title: str
    matches: list[Match] = field(default_factory=list)
    players: list[PlayerRef] = field(default_factory=list)
    extensions: list[ExtensionRef] = field(default_factory=list)
    version: int = EXPORT_VERSION

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExportDataset:
        """Build a dataset from a native export object.

        Player / extension ids referenced by a match but missing from the
        dataset lists get a placeholder entry named after the id, so every
        reference still has to be mapped before commit.
        """
        players = [
            PlayerRef(id=str(p.get("id")), name=str(p.get("name") or p.get("id")))
            for p in _list_of(data.get("players"))
            if isinstance(p, dict) and p.get("id") is not None
        ]
        extensions = [
            ExtensionRef(id=str(e.get("id")), title=str(e.get("title") or e.get("id")))
            for e in _list_of(data.get("extensions"))
            if isinstance(e, dict) and e.get("id") is not None
        ]
        matches = [Match.from_dict(m) for m in _list_of(data.get("matches")) if isinstance(m, dict)]
        dataset = cls(
            source_game_title=str(data.get("sourceGameTitle") or ""),
            matches=matches,
            players=players,
            extensions=extensions,
            version=_parse_version(data.get("version")),
        )
        dataset.repair_references()
        return dataset

    def repair_references(self) -> list[str]:
        """Append placeholder refs for dangling match references.  Returns the added ids."""
        known_players = {p.id for p in self.players}
        known_exts = {e.id for e in self.extensions}
        added: list[str] = []
        for m in self.matches:
            for r in m.results:
                if r.player_id not in known_players:
                    known_players.add(r.player_id)
                    self.players.append(PlayerRef(id=r.player_id, name=r.player_id))
                    added.append(r.player_id)
            for eid in m.extension_ids or []:
                if eid not in known_exts:
                    known_exts.add(eid)
                    self.extensions.append(ExtensionRef(id=eid, title=eid))
                    added.append(eid)
        if added:
            log.warning(
                "Dataset %r referenced %d undeclared ids; placeholders added: %s",
                self.source_game_title, len(added), added,
            )
        return added

    def unique_locations(self) -> list[str]:
        """Distinct non-empty match locations in first-seen order."""
        seen: dict[str, None] = {}
        for m in self.matches:
            if m.location:
                seen.setdefault(m.location, None)
        return list(seen)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": EXPORT_TYPE,
            "version": self.version,
            "sourceGameTitle": self.source_game_title,
            "matches": [m.to_dict() for m in self.matches],
            "players": [{"id": p.id, "name": p.name} for p in self.players],
            "extensions": [{"id": e.id, "title": e.title} for e in self.extensions],
        }


# ---------------------------------------------------------------------------
# Catalog snapshot (the user's existing library)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LocalExtension:
    id: str
    title: str


@dataclass(frozen=True)
class LocalGame:
    id: str
    title: str
    extensions: tuple[LocalExtension, ...] = ()


@dataclass(frozen=True)
class LocalPlayer:
    id: str
    name: str


@dataclass(frozen=True)
class Catalog:
    games: tuple[LocalGame, ...] = ()
    players: tuple[LocalPlayer, ...] = ()
    locations: tuple[str, ...] = ()

    def game(self, game_id: str | None) -> LocalGame | None:
        for g in self.games:
            if g.id == game_id:
                return g
        return None

    def has_player(self, player_id: str) -> bool:
        return any(p.id == player_id for p in self.players)


# ---------------------------------------------------------------------------
# Creation payloads (results of the external creation forms)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NewGame:
    title: str
    image: str = ""
    type: str = "score"
    winning_condition: str | None = None
    score_type: str | None = None
    custom_columns: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class CustomExtension:
    title: str
    image: str = ""
    custom_columns: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class NewPlayer:
    name: str | None = None
    image: str | None = None


# ---------------------------------------------------------------------------
# Store records (entities handed to the data store)
# ---------------------------------------------------------------------------

@dataclass
class ExtensionRecord:
    id: str
    title: str
    image: str = ""
    custom_columns: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "title": self.title}
        if self.image:
            d["image"] = self.image
        if self.custom_columns:
            d["customColumns"] = list(self.custom_columns)
        return d


@dataclass
class GameRecord:
    id: str
    title: str
    image: str = ""
    type: str = "score"
    winning_condition: str | None = None
    score_type: str | None = None
    custom_columns: list[dict[str, Any]] = field(default_factory=list)
    extensions: list[ExtensionRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "image": self.image,
            "type": self.type,
            "extensions": [e.to_dict() for e in self.extensions],
        }
        if self.winning_condition:
            d["winningCondition"] = self.winning_condition
        if self.score_type:
            d["scoreType"] = self.score_type
        if self.custom_columns:
            d["customColumns"] = list(self.custom_columns)
        return d


@dataclass
class PlayerRecord:
    id: str
    name: str
    image: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "image": self.image}


# ---------------------------------------------------------------------------
# Mapping choices
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Unresolved:
    """No decision yet.  Blocks advancement wherever it is not allowed."""


@dataclass(frozen=True)
class UseExisting:
    """Target an entity already in the library (an id, or a location name)."""

    local_id: str


@dataclass(frozen=True)
class CreateNew:
    """Create a new local entity at commit, optionally with form overrides."""

    payload: NewGame | NewPlayer | None = None


@dataclass(frozen=True)
class Ignore:
    """Drop the foreign entity from every imported match."""


@dataclass(frozen=True)
class Customized:
    """Create a configured extension on the target game at commit."""

    extension: CustomExtension


@dataclass(frozen=True)
class CustomEntry:
    """Register a user-typed location name instead of the foreign one."""

    text: str


UNRESOLVED = Unresolved()
IGNORE = Ignore()

GameChoice = Union[Unresolved, UseExisting, CreateNew]
ExtensionChoice = Union[Unresolved, UseExisting, Ignore, Customized]
LocationChoice = Union[UseExisting, CreateNew, CustomEntry]
PlayerChoice = Union[Unresolved, UseExisting, CreateNew]
