"""boardgame_etl.store

Data-store collaborators for the importer.

DataStore is the contract the commit engine and the CLI depend on.  Two
implementations:
  - LibraryStore: the library as a single JSON document on disk (the shape a
    front end keeps in local storage).  Writes are buffered until save().
  - PostgresStore: the library in PostgreSQL (schema: migrations/0001_library.sql).
    The caller owns the transaction; each match insert runs inside its own
    SAVEPOINT so one bad match does not poison the rest.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import psycopg

from boardgame_etl.models import (
    Catalog,
    ExtensionRecord,
    GameRecord,
    LocalExtension,
    LocalGame,
    LocalPlayer,
    Match,
    MatchResult,
    PlayerRecord,
)
from boardgame_etl.normalize import normalize_title, trim

log = logging.getLogger(__name__)


class DataStore(Protocol):
    def load_catalog(self) -> Catalog:
        """Snapshot of games (with extensions), players and locations."""
        ...

    def create_game(self, game: GameRecord) -> None: ...

    def append_extensions(self, game_id: str, extensions: list[ExtensionRecord]) -> None:
        """Add extensions to an existing game in one update."""
        ...

    def create_player(self, player: PlayerRecord) -> None: ...

    def create_match(self, match: Match) -> None: ...

    def register_location(self, name: str) -> None:
        """Add a location name unless an equal one (ignoring case) exists."""
        ...

    def list_matches(self, game_id: str | None = None) -> list[Match]: ...


def merge_location(locations: list[str], name: str) -> list[str]:
    """Return locations with name added (trimmed, case-insensitive dedupe), sorted."""
    clean = trim(name)
    if not clean:
        return sorted(locations)
    key = normalize_title(clean)
    if any(normalize_title(loc) == key for loc in locations):
        return sorted(locations)
    return sorted([*locations, clean])


# ---------------------------------------------------------------------------
# JSON library file
# ---------------------------------------------------------------------------

@dataclass
class LibraryStore:
    """Library kept as one JSON document: games, players, matches, locations."""

    path: Path
    data: dict[str, list[Any]] = field(default_factory=dict)

    @classmethod
    def open(cls, path: Path) -> LibraryStore:
        data: dict[str, list[Any]] = {}
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8") or "{}")
            if not isinstance(data, dict):
                raise ValueError(f"{path}: library file must hold a JSON object")
        for key in ("games", "players", "matches", "locations"):
            if not isinstance(data.get(key), list):
                data[key] = []
        log.debug("Opened library %s (%d games, %d players)", path, len(data["games"]), len(data["players"]))
        return cls(path=path, data=data)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.data, indent=2, ensure_ascii=False), encoding="utf-8")
        log.info("Library saved to %s", self.path)

    def _game(self, game_id: str) -> dict[str, Any] | None:
        for g in self.data["games"]:
            if str(g.get("id")) == str(game_id):
                return g
        return None

    def load_catalog(self) -> Catalog:
        games = tuple(
            LocalGame(
                id=str(g.get("id")),
                title=str(g.get("title") or ""),
                extensions=tuple(
                    LocalExtension(id=str(e.get("id")), title=str(e.get("title") or ""))
                    for e in g.get("extensions") or []
                    if isinstance(e, dict)
                ),
            )
            for g in self.data["games"]
            if isinstance(g, dict)
        )
        players = tuple(
            LocalPlayer(id=str(p.get("id")), name=str(p.get("name") or ""))
            for p in self.data["players"]
            if isinstance(p, dict)
        )
        return Catalog(games=games, players=players, locations=tuple(self.data["locations"]))

    def create_game(self, game: GameRecord) -> None:
        if self._game(game.id) is not None:
            raise ValueError(f"game {game.id!r} already exists")
        self.data["games"].insert(0, game.to_dict())

    def append_extensions(self, game_id: str, extensions: list[ExtensionRecord]) -> None:
        game = self._game(game_id)
        if game is None:
            raise KeyError(f"unknown game {game_id!r}")
        game.setdefault("extensions", []).extend(e.to_dict() for e in extensions)

    def create_player(self, player: PlayerRecord) -> None:
        self.data["players"].append(player.to_dict())

    def create_match(self, match: Match) -> None:
        game = self._game(match.game_id)
        if game is None:
            raise ValueError(f"match references unknown game {match.game_id!r}")
        known_players = {str(p.get("id")) for p in self.data["players"]}
        missing = [r.player_id for r in match.results if str(r.player_id) not in known_players]
        if missing:
            raise ValueError(f"match references unknown player(s) {missing}")
        self.data["matches"].append(match.to_dict())

    def register_location(self, name: str) -> None:
        self.data["locations"] = merge_location(self.data["locations"], name)

    def list_matches(self, game_id: str | None = None) -> list[Match]:
        return [
            Match.from_dict(m)
            for m in self.data["matches"]
            if isinstance(m, dict) and (game_id is None or str(m.get("gameId")) == str(game_id))
        ]


# ---------------------------------------------------------------------------
# PostgreSQL library
# ---------------------------------------------------------------------------

class PostgresStore:
    """DataStore over the library schema.  Never commits; the caller does."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn
        self._savepoints = 0

    def load_catalog(self) -> Catalog:
        ext_rows = self.conn.execute(
            "SELECT game_id, id, title FROM game_extension ORDER BY game_id, seq"
        ).fetchall()
        by_game: dict[str, list[LocalExtension]] = {}
        for game_id, ext_id, title in ext_rows:
            by_game.setdefault(game_id, []).append(LocalExtension(id=ext_id, title=title))

        games = tuple(
            LocalGame(id=gid, title=title, extensions=tuple(by_game.get(gid, [])))
            for gid, title in self.conn.execute(
                "SELECT id, title FROM game ORDER BY created_at DESC, id"
            ).fetchall()
        )
        players = tuple(
            LocalPlayer(id=pid, name=name)
            for pid, name in self.conn.execute(
                "SELECT id, name FROM player ORDER BY created_at, id"
            ).fetchall()
        )
        locations = tuple(
            row[0] for row in self.conn.execute("SELECT name FROM location ORDER BY name").fetchall()
        )
        return Catalog(games=games, players=players, locations=locations)

    def create_game(self, game: GameRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO game
                (id, title, image, game_type, winning_condition, score_type, custom_columns)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                game.id,
                game.title,
                game.image,
                game.type,
                game.winning_condition,
                game.score_type,
                json.dumps(game.custom_columns),
            ),
        )
        if game.extensions:
            self.append_extensions(game.id, game.extensions)

    def append_extensions(self, game_id: str, extensions: list[ExtensionRecord]) -> None:
        row = self.conn.execute("SELECT id FROM game WHERE id = %s", (game_id,)).fetchone()
        if row is None:
            raise KeyError(f"unknown game {game_id!r}")
        for ext in extensions:
            self.conn.execute(
                """
                INSERT INTO game_extension (id, game_id, title, image, custom_columns)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (ext.id, game_id, ext.title, ext.image, json.dumps(ext.custom_columns)),
            )

    def create_player(self, player: PlayerRecord) -> None:
        self.conn.execute(
            "INSERT INTO player (id, name, image) VALUES (%s, %s, %s)",
            (player.id, player.name, player.image),
        )

    def create_match(self, match: Match) -> None:
        self._savepoints += 1
        sp = f"create_match_{self._savepoints}"
        self.conn.execute(f"SAVEPOINT {sp}")
        try:
            self.conn.execute(
                """
                INSERT INTO match (id, game_id, play_date, duration, location, created_by, extra)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(match.id),
                    str(match.game_id),
                    match.date,
                    match.duration,
                    match.location,
                    match.created_by,
                    json.dumps(match.extra),
                ),
            )
            for position, r in enumerate(match.results):
                self.conn.execute(
                    """
                    INSERT INTO match_result
                        (match_id, position, player_id, score, is_winner, is_starter,
                         score_breakdown, team_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        str(match.id),
                        position,
                        r.player_id,
                        json.dumps(r.score),
                        r.is_winner,
                        r.is_starter,
                        json.dumps(r.score_breakdown) if r.score_breakdown is not None else None,
                        r.team_id,
                    ),
                )
            if match.extension_ids is not None:
                # Empty list and NULL differ: [] means "played without extensions".
                self.conn.execute(
                    "UPDATE match SET has_extension_list = TRUE WHERE id = %s",
                    (str(match.id),),
                )
                for position, ext_id in enumerate(match.extension_ids):
                    self.conn.execute(
                        """
                        INSERT INTO match_extension (match_id, position, extension_id)
                        VALUES (%s, %s, %s)
                        """,
                        (str(match.id), position, ext_id),
                    )
            self.conn.execute(f"RELEASE SAVEPOINT {sp}")
        except Exception:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            raise

    def register_location(self, name: str) -> None:
        clean = trim(name)
        if not clean:
            return
        self.conn.execute(
            """
            INSERT INTO location (name, normalized_name)
            VALUES (%s, %s)
            ON CONFLICT (normalized_name) DO NOTHING
            """,
            (clean, normalize_title(clean)),
        )

    def list_matches(self, game_id: str | None = None) -> list[Match]:
        if game_id is None:
            rows = self.conn.execute(
                """
                SELECT id, game_id, play_date, duration, location, created_by, extra,
                       has_extension_list
                FROM match ORDER BY created_at, id
                """
            ).fetchall()
        else:
            rows = self.conn.execute(
                """
                SELECT id, game_id, play_date, duration, location, created_by, extra,
                       has_extension_list
                FROM match WHERE game_id = %s ORDER BY created_at, id
                """,
                (game_id,),
            ).fetchall()

        matches: list[Match] = []
        for mid, gid, play_date, duration, location, created_by, extra, has_ext in rows:
            results = [
                MatchResult(
                    player_id=pid,
                    score=score,
                    is_winner=is_winner,
                    is_starter=is_starter,
                    score_breakdown=breakdown,
                    team_id=team_id,
                )
                for pid, score, is_winner, is_starter, breakdown, team_id in self.conn.execute(
                    """
                    SELECT player_id, score, is_winner, is_starter, score_breakdown, team_id
                    FROM match_result WHERE match_id = %s ORDER BY position
                    """,
                    (mid,),
                ).fetchall()
            ]
            ext_ids = None
            if has_ext:
                ext_ids = [
                    row[0]
                    for row in self.conn.execute(
                        "SELECT extension_id FROM match_extension WHERE match_id = %s ORDER BY position",
                        (mid,),
                    ).fetchall()
                ]
            matches.append(Match(
                id=mid,
                game_id=gid,
                date=play_date,
                results=results,
                duration=duration,
                location=location,
                extension_ids=ext_ids,
                created_by=created_by,
                extra=extra or {},
            ))
        return matches
