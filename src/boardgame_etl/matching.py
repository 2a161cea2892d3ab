"""boardgame_etl.matching

Pure, state-free matchers that propose a local entity for a foreign one.

Games, players and locations match only on exact normalized equality.
Extensions try three strategies in order, first hit wins:
  1. exact normalized title
  2. containment (either title contains the other)
  3. best positive token overlap, first-seen candidate on a tie

Locations default to CreateNew when nothing matches; players and extensions
stay Unresolved so a person or an expansion is never merged or created
without an explicit decision.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from boardgame_etl.models import (
    UNRESOLVED,
    CreateNew,
    ExtensionChoice,
    ExtensionRef,
    LocalExtension,
    LocalGame,
    LocalPlayer,
    LocationChoice,
    PlayerChoice,
    Unresolved,
    UseExisting,
)
from boardgame_etl.normalize import normalize_title, title_tokens


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------

def match_game(title: str, games: Iterable[LocalGame]) -> str | None:
    """Return the id of the first game whose title equals title, ignoring case."""
    key = normalize_title(title)
    if not key:
        return None
    for g in games:
        if normalize_title(g.title) == key:
            return g.id
    return None


# ---------------------------------------------------------------------------
# Extensions
# ---------------------------------------------------------------------------

def token_overlap(title: str, candidate: str, min_token_length: int = 3) -> int:
    """Number of significant tokens of title that also occur in candidate."""
    candidate_tokens = set(title_tokens(candidate, min_token_length))
    return sum(1 for t in title_tokens(title, min_token_length) if t in candidate_tokens)


def match_extension(
    title: str,
    candidates: Sequence[LocalExtension],
    min_token_length: int = 3,
) -> str | None:
    """Return the id of the best local extension for a foreign title, or None."""
    key = normalize_title(title)
    if not key or not candidates:
        return None

    for c in candidates:
        if normalize_title(c.title) == key:
            return c.id

    for c in candidates:
        local = normalize_title(c.title)
        if local and (local in key or key in local):
            return c.id

    best: LocalExtension | None = None
    best_overlap = 0
    for c in candidates:
        overlap = token_overlap(title, c.title, min_token_length)
        if overlap > best_overlap:
            best, best_overlap = c, overlap
    return best.id if best is not None else None


def auto_map_extensions(
    extensions: Sequence[ExtensionRef],
    candidates: Sequence[LocalExtension],
    current: Mapping[str, ExtensionChoice],
    confirmed: Iterable[str] = (),
    min_token_length: int = 3,
) -> dict[str, ExtensionChoice]:
    """Rebuild an extension mapping table against a new candidate list.

    Entries in ``confirmed`` (explicit user decisions) are kept as they are.
    Every other entry is matched again from scratch; no match leaves it
    Unresolved.  Auto-matched ids from a previously targeted game are dropped
    here so they never reach the extension-not-on-game guard in pipeline.
    """
    keep = set(confirmed)
    table: dict[str, ExtensionChoice] = {}
    for ext in extensions:
        if ext.id in keep and ext.id in current:
            table[ext.id] = current[ext.id]
            continue
        local_id = match_extension(ext.title, candidates, min_token_length)
        table[ext.id] = UseExisting(local_id) if local_id is not None else UNRESOLVED
    return table


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

def match_location(name: str, locations: Iterable[str]) -> LocationChoice:
    """Existing location with the same normalized name, else CreateNew."""
    key = normalize_title(name)
    for loc in locations:
        if normalize_title(loc) == key:
            return UseExisting(loc)
    return CreateNew()


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------

def match_player(name: str, players: Iterable[LocalPlayer]) -> PlayerChoice:
    """Existing player with the same name ignoring case, else Unresolved."""
    key = normalize_title(name)
    if key:
        for p in players:
            if normalize_title(p.name) == key:
                return UseExisting(p.id)
    return UNRESOLVED


def is_unresolved(choice: object) -> bool:
    """True for entries that still block advancement."""
    return isinstance(choice, Unresolved)
