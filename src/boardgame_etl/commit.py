"""boardgame_etl.commit

Commit/remap engine: applies one dataset's fully resolved mapping tables.

Order (later steps use ids created by earlier ones):
  1. Target game: CreateNew → create it now; this is where it gets its id.
  2. Extensions: every Customized entry is created once and appended to the
     target game in a single call.
  3. Players: every CreateNew entry becomes a local player.
  4. Locations: CreateNew / CustomEntry names are registered (additive).
  5. Matches: each is rewritten to local ids and inserted.

No entity is created speculatively; the tables alone drive creation.

Failure handling (no rollback):
  - A failure in steps 1–4 raises PartialCommitError.  Entities already
    created stay in the store; the error carries the tables rewritten so far
    (created entities as UseExisting) so a retry does not duplicate them.
  - A failed match insert is counted, logged and reported; the loop goes on
    with the next match.
"""

from __future__ import annotations

import logging
import urllib.parse
import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable

from boardgame_etl.import_settings import DEFAULT_SETTINGS, ImportSettings
from boardgame_etl.models import (
    CreateNew,
    CustomEntry,
    Customized,
    ExportDataset,
    ExtensionChoice,
    ExtensionRecord,
    GameRecord,
    LocationChoice,
    Match,
    NewGame,
    NewPlayer,
    PlayerChoice,
    PlayerRecord,
    UseExisting,
)
from boardgame_etl.normalize import trim
from boardgame_etl.shared import CommitCounters, PartialCommitError
from boardgame_etl.store import DataStore

if TYPE_CHECKING:
    from boardgame_etl.pipeline import MappingTables

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def new_local_id(prefix: str) -> str:
    """Fresh local id such as 'p_3f9c0a1b2d4e'."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def avatar_url(template: str, name: str) -> str:
    """Default display image derived from a name."""
    return template.format(name=urllib.parse.quote(name, safe=""))


def resolve_location(foreign_name: str, choice: LocationChoice | None) -> str:
    """Final location string for a foreign location name.

    A blank custom entry falls back to the foreign name.
    """
    if isinstance(choice, UseExisting):
        return choice.local_id
    if isinstance(choice, CustomEntry):
        return trim(choice.text) or foreign_name
    return foreign_name


def remap_match(
    match: Match,
    match_id: Any,
    game_id: str,
    extensions: dict[str, ExtensionChoice],
    players: dict[str, PlayerChoice],
    locations: dict[str, str],
    created_by: str,
    ctrs: CommitCounters,
) -> Match:
    """Rewrite a foreign match to local ids.

    Extension references that did not resolve to a local extension (Ignore,
    or never materialized) are dropped.
    """
    location = match.location
    if location:
        location = locations.get(location, location)

    ext_ids: list[str] | None = None
    if match.extension_ids is not None:
        ext_ids = []
        for eid in match.extension_ids:
            choice = extensions.get(eid)
            if isinstance(choice, UseExisting):
                ext_ids.append(choice.local_id)
            else:
                ctrs.extension_refs_dropped += 1

    results = []
    for r in match.results:
        choice = players.get(r.player_id)
        if not isinstance(choice, UseExisting):
            raise ValueError(f"player {r.player_id!r} has no local mapping")
        results.append(replace(r, player_id=choice.local_id, extra=dict(r.extra)))

    return Match(
        id=match_id,
        game_id=game_id,
        date=match.date,
        results=results,
        duration=match.duration,
        location=location,
        extension_ids=ext_ids,
        created_by=created_by,
        extra=dict(match.extra),
    )


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------

def commit_dataset(
    dataset: ExportDataset,
    tables: MappingTables,
    store: DataStore,
    ids: Callable[[str], str] = new_local_id,
    settings: ImportSettings = DEFAULT_SETTINGS,
    created_by: str = "import",
) -> CommitCounters:
    """Create missing entities and insert every match of one dataset.

    Args:
        dataset: The dataset being imported (foreign ids).
        tables: Its MappingTables; every game/extension/player entry resolved.
        store: Data store receiving the writes (caller manages transactions).
        ids: Factory for new local ids, called with an entity prefix.
        settings: Avatar templates and fallback titles.
        created_by: Value stored as each match's creator.

    Returns:
        CommitCounters with creation and insert statistics.

    Raises:
        PartialCommitError: entity creation failed; see module docstring.
        ValueError: the game choice is unresolved.
    """
    ctrs = CommitCounters(
        source_game_title=dataset.source_game_title,
        matches_read=len(dataset.matches),
    )
    game_choice = tables.game
    extensions: dict[str, ExtensionChoice] = dict(tables.extensions)
    players: dict[str, PlayerChoice] = dict(tables.players)

    if not isinstance(game_choice, (UseExisting, CreateNew)):
        raise ValueError("game mapping is unresolved; nothing committed")

    try:
        # 1. Target game
        if isinstance(game_choice, CreateNew):
            new_game = game_choice.payload if isinstance(game_choice.payload, NewGame) else None
            title = (new_game.title if new_game else "") or dataset.source_game_title or settings.unknown_game_title
            record = GameRecord(
                id=ids("g"),
                title=title,
                image=(new_game.image if new_game else "") or avatar_url(settings.game_avatar_url, title),
                type=new_game.type if new_game else "score",
                winning_condition=new_game.winning_condition if new_game else None,
                score_type=new_game.score_type if new_game else None,
                custom_columns=list(new_game.custom_columns) if new_game else [],
            )
            store.create_game(record)
            ctrs.games_created += 1
            game_choice = UseExisting(record.id)
            log.info("Created game %s (%r)", record.id, record.title)
        target_game_id = game_choice.local_id
        ctrs.target_game_id = target_game_id

        # 2. Customized extensions, one append for the whole dataset
        new_extensions: list[tuple[str, ExtensionRecord]] = []
        for ext in dataset.extensions:
            choice = extensions.get(ext.id)
            if isinstance(choice, Customized):
                custom = choice.extension
                new_extensions.append((ext.id, ExtensionRecord(
                    id=ids("ext"),
                    title=trim(custom.title) or ext.title,
                    image=custom.image,
                    custom_columns=list(custom.custom_columns),
                )))
        if new_extensions:
            store.append_extensions(target_game_id, [rec for _, rec in new_extensions])
            for foreign, rec in new_extensions:
                extensions[foreign] = UseExisting(rec.id)
            ctrs.extensions_created += len(new_extensions)
            log.info("Added %d extension(s) to game %s", len(new_extensions), target_game_id)

        # 3. New players
        for ref in dataset.players:
            choice = players.get(ref.id)
            if not isinstance(choice, CreateNew):
                continue
            form = choice.payload if isinstance(choice.payload, NewPlayer) else None
            name = (trim(form.name) if form and form.name else None) or ref.name
            record = PlayerRecord(
                id=ids("p"),
                name=name,
                image=(form.image if form and form.image else None)
                or avatar_url(settings.player_avatar_url, name),
            )
            store.create_player(record)
            players[ref.id] = UseExisting(record.id)
            ctrs.players_created += 1

        # 4. Locations
        resolved_locations: dict[str, str] = {}
        for name, loc_choice in tables.locations.items():
            resolved = resolve_location(name, loc_choice)
            resolved_locations[name] = resolved
            if isinstance(loc_choice, (CreateNew, CustomEntry)):
                store.register_location(resolved)
                ctrs.locations_registered += 1

    except Exception as exc:
        rewritten = replace(tables, game=game_choice, extensions=extensions, players=players)
        ctrs.warnings.append(f"entity creation failed: {exc}")
        raise PartialCommitError(
            f"Import of {dataset.source_game_title!r} stopped while creating entities: {exc}",
            ctrs,
            rewritten,
        ) from exc

    # 5. Matches
    for idx, match in enumerate(dataset.matches):
        try:
            local = remap_match(
                match, ids("m"), target_game_id, extensions, players,
                resolved_locations, created_by, ctrs,
            )
            store.create_match(local)
            ctrs.matches_inserted += 1
        except Exception as exc:
            ctrs.match_errors += 1
            ctrs.warnings.append(f"match {idx} ({match.date}): {exc}")
            log.warning("Match %d of %r not inserted: %s", idx, dataset.source_game_title, exc)

    log.info(
        "Committed %r: %d/%d matches inserted, %d error(s)",
        dataset.source_game_title, ctrs.matches_inserted, ctrs.matches_read, ctrs.match_errors,
    )
    return ctrs
