"""boardgame_etl.classify

Recognizes the shape of a decoded payload and turns it into one or more
ExportDatasets, one per source game.

Native ``match_export`` objects become exactly one dataset.  BG Stats
exports (parallel ``plays`` / ``players`` / ``games`` arrays, optional
``locations``) are grouped by ``gameRefId`` into one dataset per game that
has at least one play.  Foreign ids are namespaced with the configured
prefixes so they never collide with native ids.

A malformed foreign payload never raises here: it yields zero datasets and
the caller reports the payload as unreadable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from boardgame_etl.import_settings import DEFAULT_SETTINGS, ImportSettings
from boardgame_etl.models import (
    EXPORT_TYPE,
    ExportDataset,
    ExtensionRef,
    Match,
    MatchResult,
    PlayerRef,
)
from boardgame_etl.normalize import (
    foreign_id,
    format_duration,
    format_play_date,
    parse_score,
    trim,
)
from boardgame_etl.payload import DECODE_ERROR_MESSAGE, decode_payload
from boardgame_etl.shared import NoDatasetsFound

log = logging.getLogger(__name__)

SOURCE_NATIVE = "native"
SOURCE_BGSTATS = "bgstats"


@dataclass
class Detection:
    datasets: list[ExportDataset] = field(default_factory=list)
    preselected: list[int] = field(default_factory=list)
    source_format: str | None = None


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

def is_native_export(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("type") == EXPORT_TYPE
        and isinstance(value.get("matches"), list)
    )


def classify_payload(value: Any, settings: ImportSettings = DEFAULT_SETTINGS) -> Detection:
    """Return the datasets found in a decoded payload (possibly none)."""
    if is_native_export(value):
        try:
            dataset = ExportDataset.from_dict(value)
        except (TypeError, ValueError, AttributeError) as exc:
            log.warning("Native export could not be read: %s", exc)
            return Detection()
        return Detection(
            datasets=[dataset],
            preselected=[0],
            source_format=SOURCE_NATIVE,
        )

    datasets = convert_bgstats(value, settings)
    if datasets:
        return Detection(
            datasets=datasets,
            preselected=list(range(len(datasets))),
            source_format=SOURCE_BGSTATS,
        )
    return Detection()


def detect_datasets(text: str, settings: ImportSettings = DEFAULT_SETTINGS) -> Detection:
    """Decode then classify.  Raises DecodeError family or NoDatasetsFound."""
    value = decode_payload(text, settings)
    detection = classify_payload(value, settings)
    if not detection.datasets:
        raise NoDatasetsFound(DECODE_ERROR_MESSAGE)
    log.info(
        "Detected %d dataset(s) in %s payload",
        len(detection.datasets), detection.source_format,
    )
    return detection


# ---------------------------------------------------------------------------
# BG Stats converter
# ---------------------------------------------------------------------------

def _expansion_ref_id(entry: Any) -> Any:
    """usesExpansions items are bare ids or objects carrying gameRefId."""
    if isinstance(entry, dict):
        return entry.get("gameRefId")
    return entry


def _by_id(items: list[Any]) -> dict[Any, dict[str, Any]]:
    index: dict[Any, dict[str, Any]] = {}
    for item in items:
        if isinstance(item, dict) and "id" in item:
            index.setdefault(item["id"], item)
    return index


def convert_bgstats(data: Any, settings: ImportSettings = DEFAULT_SETTINGS) -> list[ExportDataset]:
    """Convert a BG Stats export into one dataset per played game.

    Missing or non-list ``plays`` / ``players`` / ``games`` → [].
    """
    if not isinstance(data, dict):
        return []
    plays, players, games = data.get("plays"), data.get("players"), data.get("games")
    if not isinstance(plays, list) or not isinstance(players, list) or not isinstance(games, list):
        return []
    locations = data.get("locations") if isinstance(data.get("locations"), list) else []

    try:
        games_by_id = _by_id(games)
        locations_by_id = _by_id(locations)

        # Every foreign player is a candidate; only those who scored are kept.
        player_candidates: dict[Any, PlayerRef] = {}
        for p in players:
            if isinstance(p, dict) and "id" in p:
                player_candidates.setdefault(p["id"], PlayerRef(
                    id=foreign_id(settings.foreign_player_prefix, p["id"]),
                    name=trim(p.get("name")) or settings.unknown_player_name,
                ))

        plays_by_game: dict[Any, list[dict[str, Any]]] = {}
        for play in plays:
            if isinstance(play, dict) and play.get("gameRefId") is not None:
                plays_by_game.setdefault(play["gameRefId"], []).append(play)

        result: list[ExportDataset] = []
        for game_ref_id, game_plays in plays_by_game.items():
            bg_game = games_by_id.get(game_ref_id)
            if bg_game is None:
                log.warning(
                    "Skipping %d play(s) for unknown gameRefId %r", len(game_plays), game_ref_id
                )
                continue
            result.append(_convert_game(
                game_ref_id, bg_game, game_plays, games_by_id,
                player_candidates, locations_by_id, settings,
            ))
        return result
    except (TypeError, ValueError, AttributeError) as exc:
        log.warning("BG Stats payload could not be converted: %s", exc)
        return []


def _convert_game(
    game_ref_id: Any,
    bg_game: dict[str, Any],
    game_plays: list[dict[str, Any]],
    games_by_id: dict[Any, dict[str, Any]],
    player_candidates: dict[Any, PlayerRef],
    locations_by_id: dict[Any, dict[str, Any]],
    settings: ImportSettings,
) -> ExportDataset:
    title = trim(bg_game.get("name")) or settings.unknown_game_title
    ext_prefix = settings.foreign_extension_prefix

    extensions: dict[str, ExtensionRef] = {}
    used_players: dict[str, PlayerRef] = {}
    matches: list[Match] = []

    for index, play in enumerate(game_plays):
        ext_ids: list[str] | None = None
        raw_expansions = play.get("usesExpansions")
        if isinstance(raw_expansions, list):
            ext_ids = []
            for entry in raw_expansions:
                exp_id = _expansion_ref_id(entry)
                exp_game = games_by_id.get(exp_id)
                if exp_game is None:
                    log.warning(
                        "Play %d of %r uses unknown expansion %r; dropped", index, title, exp_id
                    )
                    continue
                ext_id = foreign_id(ext_prefix, exp_id)
                extensions.setdefault(ext_id, ExtensionRef(
                    id=ext_id,
                    title=trim(exp_game.get("name")) or settings.unknown_game_title,
                ))
                if ext_id not in ext_ids:
                    ext_ids.append(ext_id)

        results: list[MatchResult] = []
        for ps in play.get("playerScores") or []:
            if not isinstance(ps, dict):
                continue
            ref = player_candidates.get(ps.get("playerRefId"))
            if ref is None:
                continue
            used_players.setdefault(ref.id, ref)
            results.append(MatchResult(
                player_id=ref.id,
                score=parse_score(ps.get("score")),
                is_winner=ps.get("winner") is True,
                is_starter=ps.get("startPlayer") is True,
            ))

        location = None
        loc = locations_by_id.get(play.get("locationRefId"))
        if loc is not None:
            location = trim(loc.get("name"))

        matches.append(Match(
            id=index + 1,
            game_id=game_ref_id,
            date=format_play_date(play.get("playDate"), settings.date_format),
            duration=format_duration(play.get("durationMin")),
            location=location,
            results=results,
            extension_ids=ext_ids,
            created_by="import",
        ))

    return ExportDataset(
        source_game_title=title,
        matches=matches,
        players=list(used_players.values()),
        extensions=list(extensions.values()),
    )
