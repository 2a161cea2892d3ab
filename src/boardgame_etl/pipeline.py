"""boardgame_etl.pipeline

Dataset queue and mapping state machine for the match import.

Steps, in forward order:
    INPUT → DETECTED → GAME_MAPPING → LOCATION_MAPPING → PLAYER_MAPPING → (commit)
    → GAME_MAPPING of the next queued dataset, or DONE

Every step function takes a PipelineState and returns a new one; nothing is
mutated in place.  A guard that fails leaves the step unchanged and sets
``message`` for the current step.  Validation problems are never raised;
only calling a step function from the wrong step raises StepOrderError.

Transition guards:
  GAME_MAPPING → next       game resolved (existing id in the catalog, or a
                            configured new game) and every extension entry
                            decided, with existing ids on the target game.
                            No locations in the dataset skips LOCATION_MAPPING.
  LOCATION_MAPPING → next   unconditional.
  PLAYER_MAPPING → commit   every player entry decided.

Advancing the queue rebuilds every mapping table from scratch, so choices
made for one dataset never become defaults for another.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from boardgame_etl.classify import detect_datasets
from boardgame_etl.commit import avatar_url, commit_dataset, new_local_id
from boardgame_etl.import_settings import DEFAULT_SETTINGS, ImportSettings
from boardgame_etl.matching import (
    auto_map_extensions,
    is_unresolved,
    match_game,
    match_location,
    match_player,
)
from boardgame_etl.models import (
    UNRESOLVED,
    Catalog,
    CreateNew,
    CustomEntry,
    CustomExtension,
    Customized,
    ExportDataset,
    ExtensionChoice,
    GameChoice,
    LocalExtension,
    LocationChoice,
    NewGame,
    NewPlayer,
    PlayerChoice,
    Unresolved,
    UseExisting,
)
from boardgame_etl.shared import CommitCounters, ImportPipelineError, PartialCommitError
from boardgame_etl.store import DataStore

log = logging.getLogger(__name__)

MSG_SELECT_DATASET = "Select at least one game."
MSG_CHOOSE_GAME = "Choose either a new or an existing game."
MSG_PICK_GAME = "Pick a game from the list."
MSG_MAP_EXTENSIONS = "Make a choice for every extension."
MSG_EXTENSION_NOT_ON_GAME = "An extension is mapped to an extension of a different game; choose again."
MSG_MAP_PLAYERS = "Map every player before importing."
MSG_UNKNOWN_PLAYER = "Pick a player from the list."
MSG_NO_INPUT = "Paste, upload or link the data to import first."


class Step(str, Enum):
    INPUT = "input"
    DETECTED = "detected"
    GAME_MAPPING = "game_mapping"
    LOCATION_MAPPING = "location_mapping"
    PLAYER_MAPPING = "player_mapping"
    DONE = "done"


class StepOrderError(RuntimeError):
    """Raised when a step function is called while the pipeline is on another step."""


# ---------------------------------------------------------------------------
# Dataset queue
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DatasetQueue:
    """Datasets chosen for import and the index of the one being reconciled."""

    datasets: tuple[ExportDataset, ...]
    index: int = 0

    @property
    def current(self) -> ExportDataset:
        return self.datasets[self.index]

    @property
    def is_last(self) -> bool:
        return self.index >= len(self.datasets) - 1

    def advance(self) -> DatasetQueue | None:
        """Next position, or None once past the last dataset."""
        if self.is_last:
            return None
        return replace(self, index=self.index + 1)

    def __len__(self) -> int:
        return len(self.datasets)


# ---------------------------------------------------------------------------
# Mapping tables / pipeline state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MappingTables:
    """Reconciliation decisions for one dataset.  Replaced, never mutated."""

    game: GameChoice = UNRESOLVED
    suggested_game_id: str | None = None
    extensions: dict[str, ExtensionChoice] = field(default_factory=dict)
    extensions_confirmed: frozenset[str] = frozenset()
    locations: dict[str, LocationChoice] = field(default_factory=dict)
    custom_location_values: dict[str, str] = field(default_factory=dict)
    players: dict[str, PlayerChoice] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineState:
    catalog: Catalog = field(default_factory=Catalog)
    settings: ImportSettings = DEFAULT_SETTINGS
    step: Step = Step.INPUT
    detected: tuple[ExportDataset, ...] = ()
    selected: tuple[int, ...] = ()
    source_format: str | None = None
    queue: DatasetQueue | None = None
    tables: MappingTables = field(default_factory=MappingTables)
    unique_locations: tuple[str, ...] = ()
    message: str | None = None
    commits: tuple[CommitCounters, ...] = ()

    @property
    def dataset(self) -> ExportDataset | None:
        if self.queue is None or self.step == Step.DONE:
            return None
        return self.queue.current

    @property
    def position(self) -> tuple[int, int]:
        """(current dataset index, queue length); (0, 0) without a queue."""
        if self.queue is None:
            return 0, 0
        return self.queue.index, len(self.queue)

    @property
    def target_game_id(self) -> str | None:
        if isinstance(self.tables.game, UseExisting):
            return self.tables.game.local_id
        return None

    def target_extensions(self) -> tuple[LocalExtension, ...]:
        """Extensions of the chosen target game; a game still to be created has none."""
        game_id = self.target_game_id
        if game_id is None and isinstance(self.tables.game, Unresolved):
            game_id = self.tables.suggested_game_id
        game = self.catalog.game(game_id)
        return game.extensions if game is not None else ()

    def unresolved_extension_ids(self) -> list[str]:
        return [k for k, v in self.tables.extensions.items() if is_unresolved(v)]

    def unresolved_player_ids(self) -> list[str]:
        return [k for k, v in self.tables.players.items() if is_unresolved(v)]


def start_pipeline(
    catalog: Catalog,
    settings: ImportSettings = DEFAULT_SETTINGS,
) -> PipelineState:
    return PipelineState(catalog=catalog, settings=settings)


def _require_step(state: PipelineState, *steps: Step) -> None:
    if state.step not in steps:
        allowed = ", ".join(s.value for s in steps)
        raise StepOrderError(f"expected step in ({allowed}), pipeline is on {state.step.value}")


def _fail(state: PipelineState, message: str) -> PipelineState:
    log.debug("Step %s blocked: %s", state.step.value, message)
    return replace(state, message=message)


# ---------------------------------------------------------------------------
# Dataset preparation
# ---------------------------------------------------------------------------

def prepare_dataset(
    dataset: ExportDataset,
    catalog: Catalog,
    settings: ImportSettings = DEFAULT_SETTINGS,
) -> tuple[MappingTables, tuple[str, ...]]:
    """Fresh mapping tables and unique locations for one dataset.

    A game with the same title is only suggested; the create-vs-existing
    decision stays Unresolved.  Extensions are matched against the suggested
    game's extensions.
    """
    suggested = match_game(dataset.source_game_title, catalog.games)
    candidates: tuple[LocalExtension, ...] = ()
    if suggested is not None:
        game = catalog.game(suggested)
        candidates = game.extensions if game is not None else ()
    extensions = auto_map_extensions(
        dataset.extensions, candidates, {}, (), settings.min_token_length
    )
    tables = MappingTables(suggested_game_id=suggested, extensions=extensions)
    return tables, tuple(dataset.unique_locations())


def _load_current(state: PipelineState, queue: DatasetQueue) -> PipelineState:
    tables, locations = prepare_dataset(queue.current, state.catalog, state.settings)
    log.info(
        "Reconciling dataset %d/%d: %r (%d matches)",
        queue.index + 1, len(queue), queue.current.source_game_title,
        len(queue.current.matches),
    )
    return replace(
        state,
        step=Step.GAME_MAPPING,
        queue=queue,
        tables=tables,
        unique_locations=locations,
        message=None,
    )


# ---------------------------------------------------------------------------
# INPUT / DETECTED
# ---------------------------------------------------------------------------

def submit_payload(state: PipelineState, text: str) -> PipelineState:
    """Decode and classify text; on failure stay on INPUT with the error message."""
    _require_step(state, Step.INPUT, Step.DETECTED)
    try:
        detection = detect_datasets(text, state.settings)
    except ImportPipelineError as exc:
        return replace(state, step=Step.INPUT, message=str(exc))
    return replace(
        state,
        step=Step.DETECTED,
        detected=tuple(detection.datasets),
        selected=tuple(detection.preselected),
        source_format=detection.source_format,
        message=None,
    )


def toggle_selection(state: PipelineState, index: int) -> PipelineState:
    _require_step(state, Step.DETECTED)
    if not 0 <= index < len(state.detected):
        return _fail(state, MSG_SELECT_DATASET)
    if index in state.selected:
        selected = tuple(i for i in state.selected if i != index)
    else:
        selected = tuple(sorted((*state.selected, index)))
    return replace(state, selected=selected, message=None)


def set_selection(state: PipelineState, indices: list[int]) -> PipelineState:
    _require_step(state, Step.DETECTED)
    valid = sorted({i for i in indices if 0 <= i < len(state.detected)})
    return replace(state, selected=tuple(valid), message=None)


def confirm_selection(state: PipelineState) -> PipelineState:
    """Queue the selected datasets (in detection order) and load the first."""
    _require_step(state, Step.DETECTED)
    chosen = tuple(state.detected[i] for i in sorted(state.selected))
    if not chosen:
        return _fail(state, MSG_SELECT_DATASET)
    return _load_current(state, DatasetQueue(datasets=chosen))


# ---------------------------------------------------------------------------
# GAME_MAPPING (game + extensions)
# ---------------------------------------------------------------------------

def _retarget(state: PipelineState, game: GameChoice) -> PipelineState:
    """Set the game choice and re-match every extension the user has not confirmed."""
    tables = replace(state.tables, game=game)
    interim = replace(state, tables=tables)
    extensions = auto_map_extensions(
        state.dataset.extensions,
        interim.target_extensions(),
        tables.extensions,
        tables.extensions_confirmed,
        state.settings.min_token_length,
    )
    return replace(interim, tables=replace(tables, extensions=extensions), message=None)


def choose_existing_game(state: PipelineState, game_id: str) -> PipelineState:
    _require_step(state, Step.GAME_MAPPING)
    if state.catalog.game(game_id) is None:
        return _fail(state, MSG_PICK_GAME)
    return _retarget(state, UseExisting(game_id))


def configure_new_game(state: PipelineState, new_game: NewGame | None = None) -> PipelineState:
    """Target a game to be created at commit.

    new_game is the result of the game-creation form; without one the
    dataset's source title and a generated avatar are used.
    """
    _require_step(state, Step.GAME_MAPPING)
    if new_game is None:
        new_game = default_new_game(state.dataset, state.settings)
    return _retarget(state, CreateNew(new_game))


def default_new_game(dataset: ExportDataset, settings: ImportSettings = DEFAULT_SETTINGS) -> NewGame:
    title = dataset.source_game_title or settings.unknown_game_title
    return NewGame(title=title, image=avatar_url(settings.game_avatar_url, title))


def set_extension_choice(
    state: PipelineState,
    foreign_id: str,
    choice: ExtensionChoice,
) -> PipelineState:
    _require_step(state, Step.GAME_MAPPING)
    if foreign_id not in state.tables.extensions:
        raise KeyError(f"unknown extension id {foreign_id!r}")
    extensions = {**state.tables.extensions, foreign_id: choice}
    confirmed = set(state.tables.extensions_confirmed)
    if isinstance(choice, Unresolved):
        confirmed.discard(foreign_id)
    else:
        confirmed.add(foreign_id)
    tables = replace(
        state.tables, extensions=extensions, extensions_confirmed=frozenset(confirmed)
    )
    return replace(state, tables=tables, message=None)


def customize_extension(
    state: PipelineState,
    foreign_id: str,
    extension: CustomExtension,
) -> PipelineState:
    """Store the creation-form result; it is created on the target game at commit."""
    return set_extension_choice(state, foreign_id, Customized(extension))


def extension_form_defaults(state: PipelineState, foreign_id: str) -> CustomExtension:
    """Initial values for the extension form: the earlier customization, else the foreign title."""
    current = state.tables.extensions.get(foreign_id)
    if isinstance(current, Customized):
        return current.extension
    for ext in state.dataset.extensions:
        if ext.id == foreign_id:
            return CustomExtension(title=ext.title)
    raise KeyError(f"unknown extension id {foreign_id!r}")


def advance_from_game(state: PipelineState) -> PipelineState:
    _require_step(state, Step.GAME_MAPPING)
    game = state.tables.game
    if isinstance(game, Unresolved):
        return _fail(state, MSG_CHOOSE_GAME)
    if isinstance(game, UseExisting) and state.catalog.game(game.local_id) is None:
        return _fail(state, MSG_PICK_GAME)
    if isinstance(game, CreateNew) and not isinstance(game.payload, NewGame):
        return _fail(state, MSG_CHOOSE_GAME)

    if state.unresolved_extension_ids():
        return _fail(state, MSG_MAP_EXTENSIONS)
    valid_ids = {e.id for e in state.target_extensions()}
    for choice in state.tables.extensions.values():
        if isinstance(choice, UseExisting) and choice.local_id not in valid_ids:
            return _fail(state, MSG_EXTENSION_NOT_ON_GAME)

    locations = dict(state.tables.locations)
    custom_values = dict(state.tables.custom_location_values)
    for name in state.unique_locations:
        if name not in locations:
            locations[name] = match_location(name, state.catalog.locations)
        custom_values.setdefault(name, name)
    tables = replace(state.tables, locations=locations, custom_location_values=custom_values)
    state = replace(state, tables=tables, message=None)

    if state.unique_locations:
        return replace(state, step=Step.LOCATION_MAPPING)
    return _enter_player_mapping(state)


# ---------------------------------------------------------------------------
# LOCATION_MAPPING
# ---------------------------------------------------------------------------

def set_location_choice(
    state: PipelineState,
    name: str,
    choice: LocationChoice,
) -> PipelineState:
    _require_step(state, Step.LOCATION_MAPPING)
    if name not in state.tables.locations:
        raise KeyError(f"unknown location {name!r}")
    custom_values = dict(state.tables.custom_location_values)
    if isinstance(choice, CustomEntry):
        custom_values[name] = choice.text
    tables = replace(
        state.tables,
        locations={**state.tables.locations, name: choice},
        custom_location_values=custom_values,
    )
    return replace(state, tables=tables, message=None)


def set_custom_location_value(state: PipelineState, name: str, text: str) -> PipelineState:
    """Typing in the custom field selects the custom entry for that location."""
    return set_location_choice(state, name, CustomEntry(text))


def advance_from_locations(state: PipelineState) -> PipelineState:
    _require_step(state, Step.LOCATION_MAPPING)
    return _enter_player_mapping(replace(state, message=None))


# ---------------------------------------------------------------------------
# PLAYER_MAPPING + commit
# ---------------------------------------------------------------------------

def _enter_player_mapping(state: PipelineState) -> PipelineState:
    players = dict(state.tables.players)
    for ref in state.dataset.players:
        current = players.get(ref.id)
        if current is None or is_unresolved(current):
            players[ref.id] = match_player(ref.name, state.catalog.players)
    tables = replace(state.tables, players=players)
    return replace(state, step=Step.PLAYER_MAPPING, tables=tables)


def set_player_choice(
    state: PipelineState,
    foreign_id: str,
    choice: PlayerChoice,
) -> PipelineState:
    _require_step(state, Step.PLAYER_MAPPING)
    if foreign_id not in state.tables.players:
        raise KeyError(f"unknown player id {foreign_id!r}")
    if isinstance(choice, UseExisting) and not state.catalog.has_player(choice.local_id):
        return _fail(state, MSG_UNKNOWN_PLAYER)
    if isinstance(choice, CreateNew) and choice.payload is not None and not isinstance(choice.payload, NewPlayer):
        raise TypeError("player CreateNew payload must be a NewPlayer")
    tables = replace(state.tables, players={**state.tables.players, foreign_id: choice})
    return replace(state, tables=tables, message=None)


def advance_from_players(
    state: PipelineState,
    store: DataStore,
    ids: Callable[[str], str] = new_local_id,
    created_by: str = "import",
) -> PipelineState:
    """Commit the current dataset, then load the next queued one or finish.

    Nothing touches the store while any player entry is unresolved.
    """
    _require_step(state, Step.PLAYER_MAPPING)
    if state.unresolved_player_ids():
        return _fail(state, MSG_MAP_PLAYERS)

    try:
        counters = commit_dataset(
            state.dataset, state.tables, store,
            ids=ids, settings=state.settings, created_by=created_by,
        )
    except PartialCommitError as exc:
        log.error("Commit of %r stopped: %s", state.dataset.source_game_title, exc)
        return replace(
            state,
            catalog=store.load_catalog(),
            tables=exc.tables,
            message=str(exc),
        )

    state = replace(state, catalog=store.load_catalog(), commits=(*state.commits, counters))
    next_queue = state.queue.advance()
    if next_queue is None:
        log.info("Import finished: %d dataset(s) committed", len(state.commits))
        return replace(
            state,
            step=Step.DONE,
            tables=MappingTables(),
            unique_locations=(),
            message=None,
        )
    return _load_current(state, next_queue)


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------

def advance(
    state: PipelineState,
    store: DataStore | None = None,
    ids: Callable[[str], str] = new_local_id,
    created_by: str = "import",
) -> PipelineState:
    """The single "next" action: run the current step's guard and move on."""
    if state.step == Step.INPUT:
        return _fail(state, MSG_NO_INPUT)
    if state.step == Step.DETECTED:
        return confirm_selection(state)
    if state.step == Step.GAME_MAPPING:
        return advance_from_game(state)
    if state.step == Step.LOCATION_MAPPING:
        return advance_from_locations(state)
    if state.step == Step.PLAYER_MAPPING:
        if store is None:
            raise ValueError("a data store is required to commit")
        return advance_from_players(state, store, ids=ids, created_by=created_by)
    return state


def go_back(state: PipelineState) -> PipelineState:
    """Return to the previous mapping step of the same dataset, keeping every choice."""
    if state.step == Step.PLAYER_MAPPING:
        step = Step.LOCATION_MAPPING if state.unique_locations else Step.GAME_MAPPING
        return replace(state, step=step, message=None)
    if state.step == Step.LOCATION_MAPPING:
        return replace(state, step=Step.GAME_MAPPING, message=None)
    if state.step == Step.GAME_MAPPING and state.queue is not None and state.queue.index == 0:
        return replace(
            state,
            step=Step.DETECTED,
            queue=None,
            tables=MappingTables(),
            unique_locations=(),
            message=None,
        )
    return state
