"""Unit tests for pipeline: dataset queue and the mapping state machine."""

from __future__ import annotations

import json

import pytest

from boardgame_etl.models import (
    UNRESOLVED,
    CreateNew,
    CustomEntry,
    CustomExtension,
    Customized,
    ExportDataset,
    NewGame,
    UseExisting,
)
from boardgame_etl.payload import DECODE_ERROR_MESSAGE, UNSUPPORTED_SOURCE_MESSAGE
from boardgame_etl.pipeline import (
    MSG_CHOOSE_GAME,
    MSG_EXTENSION_NOT_ON_GAME,
    MSG_MAP_EXTENSIONS,
    MSG_MAP_PLAYERS,
    MSG_NO_INPUT,
    MSG_PICK_GAME,
    MSG_SELECT_DATASET,
    MSG_UNKNOWN_PLAYER,
    DatasetQueue,
    Step,
    StepOrderError,
    advance,
    advance_from_game,
    advance_from_locations,
    advance_from_players,
    choose_existing_game,
    configure_new_game,
    confirm_selection,
    customize_extension,
    default_new_game,
    extension_form_defaults,
    go_back,
    set_custom_location_value,
    set_extension_choice,
    set_location_choice,
    set_player_choice,
    start_pipeline,
    submit_payload,
    toggle_selection,
)

TWO_GAMES = json.dumps({
    "games": [
        {"id": 1, "name": "Wingspan"},
        {"id": 2, "name": "Azul"},
        {"id": 5, "name": "European Expansion"},
        {"id": 6, "name": "Oceania"},
    ],
    "players": [{"id": 10, "name": "Alex"}, {"id": 11, "name": "Jordan"}],
    "locations": [{"id": 100, "name": "Home"}],
    "plays": [
        {
            "gameRefId": 1,
            "playDate": "2024-03-01 20:00:00",
            "locationRefId": 100,
            "usesExpansions": [5, 6],
            "playerScores": [
                {"playerRefId": 10, "score": 88, "winner": True},
                {"playerRefId": 11, "score": 71},
            ],
        },
        {
            "gameRefId": 2,
            "playDate": "2024-03-02 20:00:00",
            "locationRefId": 100,
            "playerScores": [
                {"playerRefId": 10, "score": 50},
                {"playerRefId": 11, "score": 61, "winner": True},
            ],
        },
    ],
})


def _detected(store):
    return submit_payload(start_pipeline(store.load_catalog()), TWO_GAMES)


def _game_step(store):
    return confirm_selection(_detected(store))


def _wingspan_ready(store):
    """First dataset with every game/extension decision made."""
    state = choose_existing_game(_game_step(store), "g1")
    return customize_extension(state, "bg_ext_6", CustomExtension(title="Oceania"))


def _player_step(store):
    state = advance_from_game(_wingspan_ready(store))
    return advance_from_locations(state)


# ---------------------------------------------------------------------------
# DatasetQueue
# ---------------------------------------------------------------------------

class TestDatasetQueue:
    def test_advance_and_last(self):
        q = DatasetQueue(datasets=(ExportDataset("A"), ExportDataset("B")))
        assert q.current.source_game_title == "A"
        assert not q.is_last
        nxt = q.advance()
        assert nxt.current.source_game_title == "B"
        assert nxt.is_last
        assert nxt.advance() is None
        assert len(q) == 2


# ---------------------------------------------------------------------------
# INPUT / DETECTED
# ---------------------------------------------------------------------------

class TestInputAndSelection:
    def test_detects_and_preselects(self, library):
        state = _detected(library)
        assert state.step == Step.DETECTED
        assert [d.source_game_title for d in state.detected] == ["Wingspan", "Azul"]
        assert state.selected == (0, 1)
        assert state.source_format == "bgstats"

    def test_unreadable_stays_on_input(self, library):
        state = submit_payload(start_pipeline(library.load_catalog()), "not a payload")
        assert state.step == Step.INPUT
        assert state.message == DECODE_ERROR_MESSAGE

    def test_malformed_native_export_does_not_raise(self, library):
        payload = json.dumps({
            "type": "match_export",
            "version": "1.0",
            "sourceGameTitle": "Azul",
            "matches": [{"id": 1, "results": 5}],
        })
        state = submit_payload(start_pipeline(library.load_catalog()), payload)
        assert state.step == Step.DETECTED
        assert state.detected[0].matches[0].results == []

    def test_unreadable_native_export_stays_on_input(self, library, monkeypatch):
        def _boom(data):
            raise TypeError("bad export")

        monkeypatch.setattr("boardgame_etl.classify.ExportDataset.from_dict", _boom)
        payload = json.dumps({"type": "match_export", "matches": []})
        state = submit_payload(start_pipeline(library.load_catalog()), payload)
        assert state.step == Step.INPUT
        assert state.message == DECODE_ERROR_MESSAGE

    def test_unsupported_link_message(self, library):
        state = submit_payload(start_pipeline(library.load_catalog()), "https://bgstatsapp.com/p/1")
        assert state.message == UNSUPPORTED_SOURCE_MESSAGE

    def test_advance_without_input(self, library):
        state = advance(start_pipeline(library.load_catalog()))
        assert state.step == Step.INPUT
        assert state.message == MSG_NO_INPUT

    def test_empty_selection_blocks(self, library):
        state = toggle_selection(toggle_selection(_detected(library), 0), 1)
        state = confirm_selection(state)
        assert state.step == Step.DETECTED
        assert state.message == MSG_SELECT_DATASET

    def test_deselected_dataset_not_queued(self, library):
        state = confirm_selection(toggle_selection(_detected(library), 0))
        assert state.step == Step.GAME_MAPPING
        assert state.dataset.source_game_title == "Azul"
        assert state.position == (0, 1)

    def test_wrong_step_raises(self, library):
        with pytest.raises(StepOrderError):
            set_location_choice(_game_step(library), "Home", CreateNew())


# ---------------------------------------------------------------------------
# GAME_MAPPING
# ---------------------------------------------------------------------------

class TestGameMapping:
    def test_suggestion_does_not_decide(self, library):
        state = _game_step(library)
        assert state.tables.game == UNRESOLVED
        assert state.tables.suggested_game_id == "g1"

    def test_extensions_auto_matched_against_suggestion(self, library):
        state = _game_step(library)
        assert state.tables.extensions == {
            "bg_ext_5": UseExisting("e1"),
            "bg_ext_6": UNRESOLVED,
        }

    def test_unresolved_game_blocks(self, library):
        state = advance_from_game(_game_step(library))
        assert state.step == Step.GAME_MAPPING
        assert state.message == MSG_CHOOSE_GAME

    def test_unknown_game_id(self, library):
        state = choose_existing_game(_game_step(library), "nope")
        assert state.message == MSG_PICK_GAME
        assert state.tables.game == UNRESOLVED

    def test_unresolved_extension_blocks(self, library):
        state = advance_from_game(choose_existing_game(_game_step(library), "g1"))
        assert state.step == Step.GAME_MAPPING
        assert state.message == MSG_MAP_EXTENSIONS

    def test_extension_of_other_game_blocks(self, library):
        state = set_extension_choice(_wingspan_ready(library), "bg_ext_5", UseExisting("c1"))
        state = advance_from_game(state)
        assert state.message == MSG_EXTENSION_NOT_ON_GAME

    def test_retarget_rematches_unconfirmed_only(self, library):
        state = choose_existing_game(_wingspan_ready(library), "g2")
        assert state.tables.extensions["bg_ext_5"] == UNRESOLVED
        assert state.tables.extensions["bg_ext_6"] == Customized(CustomExtension(title="Oceania"))

    def test_new_game_has_no_extensions(self, library):
        state = configure_new_game(_wingspan_ready(library))
        assert isinstance(state.tables.game, CreateNew)
        assert state.tables.game.payload.title == "Wingspan"
        assert state.target_extensions() == ()
        assert state.tables.extensions["bg_ext_5"] == UNRESOLVED

    def test_default_new_game(self, library):
        ds = _game_step(library).dataset
        game = default_new_game(ds)
        assert game == NewGame(title="Wingspan", image=game.image)
        assert "Wingspan" in game.image

    def test_unknown_extension_id_raises(self, library):
        with pytest.raises(KeyError):
            set_extension_choice(_game_step(library), "bg_ext_99", UNRESOLVED)

    def test_extension_form_defaults(self, library):
        state = _wingspan_ready(library)
        assert extension_form_defaults(state, "bg_ext_6") == CustomExtension(title="Oceania")
        assert extension_form_defaults(state, "bg_ext_5") == CustomExtension(title="European Expansion")

    def test_advances_to_locations(self, library):
        state = advance_from_game(_wingspan_ready(library))
        assert state.step == Step.LOCATION_MAPPING
        assert state.message is None


# ---------------------------------------------------------------------------
# LOCATION_MAPPING
# ---------------------------------------------------------------------------

class TestLocationMapping:
    def test_prefill(self, library):
        state = advance_from_game(_wingspan_ready(library))
        assert state.tables.locations == {"Home": CreateNew()}
        assert state.tables.custom_location_values == {"Home": "Home"}

    def test_existing_location_prefilled(self, library):
        library.register_location("home")
        state = advance_from_game(_wingspan_ready(library))
        assert state.tables.locations == {"Home": UseExisting("home")}

    def test_custom_value_selects_custom_entry(self, library):
        state = advance_from_game(_wingspan_ready(library))
        state = set_custom_location_value(state, "Home", "Cabin")
        assert state.tables.locations["Home"] == CustomEntry("Cabin")
        assert state.tables.custom_location_values["Home"] == "Cabin"

    def test_no_locations_skips_step(self, library):
        payload = json.loads(TWO_GAMES)
        for play in payload["plays"]:
            del play["locationRefId"]
        state = submit_payload(start_pipeline(library.load_catalog()), json.dumps(payload))
        state = choose_existing_game(confirm_selection(state), "g1")
        state = customize_extension(state, "bg_ext_6", CustomExtension(title="Oceania"))
        state = advance_from_game(state)
        assert state.step == Step.PLAYER_MAPPING


# ---------------------------------------------------------------------------
# PLAYER_MAPPING and commit
# ---------------------------------------------------------------------------

class TestPlayerMapping:
    def test_prefill(self, library):
        state = _player_step(library)
        assert state.step == Step.PLAYER_MAPPING
        assert state.tables.players == {"bg_10": UseExisting("p1"), "bg_11": UNRESOLVED}

    def test_unresolved_player_ids(self, library):
        state = _player_step(library)
        assert state.unresolved_player_ids() == ["bg_11"]
        state = set_player_choice(state, "bg_11", CreateNew())
        assert state.unresolved_player_ids() == []

    def test_unresolved_player_blocks_without_store_calls(self, library, recording_store):
        store = recording_store()
        state = advance_from_players(_player_step(library), store)
        assert state.step == Step.PLAYER_MAPPING
        assert state.message == MSG_MAP_PLAYERS
        assert store.calls == []

    def test_unknown_local_player_rejected(self, library):
        state = set_player_choice(_player_step(library), "bg_11", UseExisting("p404"))
        assert state.message == MSG_UNKNOWN_PLAYER
        assert state.tables.players["bg_11"] == UNRESOLVED

    def test_commit_moves_to_next_dataset(self, library, ids):
        state = set_player_choice(_player_step(library), "bg_11", CreateNew())
        state = advance(state, library, ids=ids)
        assert state.step == Step.GAME_MAPPING
        assert state.dataset.source_game_title == "Azul"
        assert len(state.commits) == 1
        assert state.commits[0].matches_inserted == 1
        # catalog reloaded after commit
        assert any(p.name == "Jordan" for p in state.catalog.players)

    def test_advance_requires_store(self, library):
        with pytest.raises(ValueError):
            advance(_player_step(library))

    def test_go_back_keeps_choices(self, library):
        state = set_player_choice(_player_step(library), "bg_11", UseExisting("p2"))
        back = go_back(state)
        assert back.step == Step.LOCATION_MAPPING
        again = advance_from_locations(back)
        assert again.tables.players["bg_11"] == UseExisting("p2")

    def test_go_back_to_selection_from_first_dataset(self, library):
        state = go_back(_game_step(library))
        assert state.step == Step.DETECTED
        assert state.queue is None

    def test_partial_commit_keeps_step_and_allows_retry(self, library, recording_store, ids):
        store = recording_store(fail_on={"create_player": 1})
        state = set_player_choice(_player_step(library), "bg_11", CreateNew())
        state = configure_new_game(go_back(go_back(state)))
        state = customize_extension(state, "bg_ext_5", CustomExtension(title="European"))
        state = advance_from_locations(advance_from_game(state))

        failed = advance_from_players(state, store, ids=ids)
        assert failed.step == Step.PLAYER_MAPPING
        assert "stopped" in failed.message
        assert isinstance(failed.tables.game, UseExisting)

        done = advance_from_players(failed, store, ids=ids)
        assert done.step == Step.GAME_MAPPING
        assert store.count("create_game") == 1
        assert [p.name for p in library.load_catalog().players].count("Jordan") == 1


# ---------------------------------------------------------------------------
# Queue isolation
# ---------------------------------------------------------------------------

class TestQueueIsolation:
    def test_second_dataset_starts_fresh(self, library, ids):
        state = advance_from_game(_wingspan_ready(library))
        state = set_location_choice(state, "Home", UseExisting("Home Office"))
        state = advance_from_locations(state)
        state = set_player_choice(state, "bg_11", CreateNew())
        state = advance(state, library, ids=ids)

        assert state.dataset.source_game_title == "Azul"
        assert state.tables.game == UNRESOLVED
        assert state.tables.locations == {}

        state = advance_from_game(configure_new_game(state))
        assert state.tables.locations == {"Home": CreateNew()}
        assert state.tables.custom_location_values == {"Home": "Home"}

    def test_full_run_finishes(self, library, ids):
        state = advance_from_game(_wingspan_ready(library))
        state = advance_from_locations(state)
        state = advance(set_player_choice(state, "bg_11", CreateNew()), library, ids=ids)

        state = advance_from_locations(advance_from_game(configure_new_game(state)))
        # Jordan now exists locally and is matched by name
        assert all(isinstance(c, UseExisting) for c in state.tables.players.values())
        state = advance(state, library, ids=ids)

        assert state.step == Step.DONE
        assert state.dataset is None
        assert [c.source_game_title for c in state.commits] == ["Wingspan", "Azul"]
        assert len(library.list_matches()) == 2
