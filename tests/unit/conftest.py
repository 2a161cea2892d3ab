"""Unit test fixtures: a seeded JSON library and a call-recording store."""

from __future__ import annotations

import itertools
import json
from pathlib import Path

import pytest

from boardgame_etl.store import LibraryStore

SEED_LIBRARY = {
    "games": [
        {
            "id": "g1",
            "title": "Wingspan",
            "image": "",
            "type": "score",
            "extensions": [{"id": "e1", "title": "European Expansion"}],
        },
        {
            "id": "g2",
            "title": "Catan",
            "image": "",
            "type": "score",
            "extensions": [
                {"id": "c1", "title": "Seafarers"},
                {"id": "c2", "title": "Seafarers Variant"},
            ],
        },
    ],
    "players": [
        {"id": "p1", "name": "Alex", "image": ""},
        {"id": "p2", "name": "Sam", "image": ""},
    ],
    "matches": [],
    "locations": ["Home Office"],
}

WRITE_METHODS = ("create_game", "append_extensions", "create_player", "create_match", "register_location")


class RecordingStore:
    """Wraps a store and records every write call as (method, args)."""

    def __init__(self, inner, fail_on: dict[str, int] | None = None) -> None:
        self.inner = inner
        self.calls: list[tuple[str, tuple]] = []
        # method -> 1-based call number that raises
        self.fail_on = dict(fail_on or {})
        self._counts: dict[str, int] = {}

    def load_catalog(self):
        return self.inner.load_catalog()

    def list_matches(self, game_id=None):
        return self.inner.list_matches(game_id)

    def __getattr__(self, name):
        if name not in WRITE_METHODS:
            raise AttributeError(name)
        method = getattr(self.inner, name)

        def wrapper(*args):
            self._counts[name] = self._counts.get(name, 0) + 1
            self.calls.append((name, args))
            if self.fail_on.get(name) == self._counts[name]:
                raise RuntimeError(f"{name} failed")
            return method(*args)

        return wrapper

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)


@pytest.fixture
def library_path(tmp_path) -> Path:
    p = tmp_path / "library.json"
    p.write_text(json.dumps(SEED_LIBRARY), encoding="utf-8")
    return p


@pytest.fixture
def library(library_path) -> LibraryStore:
    return LibraryStore.open(library_path)


@pytest.fixture
def recording_store(library):
    def _make(fail_on: dict[str, int] | None = None) -> RecordingStore:
        return RecordingStore(library, fail_on)
    return _make


@pytest.fixture
def ids():
    """Deterministic local-id factory: g_1, p_2, m_3, ..."""
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}_{next(counter)}"
