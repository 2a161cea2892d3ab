"""boardgame_etl.import_matches

Command-line entry point for importing and exporting match history.

  --mode import   decode a payload, reconcile it against the library using a
                  decisions file and/or interactive prompts, commit each
                  dataset in turn.
  --mode export   write the library's matches (optionally one game) as a
                  native export and print a share link when it is short enough.

Exit status is non-zero when a dataset could not be committed (a mapping
guard blocked it or entity creation failed) or any match insert failed.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import click
import psycopg

from boardgame_etl.commit import avatar_url
from boardgame_etl.decisions import (
    EMPTY_DECISIONS,
    DatasetDecisions,
    DecisionsValidationError,
    ImportDecisions,
    load_decisions,
    lookup,
    parse_extension_choice,
    parse_game_choice,
    parse_location_choice,
    parse_player_choice,
    resolve_selection,
)
from boardgame_etl.import_settings import ImportSettings, load_import_settings
from boardgame_etl.models import UNRESOLVED, CreateNew, GameChoice, Unresolved, UseExisting
from boardgame_etl.payload import build_match_export, build_share_url, read_payload_source
from boardgame_etl.pipeline import (
    PipelineState,
    Step,
    advance_from_game,
    advance_from_locations,
    advance_from_players,
    choose_existing_game,
    configure_new_game,
    confirm_selection,
    set_extension_choice,
    set_location_choice,
    set_player_choice,
    set_selection,
    start_pipeline,
    submit_payload,
)
from boardgame_etl.shared import (
    CommitCounters,
    DecodeError,
    ImportRunCounters,
    build_commit_report,
    write_run_report,
)
from boardgame_etl.store import DataStore, LibraryStore, PostgresStore

log = logging.getLogger(__name__)

MAX_PROMPT_ROUNDS = 3


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def _prompt_choice(text: str, parse: Callable[[str], Any], default: str | None = None) -> Any:
    while True:
        raw = click.prompt(text, default=default)
        try:
            return parse(raw)
        except DecisionsValidationError as exc:
            click.echo(f"  {exc}", err=True)


def _set_game(state: PipelineState, choice: GameChoice) -> PipelineState:
    if isinstance(choice, UseExisting):
        return choose_existing_game(state, choice.local_id)
    if isinstance(choice, CreateNew):
        return configure_new_game(state, choice.payload)
    return state


# ---------------------------------------------------------------------------
# Per-step drivers
# ---------------------------------------------------------------------------

def _run_game_step(state: PipelineState, dd: DatasetDecisions, interactive: bool) -> PipelineState:
    ds = state.dataset
    settings = state.settings
    game_image = avatar_url(settings.game_avatar_url, ds.source_game_title or settings.unknown_game_title)

    if dd.game is not None:
        state = _set_game(state, parse_game_choice(
            dd.game, ds, state.tables.suggested_game_id, game_image
        ))
    for ext in ds.extensions:
        value = lookup(dd.extensions, ext.id, ext.title)
        if value is not None:
            state = set_extension_choice(state, ext.id, parse_extension_choice(value, ext.title))

    for _ in range(MAX_PROMPT_ROUNDS if interactive else 1):
        if interactive:
            state = _prompt_game_step(state, game_image)
        nxt = advance_from_game(state)
        if nxt.step != Step.GAME_MAPPING:
            return nxt
        click.echo(f"  {nxt.message}", err=True)
        state = _unset_foreign_extensions(nxt)
    return nxt


def _prompt_game_step(state: PipelineState, game_image: str) -> PipelineState:
    ds = state.dataset
    if isinstance(state.tables.game, Unresolved):
        suggested = state.tables.suggested_game_id
        titles = ", ".join(f"{g.id}={g.title}" for g in state.catalog.games[:10])
        click.echo(f"Library games: {titles or '(none)'}")
        choice = _prompt_choice(
            f"Game for {ds.source_game_title!r} [new | existing:<id>]",
            lambda raw: parse_game_choice(raw, ds, suggested, game_image),
            default=f"existing:{suggested}" if suggested else "new",
        )
        state = _set_game(state, choice)

    for ext in ds.extensions:
        if not isinstance(state.tables.extensions.get(ext.id), Unresolved):
            continue
        options = ", ".join(f"{e.id}={e.title}" for e in state.target_extensions())
        click.echo(f"Extensions of the target game: {options or '(none)'}")
        choice = _prompt_choice(
            f"Extension {ext.title!r} [existing:<id> | ignore | customize]",
            lambda raw, title=ext.title: parse_extension_choice(raw, title),
        )
        state = set_extension_choice(state, ext.id, choice)
    return state


def _unset_foreign_extensions(state: PipelineState) -> PipelineState:
    """Reset extension choices pointing at extensions of another game."""
    valid = {e.id for e in state.target_extensions()}
    for foreign, choice in state.tables.extensions.items():
        if isinstance(choice, UseExisting) and choice.local_id not in valid:
            state = set_extension_choice(state, foreign, UNRESOLVED)
    return state


def _run_location_step(state: PipelineState, dd: DatasetDecisions) -> PipelineState:
    for name in state.unique_locations:
        value = lookup(dd.locations, name, name)
        if value is not None:
            state = set_location_choice(state, name, parse_location_choice(value))
    return advance_from_locations(state)


def _run_player_step(
    state: PipelineState,
    dd: DatasetDecisions,
    store: DataStore,
    interactive: bool,
    created_by: str,
) -> PipelineState:
    ds = state.dataset
    for ref in ds.players:
        value = lookup(dd.players, ref.id, ref.name)
        if value is not None:
            state = set_player_choice(state, ref.id, parse_player_choice(value))

    for _ in range(MAX_PROMPT_ROUNDS if interactive else 1):
        if interactive:
            for ref in ds.players:
                if not isinstance(state.tables.players.get(ref.id), Unresolved):
                    continue
                names = ", ".join(f"{p.id}={p.name}" for p in state.catalog.players[:20])
                click.echo(f"Library players: {names or '(none)'}")
                state = set_player_choice(state, ref.id, _prompt_choice(
                    f"Player {ref.name!r} [new | existing:<id>]", parse_player_choice,
                ))
        nxt = advance_from_players(state, store, created_by=created_by)
        if nxt.step != Step.PLAYER_MAPPING:
            return nxt
        click.echo(f"  {nxt.message}", err=True)
        state = nxt
    return nxt


def run_import(
    state: PipelineState,
    store: DataStore,
    decisions: ImportDecisions = EMPTY_DECISIONS,
    interactive: bool = False,
    created_by: str = "import",
    on_commit: Callable[[CommitCounters], None] | None = None,
) -> tuple[PipelineState, ImportRunCounters]:
    """Drive a DETECTED pipeline to DONE, or until a dataset is blocked.

    Returns the final state and the run counters.  A blocked dataset stops
    the run; datasets committed before it stay committed.
    """
    ctrs = ImportRunCounters(datasets_detected=len(state.detected))
    selection = resolve_selection(decisions.select, state.detected)
    if selection is not None:
        state = set_selection(state, selection)
    ctrs.datasets_selected = len(state.selected)
    state = confirm_selection(state)
    if state.step != Step.GAME_MAPPING:
        ctrs.warnings.append(state.message or "nothing selected")
        return state, ctrs

    order = sorted(state.selected)
    while state.step != Step.DONE:
        index = order[state.queue.index]
        title = state.dataset.source_game_title
        dd = decisions.for_dataset(index, title)
        committed_before = len(state.commits)

        state = _run_game_step(state, dd, interactive)
        if state.step == Step.LOCATION_MAPPING:
            state = _run_location_step(state, dd)
        if state.step == Step.PLAYER_MAPPING:
            state = _run_player_step(state, dd, store, interactive, created_by)

        if len(state.commits) == committed_before:
            ctrs.datasets_blocked += 1
            ctrs.warnings.append(f"{title}: {state.message}")
            log.warning("Dataset %r blocked on %s: %s", title, state.step.value, state.message)
            break
        ctrs.commits.append(state.commits[-1])
        ctrs.datasets_committed += 1
        if on_commit is not None:
            on_commit(state.commits[-1])
    return state, ctrs


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "export"]),
    show_default=True,
    help="Import a payload into the library, or export library matches",
)
@click.option("--payload-path", default=None, type=click.Path(), help="[import] File holding the payload")
@click.option("--payload-url", default=None, help="[import] Share link or URL serving the payload")
@click.option("--payload", "payload_text", default=None, help="[import] Payload text (JSON, base64 or share link)")
@click.option("--library-path", default=None, type=click.Path(), help="JSON library file")
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (instead of --library-path)")
@click.option("--decisions-path", default=None, type=click.Path(), help="[import] YAML mapping decisions")
@click.option("--interactive", is_flag=True, default=False, help="[import] Prompt for unresolved mappings")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--settings-path", default=None, type=click.Path(), help="YAML import settings")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--created-by", default="import", show_default=True, help="[import] Creator stored on each match")
@click.option("--game-id", default=None, help="[export] Only this game's matches")
@click.option("--output-path", default=None, type=click.Path(), help="[export] Write the export JSON here")
@click.option("--share-base-url", default="", help="[export] Base URL for the share link")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    payload_path: str | None,
    payload_url: str | None,
    payload_text: str | None,
    library_path: str | None,
    db_dsn: str | None,
    decisions_path: str | None,
    interactive: bool,
    dry_run: bool,
    settings_path: str | None,
    run_id: str | None,
    created_by: str,
    game_id: str | None,
    output_path: str | None,
    share_base_url: str,
    log_level: str,
) -> None:
    """Board-game match import/export CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if bool(library_path) == bool(db_dsn):
        click.echo(f"[{run_id}] ERROR: give exactly one of --library-path or --db-dsn", err=True)
        sys.exit(1)

    try:
        settings = load_import_settings(Path(settings_path) if settings_path else None)
    except (ValueError, OSError) as exc:
        click.echo(f"[{run_id}] ERROR: settings: {exc}", err=True)
        sys.exit(1)

    if mode == "export":
        _run_export(run_id, settings, library_path, db_dsn, game_id, output_path, share_base_url)
        return

    sources = [s for s in (payload_path, payload_url, payload_text) if s]
    if len(sources) != 1:
        click.echo(
            f"[{run_id}] ERROR: give exactly one of --payload-path, --payload-url or --payload",
            err=True,
        )
        sys.exit(1)

    decisions = EMPTY_DECISIONS
    if decisions_path:
        try:
            decisions = load_decisions(Path(decisions_path))
        except (ValueError, OSError) as exc:
            click.echo(f"[{run_id}] ERROR: decisions: {exc}", err=True)
            sys.exit(1)

    try:
        if payload_path:
            text = Path(payload_path).read_text(encoding="utf-8")
        elif payload_url:
            text = read_payload_source(payload_url, settings)
        else:
            text = payload_text or ""
    except (DecodeError, OSError) as exc:
        click.echo(f"[{run_id}] ERROR: {exc}", err=True)
        sys.exit(1)

    conn = None
    if db_dsn:
        conn = psycopg.connect(db_dsn, autocommit=False)
        store: DataStore = PostgresStore(conn)
    else:
        store = LibraryStore.open(Path(library_path))  # type: ignore[arg-type]

    try:
        state = submit_payload(start_pipeline(store.load_catalog(), settings), text)
        if state.step == Step.INPUT:
            click.echo(f"[{run_id}] ERROR: {state.message}", err=True)
            if conn is not None:
                conn.rollback()
            sys.exit(1)
        titles = ", ".join(repr(d.source_game_title) for d in state.detected)
        click.echo(
            f"[{run_id}] Detected {len(state.detected)} dataset(s) "
            f"({state.source_format}): {titles}"
        )

        on_commit = None
        if conn is not None and not dry_run:
            def on_commit(_ctrs: CommitCounters) -> None:
                conn.commit()

        state, counters = run_import(
            state, store, decisions,
            interactive=interactive, created_by=created_by, on_commit=on_commit,
        )
        for c in counters.commits:
            click.echo(build_commit_report(c, dry_run=dry_run))

        if conn is not None:
            if dry_run:
                conn.rollback()
                click.echo(f"[{run_id}] DRY RUN: rolled back.")
            else:
                # Entities created before a failed commit are kept.
                conn.commit()
                click.echo(f"[{run_id}] Committed.")
        elif dry_run:
            click.echo(f"[{run_id}] DRY RUN: library not saved.")
        else:
            store.save()  # type: ignore[union-attr]
            click.echo(f"[{run_id}] Library saved: {library_path}")
    except Exception:
        if conn is not None:
            conn.rollback()
        raise
    finally:
        if conn is not None:
            conn.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {
            "payload_path": payload_path,
            "payload_url": payload_url,
            "library_path": library_path,
            "decisions_path": decisions_path,
        },
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(counters.to_dict(), indent=2, default=str))

    if counters.datasets_blocked or counters.match_errors:
        click.echo(
            f"[{run_id}] {counters.datasets_blocked} blocked dataset(s), "
            f"{counters.match_errors} match error(s), exiting non-zero",
            err=True,
        )
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


def _run_export(
    run_id: str,
    settings: ImportSettings,
    library_path: str | None,
    db_dsn: str | None,
    game_id: str | None,
    output_path: str | None,
    share_base_url: str,
) -> None:
    conn = None
    if db_dsn:
        conn = psycopg.connect(db_dsn, autocommit=False)
        store: DataStore = PostgresStore(conn)
    else:
        store = LibraryStore.open(Path(library_path))  # type: ignore[arg-type]
    try:
        catalog = store.load_catalog()
        matches = store.list_matches(game_id)
    finally:
        if conn is not None:
            conn.rollback()
            conn.close()

    if not matches:
        click.echo(f"[{run_id}] ERROR: no matches to export", err=True)
        sys.exit(1)

    payload = build_match_export(matches, catalog, settings).to_dict()
    body = json.dumps(payload, indent=2, ensure_ascii=False)
    if output_path:
        Path(output_path).write_text(body, encoding="utf-8")
        click.echo(f"[{run_id}] Exported {len(matches)} match(es) to {output_path}")
    else:
        click.echo(body)

    url = build_share_url(share_base_url, payload, settings)
    if url is None:
        click.echo(f"[{run_id}] Share link omitted: longer than {settings.share_url_max_length} characters")
    else:
        click.echo(f"[{run_id}] Share link: {url}")


if __name__ == "__main__":
    main()
