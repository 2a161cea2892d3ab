"""boardgame_etl.shared

Shared utilities used by the import pipeline, the commit engine and the CLI.
Includes the exception taxonomy, run counters, and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from boardgame_etl.pipeline import MappingTables


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportPipelineError(Exception):
    """Base class for errors surfaced to the user at the input or commit step."""


class DecodeError(ImportPipelineError):
    """Raised when a payload is unreadable by every decoding strategy."""


class UnsupportedSourceError(DecodeError):
    """Raised for a recognizable third-party link that cannot be read directly."""


class NoDatasetsFound(ImportPipelineError):
    """Raised when a payload decoded but neither native nor foreign shape matched."""


class PartialCommitError(ImportPipelineError):
    """Raised when entity creation fails part-way through a commit.

    Entities created before the failure stay in the store.  ``tables`` holds
    the mapping tables with those entities rewritten to UseExisting, so a
    retry does not create them a second time.
    """

    def __init__(self, message: str, counters: CommitCounters, tables: MappingTables) -> None:
        super().__init__(message)
        self.counters = counters
        self.tables = tables


# ---------------------------------------------------------------------------
# CommitCounters
# ---------------------------------------------------------------------------

@dataclass
class CommitCounters:
    source_game_title: str = ""
    target_game_id: str | None = None
    games_created: int = 0
    extensions_created: int = 0
    players_created: int = 0
    locations_registered: int = 0
    matches_read: int = 0
    matches_inserted: int = 0
    match_errors: int = 0
    extension_refs_dropped: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# ImportRunCounters
# ---------------------------------------------------------------------------

@dataclass
class ImportRunCounters:
    datasets_detected: int = 0
    datasets_selected: int = 0
    datasets_committed: int = 0
    datasets_blocked: int = 0
    commits: list[CommitCounters] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def matches_inserted(self) -> int:
        return sum(c.matches_inserted for c in self.commits)

    @property
    def match_errors(self) -> int:
        return sum(c.match_errors for c in self.commits)

    def to_dict(self) -> dict[str, Any]:
        return {
            "datasets_detected": self.datasets_detected,
            "datasets_selected": self.datasets_selected,
            "datasets_committed": self.datasets_committed,
            "datasets_blocked": self.datasets_blocked,
            "matches_inserted": self.matches_inserted,
            "match_errors": self.match_errors,
            "commits": [c.to_dict() for c in self.commits],
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Report writers
# ---------------------------------------------------------------------------

def build_commit_report(ctrs: CommitCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        f"Match Import Report: {ctrs.source_game_title}",
        f"  dry_run: {dry_run}",
        f"  target game id:                 {ctrs.target_game_id}",
        "=" * 60,
        f"  games created:                  {ctrs.games_created}",
        f"  extensions created:             {ctrs.extensions_created}",
        f"  players created:                {ctrs.players_created}",
        f"  locations registered:           {ctrs.locations_registered}",
        f"  matches read:                   {ctrs.matches_read}",
        f"  matches inserted:               {ctrs.matches_inserted}",
        f"  extension refs dropped:         {ctrs.extension_refs_dropped}",
        f"Match insert errors:              {ctrs.match_errors}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    counters: ImportRunCounters,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
