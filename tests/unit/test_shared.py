"""Unit tests for shared: counters and report writers."""

from __future__ import annotations

import json

from boardgame_etl.shared import (
    CommitCounters,
    ImportRunCounters,
    build_commit_report,
    write_run_report,
)


class TestCounters:
    def test_commit_counters_cap_warnings(self):
        ctrs = CommitCounters(source_game_title="Wingspan")
        ctrs.warnings = [f"w{i}" for i in range(80)]
        d = ctrs.to_dict()
        assert len(d["warnings"]) == 50
        assert d["source_game_title"] == "Wingspan"

    def test_run_counters_sum_commits(self):
        run = ImportRunCounters(commits=[
            CommitCounters(matches_inserted=3, match_errors=1),
            CommitCounters(matches_inserted=2),
        ])
        assert run.matches_inserted == 5
        assert run.match_errors == 1
        assert len(run.to_dict()["commits"]) == 2


class TestReports:
    def test_commit_report_lists_warnings(self):
        ctrs = CommitCounters(source_game_title="Azul", matches_read=2, matches_inserted=1, match_errors=1)
        ctrs.warnings = [f"match {i}: boom" for i in range(25)]
        text = build_commit_report(ctrs, dry_run=True)
        assert "Match Import Report: Azul" in text
        assert "dry_run: True" in text
        assert "Warnings (25):" in text
        assert "... and 5 more" in text

    def test_write_run_report(self, tmp_path):
        path = write_run_report(
            "run-1", "2024-03-01T00:00:00", "import", False,
            {"payload_path": "export.json"},
            ImportRunCounters(datasets_detected=2),
            reports_dir=tmp_path / "reports",
        )
        assert path == tmp_path / "reports" / "run-1.json"
        report = json.loads(path.read_text())
        assert report["payload_path"] == "export.json"
        assert report["counters"]["datasets_detected"] == 2
        assert "finished_at" in report
