from __future__ import annotations

from datetime import datetime

from analysismgr.summary import RunSummary


def test_entries_are_kept_and_written(tmp_path):
    path = tmp_path / "logs" / "AnalysisSummary.txt"
    summary = RunSummary(path, clock=lambda: datetime(2024, 3, 1, 8, 30, 0))

    summary.add("Loaded ToolRunner: DemoToolRunner from plugins/demo.py")
    summary.add("Unable to load Resourcer for MASIC: descriptor missing")

    assert len(summary) == 2
    assert list(summary) == summary.entries
    assert path.read_text(encoding="utf-8").splitlines() == [
        "2024-03-01 08:30:00\tLoaded ToolRunner: DemoToolRunner from plugins/demo.py",
        "2024-03-01 08:30:00\tUnable to load Resourcer for MASIC: descriptor missing",
    ]


def test_memory_only_summary(tmp_path):
    summary = RunSummary()
    summary.add("entry")

    assert summary.entries == ["entry"]
    assert list(tmp_path.iterdir()) == []
