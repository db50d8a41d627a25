from __future__ import annotations

import io

import pytest
from rich.console import Console

from buildorch.progress.render import LiveProgress, render_bar
from buildorch.progress.tree import ProgressSnapshot, ProgressTree


def test_render_bar_empty() -> None:
    line = render_bar(ProgressSnapshot(0.0, None, False), width=10)
    assert line == " [>         ]   0%"


def test_render_bar_partial_with_description() -> None:
    line = render_bar(ProgressSnapshot(0.5, "Compiling", False), width=10)
    assert line == " [═════>    ]  50% Compiling"


def test_render_bar_full() -> None:
    line = render_bar(ProgressSnapshot(1.0, "Done", True), width=10)
    assert line == " [══════════] 100% Done"


def test_render_bar_rejects_zero_width() -> None:
    with pytest.raises(ValueError):
        render_bar(ProgressSnapshot(0.5, None, False), width=0)


def test_render_bar_does_not_touch_tree() -> None:
    tree = ProgressTree("build")
    tree.add_step(0.5).progress(0.5)
    before = tree.snapshot()
    render_bar(before)
    assert tree.snapshot() == before


def test_live_progress_tracks_tree_snapshots() -> None:
    console = Console(file=io.StringIO(), force_terminal=False, width=80)
    tree = ProgressTree("build")
    with LiveProgress(console) as live:
        tree.subscribe(live)
        step = tree.add_step(1.0, "Compiling")
        step.progress(0.5)
        task = live._progress.tasks[0]
        assert task.completed == pytest.approx(0.5)
        assert task.description == "Compiling"
        step.done()
        assert live._progress.tasks[0].completed == pytest.approx(1.0)
