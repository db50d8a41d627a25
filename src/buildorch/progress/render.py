from __future__ import annotations

from types import TracebackType

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn

from buildorch.progress.tree import ProgressSnapshot

_FILL = "═"
_HEAD = ">"


def render_bar(snapshot: ProgressSnapshot, width: int = 50) -> str:
    """Render a snapshot as a single text line without touching the tree."""
    if width < 1:
        raise ValueError("width must be >= 1")
    fraction = min(1.0, max(0.0, snapshot.fraction))
    filled = min(width, round(fraction * width))
    if filled < width:
        bar = _FILL * filled + _HEAD + " " * (width - filled - 1)
    else:
        bar = _FILL * width
    percent = f"{fraction:.0%}"
    line = f" [{bar}] {percent:>4}"
    if snapshot.description:
        line = f"{line} {snapshot.description}"
    return line


class LiveProgress:
    """Mirror progress snapshots onto a rich progress bar."""

    def __init__(self, console: Console, *, transient: bool = False) -> None:
        self._progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=transient,
        )
        self._task_id: TaskID | None = None

    def __enter__(self) -> LiveProgress:
        self._progress.start()
        self._task_id = self._progress.add_task("", total=1.0)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._progress.stop()

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        if self._task_id is None:
            return
        self._progress.update(
            self._task_id,
            completed=snapshot.fraction,
            description=snapshot.description or "",
        )
