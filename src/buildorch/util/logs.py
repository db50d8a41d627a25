from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(console: Console, *, verbose: bool = False) -> None:
    """Route all records through rich so log lines and the progress bar share one console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[
            RichHandler(
                console=console,
                show_time=False,
                show_path=False,
                markup=False,
                rich_tracebacks=verbose,
            )
        ],
        force=True,
    )
