"""
Transfer progress reporting.

Progress is a side channel: transfer loops report bytes moved and never look
at the result. A known total renders as a byte-counting bar, an unknown total
(None or negative) as a spinner with a running byte count.
"""
from __future__ import annotations

from typing import Callable, ContextManager, Optional, Protocol

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    FileSizeColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

__all__ = ["ProgressSink", "TransferProgress", "NullProgress", "ProgressFactory", "progress_factory"]


class ProgressSink(Protocol):
    def advance(self, n: int) -> None:
        ...


# (description, total or None) -> context manager yielding a sink
ProgressFactory = Callable[[str, Optional[int]], ContextManager[ProgressSink]]


class TransferProgress:
    """Rich progress bar for a single transfer, written to stderr."""

    def __init__(self, description: str, total: Optional[int], console: Optional[Console] = None):
        self.description = description
        self.total = total if total is not None and total >= 0 else None
        if self.total is None:
            columns = (
                SpinnerColumn(),
                TextColumn("{task.description}"),
                FileSizeColumn(),
                TransferSpeedColumn(),
            )
        else:
            columns = (
                TextColumn("{task.description}"),
                BarColumn(bar_width=30),
                DownloadColumn(),
                TransferSpeedColumn(),
                TimeRemainingColumn(),
            )
        self._progress = Progress(*columns, console=console or Console(stderr=True))
        self._task: Optional[TaskID] = None

    def __enter__(self) -> TransferProgress:
        self._progress.start()
        self._task = self._progress.add_task(self.description, total=self.total)
        return self

    def advance(self, n: int) -> None:
        if self._task is not None:
            self._progress.update(self._task, advance=n)

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._progress.stop()


class NullProgress:
    """Progress sink that reports nothing (silent mode, tests)."""

    def __init__(self, description: str = "", total: Optional[int] = None):
        self.description = description
        self.total = total

    def __enter__(self) -> NullProgress:
        return self

    def advance(self, n: int) -> None:
        pass

    def __exit__(self, exc_type, exc_val, exc_tb):
        pass


def progress_factory(silent: bool = False) -> ProgressFactory:
    """Pick the progress implementation for the current output mode."""
    return NullProgress if silent else TransferProgress
