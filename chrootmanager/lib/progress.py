from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)


class DownloadProgress:
    """Console bar fed by download_file's (done, total) callback.

    Nothing is drawn until the first chunk arrives, so a cached stage3 or a
    dry run prints nothing. A total of 0 means the server sent no length.
    """

    def __init__(self, description: str = "stage3", *, console: Optional[Console] = None) -> None:
        self.description = description
        self._progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console or Console(stderr=True),
        )
        self._task: Optional[TaskID] = None

    def __call__(self, done: int, total: int) -> None:
        if self._task is None:
            self._progress.start()
            self._task = self._progress.add_task(self.description, total=total or None)
        self._progress.update(self._task, completed=done, total=total or None)

    @property
    def completed(self) -> int:
        if self._task is None:
            return 0
        return int(self._progress.tasks[0].completed)

    @property
    def total(self) -> Optional[int]:
        if self._task is None:
            return None
        total = self._progress.tasks[0].total
        return None if total is None else int(total)

    def close(self) -> None:
        if self._task is not None:
            self._progress.stop()

    def __enter__(self) -> "DownloadProgress":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
