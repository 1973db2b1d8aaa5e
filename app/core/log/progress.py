"""Rich spinners for long-running ingestion jobs."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn


class ProgressManager:
    """Create spinners that share the logging console."""

    def __init__(self) -> None:
        self._console: Console = Console(stderr=True)
        self.enabled = True

    def use_console(self, console: Console) -> None:
        self._console = console

    def reset_console(self) -> None:
        self._console = Console(stderr=True)

    @contextmanager
    def spinner(self, description: str) -> Iterator[None]:
        progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}[/]"),
            TimeElapsedColumn(),
            console=self._console,
            transient=True,
            disable=not self.enabled,
        )
        with progress:
            task_id = progress.add_task(description, total=None)
            yield
            progress.update(task_id, description=f"{description} done")


progress_manager = ProgressManager()
