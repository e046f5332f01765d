"""Console reporting for Baker.

Everything the user reads in the terminal goes through click: the bake
failure banner, error messages with their code frames, the serve
instructions and the status panel that serve redraws after every change.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import click

FAILURE_BANNER = "Build failed. Here's what possibly went wrong:"
SUCCESS_MESSAGE = "The build was a success!"


def clear_console() -> None:
    click.clear()


def _display_path(path: Path | None, root: Path | None) -> str | None:
    if path is None:
        return None
    if root is not None:
        try:
            return str(Path(path).relative_to(root))
        except ValueError:
            pass
    return str(path)


def log_error_message(error: Exception, root: Path | None = None) -> None:
    """Print one error with its location and code frame, when known."""
    stage = getattr(error, "stage", None)
    message = getattr(error, "message", None) or str(error)
    heading = f"[{stage}] {message}" if stage else message
    click.echo(click.style(heading, fg="red"), err=True)
    location = _display_path(getattr(error, "source_path", None), root)
    line = getattr(error, "line", None)
    if location:
        suffix = f":{line}" if line else ""
        click.echo(click.style(f"  File: {location}{suffix}", fg="yellow"), err=True)
    frame = getattr(error, "frame", None)
    if frame:
        click.echo(frame, err=True)
    click.echo("", err=True)


def on_error(errors: Iterable[Exception], root: Path | None = None) -> None:
    """Print the failure banner followed by every error."""
    click.echo(click.style(FAILURE_BANNER, fg="red", bold=True), err=True)
    click.echo("", err=True)
    for error in errors:
        log_error_message(error, root)


def on_success() -> None:
    click.echo(click.style(SUCCESS_MESSAGE, fg="green", bold=True))


def print_instructions(url: str, output: Path) -> None:
    """Print where the dev server is listening."""
    click.echo(click.style("Baker is serving your site", bold=True))
    click.echo(f"  Local:  {click.style(url, fg='cyan')}")
    click.echo(f"  Output: {output}")
    click.echo("Press Ctrl+C to stop.")


class StageStatus:
    """Tracks the error state of every build stage while serving.

    Each stage succeeds or fails independently, so a broken stylesheet does
    not hide a broken template.

    Attributes:
        stages: Stage names, in display order.
        errors: Stage name to its current error.
    """

    def __init__(self, stages: Iterable[str]):
        self.stages = list(stages)
        self.errors: dict[str, Exception] = {}

    def fail(self, stage: str, error: Exception) -> None:
        self.errors[stage] = error

    def succeed(self, stage: str) -> None:
        self.errors.pop(stage, None)

    @property
    def ok(self) -> bool:
        return not self.errors

    def render(
        self,
        url: str | None = None,
        output: Path | None = None,
        root: Path | None = None,
        clear: bool = True,
    ) -> None:
        """Redraw the panel."""
        if clear:
            clear_console()
        if url is not None and output is not None:
            print_instructions(url, output)
            click.echo("")
        if self.ok:
            on_success()
            return
        on_error((self.errors[stage] for stage in self.stages if stage in self.errors), root)
