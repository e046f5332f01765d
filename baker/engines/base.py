"""Base engine for Baker.

Every asset class (assets, styles, scripts, templates) is handled by a
subclass of Engine. The base class owns the shared contract: file discovery,
dependency tracking, manifest storage, writing output and incremental
watch-and-rebuild. Subclasses override ``render`` and ``get_output_path``, and
may replace ``build``/``rebuild`` entirely when an external tool owns its own
output (see ScriptEngine).

Key classes:
- Engine: Base class for all engines.
- RenderError: Error raised when a single file fails to render.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from pathlib import Path, PurePosixPath
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..config import BakerConfig
from ..utils import Debouncer, glob_match, is_internal_path, read_bytes, to_posix, write_file

logger = logging.getLogger(__name__)

#: Seconds of quiet before a burst of file events triggers a rebuild.
WATCH_DEBOUNCE = 0.2

# Event kinds that change which files exist and so need a full build.
_STRUCTURAL_EVENTS = {"created", "deleted", "moved"}


class RenderError(Exception):
    """Error raised when a source file fails to render.

    Attributes:
        source_path: Path to the source file that caused the error.
        message: Human-readable error message.
        line: One-based line number, when known.
        column: One-based column, when known.
        frame: Source code frame around the error location.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        line: int | None = None,
        column: int | None = None,
        frame: str | None = None,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.line = line
        self.column = column
        self.frame = frame
        self.original_error = original_error
        location = f":{line}" if line else ""
        super().__init__(f"{source_path}{location}: {message}")


class Engine:
    """Base class for the build engines.

    Attributes:
        config: Resolved project configuration.
        input: Source root the file patterns are relative to.
        output: Destination root written paths are relative to.
        file_patterns: Globs describing the files this engine builds.
        watch_patterns: Globs describing the files worth watching, when wider
            than ``file_patterns`` (Sass partials, for instance).
        ignore_patterns: Globs excluded from discovery and watching.
        manifest: Input-relative path to output path (or record).
        complete: True once the last full build finished. Incremental
            rebuilds patch a complete manifest and fall back to a full
            build otherwise.
        lock: Serialises builds triggered by the watcher.
    """

    #: Human readable stage name used in status output.
    name = "engine"

    def __init__(self, config: BakerConfig):
        self.config = config
        self.input = config.input
        self.output = config.output
        self.file_patterns: list[str] = []
        self.watch_patterns: list[str] | None = None
        self.ignore_patterns: list[str] = []
        self.manifest: dict[str, Any] = {}
        self.complete = False
        self._dependencies: dict[Path, set[Path]] = {}
        self.lock = asyncio.Lock()

    # discovery

    def is_ignored(self, path: Path) -> bool:
        """Check whether an absolute path is excluded from this engine."""
        try:
            relative = PurePosixPath(to_posix(path, self.input))
        except ValueError:
            return True
        if is_internal_path(relative):
            return True
        if self.output in path.parents:
            return True
        return any(glob_match(str(relative), pat) for pat in self.ignore_patterns)

    def accepts(self, path: Path) -> bool:
        """Extra per-file filter applied after the glob. Defaults to True."""
        return True

    def find_files(self) -> list[Path]:
        """Expand the file patterns against the input directory.

        Returns:
            Sorted list of absolute file paths. The list is rebuilt on every
            call, so the result always reflects the current tree.
        """
        found: set[Path] = set()
        for pattern in self.file_patterns:
            for path in self.input.glob(pattern):
                if path.is_file() and not self.is_ignored(path) and self.accepts(path):
                    found.add(path.resolve())
        return sorted(found)

    # dependency tracking

    def add_dependency(self, file: Path, importer: Path | None = None) -> None:
        """Record that ``file`` affects the output of ``importer``.

        Importers accumulate; a file included by several pages keeps every one
        of them.

        Args:
            file: Absolute path of the dependency.
            importer: Absolute path of the top-level input that uses it.
                Defaults to ``file`` itself.
        """
        file = Path(file).resolve()
        importer = Path(importer).resolve() if importer is not None else file
        self._dependencies.setdefault(file, set()).add(importer)

    @property
    def dependencies(self) -> set[Path]:
        """Every file currently known to affect this engine's output."""
        return set(self._dependencies)

    def get_dependencies(self) -> list[Path]:
        """Get all the unique dependencies for this engine as a sorted list."""
        return sorted(self._dependencies)

    def importers_of(self, file: Path) -> set[Path]:
        """Return the top-level inputs that depend on ``file``."""
        return set(self._dependencies.get(Path(file).resolve(), ()))

    def affected_files(self, changed: Iterable[Path]) -> set[Path] | None:
        """Work out which top-level inputs a set of changes touches.

        Returns:
            The affected inputs, or None when a changed file is unknown and
            only a full build can be trusted.
        """
        affected: set[Path] = set()
        for path in changed:
            importers = self.importers_of(path)
            if not importers:
                return None
            affected |= importers
        return affected

    def _forget_importers(self, importers: set[Path]) -> None:
        for file in list(self._dependencies):
            remaining = self._dependencies[file] - importers
            if remaining:
                self._dependencies[file] = remaining
            else:
                del self._dependencies[file]

    def invalidate(self) -> None:
        """Clear out the manifest and dependencies on this engine."""
        self.manifest = {}
        self.complete = False
        self._dependencies = {}

    # rendering

    async def render(self, file: Path) -> bytes | str:
        """Render a single input file. Defaults to the file's bytes.

        Args:
            file: Absolute path of the input.

        Returns:
            The content to write.
        """
        return await read_bytes(file)

    def get_output_path(self, relative: str, content: bytes | str) -> str:
        """Decide where a rendered file is written. Defaults to ``relative``.

        Args:
            relative: POSIX input path relative to ``input``.
            content: Rendered content, for engines that hash it.

        Returns:
            POSIX output path relative to ``output``.
        """
        return relative

    async def process_file(self, file: Path) -> tuple[str, str]:
        """Render, place and write a single input.

        Returns:
            Tuple of (input-relative path, output-relative path).
        """
        content = await self.render(file)
        relative = to_posix(file, self.input)
        output_path = self.get_output_path(relative, content)
        await write_file(self.output / output_path, content)
        logger.debug("%s: %s -> %s", self.name, relative, output_path)
        return relative, output_path

    async def build(self) -> dict[str, Any]:
        """Discover, render and write every input, then publish the manifest.

        Files render concurrently. If any of them fails the exception
        propagates and the manifest from this call must not be trusted.

        Returns:
            The new manifest.
        """
        self.invalidate()
        files = self.find_files()
        results = await asyncio.gather(*(self.process_file(f) for f in files))
        self.manifest = dict(results)
        self.complete = True
        return self.manifest

    async def rebuild(self, changed: Iterable[Path]) -> dict[str, Any]:
        """Re-render only the inputs affected by ``changed``.

        Falls back to a full build when the last build did not finish or the
        dependency records cannot say which inputs are affected. A failed
        rebuild marks the manifest incomplete, so the next change rebuilds
        everything.
        """
        affected = self.affected_files(changed) if self.complete else None
        if affected is None:
            return await self.build()
        affected = {f for f in affected if f.exists() and not self.is_ignored(f)}
        self._forget_importers(affected)
        try:
            results = await asyncio.gather(*(self.process_file(f) for f in sorted(affected)))
        except Exception:
            self.complete = False
            raise
        self.manifest.update(dict(results))
        return self.manifest

    # watching

    def is_watched(self, path: Path) -> bool:
        """Check whether a changed path is relevant to this engine."""
        path = path.resolve()
        if path in self._dependencies:
            return True
        if self.is_ignored(path):
            return False
        relative = to_posix(path, self.input)
        patterns = self.watch_patterns or self.file_patterns
        return any(glob_match(relative, pattern) for pattern in patterns)

    async def handle_changes(
        self,
        batch: set[tuple[str, Path]],
        on_change: Callable[[Exception | None, Any], Any],
    ) -> None:
        """Rebuild for one debounced batch of events and report the outcome."""
        kinds = {kind for kind, _ in batch}
        changed = {path for _, path in batch}
        try:
            if kinds & _STRUCTURAL_EVENTS:
                result = await self.build()
            else:
                result = await self.rebuild(changed)
        except Exception as exc:
            logger.debug("%s: rebuild failed: %s", self.name, exc)
            outcome = on_change(exc, None)
        else:
            outcome = on_change(None, result)
        if inspect.isawaitable(outcome):
            await outcome

    def watch(
        self,
        on_change: Callable[[Exception | None, Any], Any],
        observer: Observer | None = None,
    ) -> Observer:
        """Watch the input tree and rebuild on change.

        Must be called from inside the running event loop. Filesystem events
        arrive on watchdog's thread and are handed to the loop, debounced, and
        processed one batch at a time.

        Args:
            on_change: Called as ``on_change(error, result)`` once per batch.
                May be a coroutine function.
            observer: Optional observer to schedule on; a new one is created
                and started otherwise.

        Returns:
            The observer, so the caller can stop it.
        """
        loop = asyncio.get_running_loop()

        async def flush(batch: set) -> None:
            await self.handle_changes(batch, on_change)

        debouncer = Debouncer(flush, delay=WATCH_DEBOUNCE, lock=self.lock)
        handler = ChangeHandler(self.is_watched, loop, debouncer, label=self.name)
        started = observer is not None
        observer = observer or Observer()
        observer.schedule(handler, str(self.input), recursive=True)
        if not started:
            observer.start()
        return observer


class ChangeHandler(FileSystemEventHandler):
    """Forward relevant filesystem events to a debouncer on the event loop.

    Attributes:
        accept: Decides, on the loop, whether a changed path is relevant.
        loop: The loop the debouncer lives on.
        debouncer: Receives ``(event kind, path)`` items.
        label: Name used in debug logging.
    """

    def __init__(
        self,
        accept: Callable[[Path], bool],
        loop: asyncio.AbstractEventLoop,
        debouncer: Debouncer,
        label: str = "watch",
    ):
        super().__init__()
        self.accept = accept
        self.loop = loop
        self.debouncer = debouncer
        self.label = label

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in (
            "created",
            "modified",
            "deleted",
            "moved",
        ):
            return
        paths = [Path(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(Path(dest))
        for path in paths:
            self.loop.call_soon_threadsafe(self.dispatch_change, event.event_type, path)

    def dispatch_change(self, kind: str, path: Path) -> None:
        """Runs on the event loop."""
        if self.accept(path):
            logger.debug("%s: %s %s", self.label, kind, path)
            self.debouncer.push((kind, path.resolve()))
