"""Build orchestration for Baker.

The Baker owns one engine per asset class, wires the manifest resolution
blocks into the template engine and sequences the build:

    clean -> data -> assets -> (styles, scripts) -> templates

Styles and scripts build concurrently because neither reads the other's
manifest; when one fails the other is cancelled so it stops writing output.
Templates start only once both have finished, since pages resolve
their URLs through every other engine's manifest.

Key classes:
- Baker: Runs ``bake`` (one production build) and ``serve`` (build, serve
  and rebuild on change).
- BuildError: A stage failure with its stage name attached.

Key functions:
- load_data: Loads the data directory into the template context.
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import yaml
from watchdog.observers import Observer

from .blocks import ManifestResolver
from .config import BakerConfig
from .console import StageStatus
from .engines.assets import AssetsEngine
from .engines.base import WATCH_DEBOUNCE, ChangeHandler, Engine, RenderError
from .engines.scripts import ScriptEngine
from .engines.styles import StyleEngine
from .engines.templates import TemplateEngine
from .extensions import ExtensionRegistry
from .filters import register_filters
from .images import ResponsiveImages
from .protocols import Bundler
from .server import DevServer
from .utils import Debouncer, ensure_clean_dir, join_prefix

logger = logging.getLogger(__name__)

STAGES = ("clean", "data", "assets", "styles", "scripts", "templates")

DATA_EXTENSIONS = (".yaml", ".yml", ".json", ".csv")


class BuildError(Exception):
    """Error during a build stage, with file context when available.

    Attributes:
        stage: Name of the stage that failed.
        message: Human-readable error message.
        original_error: The original exception that was caught.
        source_path: Path to the source file that caused the error.
        line: One-based line number, when known.
        frame: Source code frame around the error location.
    """

    def __init__(
        self,
        stage: str,
        message: str,
        original_error: Exception | None = None,
        source_path: Path | None = None,
        line: int | None = None,
        frame: str | None = None,
    ):
        self.stage = stage
        self.message = message
        self.original_error = original_error
        self.source_path = source_path
        self.line = line
        self.frame = frame
        location = f" ({source_path})" if source_path else ""
        super().__init__(f"{stage}{location}: {message}")

    @classmethod
    def from_exception(cls, stage: str, exc: Exception) -> BuildError:
        if isinstance(exc, BuildError):
            return exc
        if isinstance(exc, RenderError):
            return cls(
                stage,
                exc.message,
                original_error=exc,
                source_path=exc.source_path,
                line=exc.line,
                frame=exc.frame,
            )
        return cls(stage, str(exc) or type(exc).__name__, original_error=exc)


def _read_data_file(path: Path) -> Any:
    with open(path, encoding="utf-8", newline="" if path.suffix == ".csv" else None) as f:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(f)
        if path.suffix == ".json":
            return json.load(f)
        return list(csv.DictReader(f))


def load_data(data_dir: Path) -> dict[str, Any]:
    """Load structured data files into a nested dictionary.

    ``_data/site.yaml`` becomes ``data["site"]`` and
    ``_data/authors/jane.json`` becomes ``data["authors"]["jane"]``.

    Args:
        data_dir: The data directory.

    Returns:
        The loaded data; empty when the directory does not exist.

    Raises:
        OSError: For any failure other than a missing directory.
    """
    try:
        children = sorted(data_dir.iterdir())
    except FileNotFoundError:
        return {}
    data: dict[str, Any] = {}
    for path in children:
        if path.is_dir():
            data[path.name] = load_data(path)
        elif path.suffix.lower() in DATA_EXTENSIONS:
            data[path.stem] = _read_data_file(path)
    return data


class Baker:
    """Builds a project and serves it during development.

    Attributes:
        config: Resolved project configuration.
        assets: Engine for static assets.
        styles: Engine for Sass stylesheets.
        scripts: Engine for bundled scripts.
        templates: Engine for Jinja pages.
        resolver: Manifest resolution blocks shared by templates and styles.
        extensions: Template tags and filters.
        data: Context loaded from the data directory.
    """

    def __init__(self, config: BakerConfig, bundler: Bundler | None = None):
        self.config = config
        self.assets = AssetsEngine(config)
        self.styles = StyleEngine(config, url_resolver=self._style_url, static_resolver=self._static)
        self.scripts = ScriptEngine(config, bundler=bundler)
        self.resolver = ManifestResolver(config, [self.styles, self.assets], self.scripts)
        self.images = ResponsiveImages(config, self.resolver)

        self.extensions = ExtensionRegistry()
        register_filters(self.extensions)
        self.resolver.register(self.extensions)
        self.images.register(self.extensions)
        for name, handler in config.filters.items():
            self.extensions.filter(name, handler)
        for name, handler in config.tags.items():
            self.extensions.tag(name, handler)
        self.templates = TemplateEngine(config, self.extensions)

        self.data: dict[str, Any] = {}
        self.status = StageStatus(STAGES)
        self.server: DevServer | None = None
        self.debug = False
        self._listeners: dict[str, list[Callable[..., Any]]] = {}
        self._observers: list[Observer] = []

    @property
    def engines(self) -> list[Engine]:
        return [self.assets, self.styles, self.scripts, self.templates]

    def _style_url(self, relative: str) -> str | None:
        output = self.assets.manifest.get(relative)
        return join_prefix(self.config.path_prefix, output) if output else None

    def _static(self, file: str) -> str:
        return self.resolver.static(file)

    # lifecycle events

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register a callback for ``bake:start`` or ``bake:end``."""
        self._listeners.setdefault(event, []).append(callback)

    def emit(self, event: str, **payload: Any) -> None:
        for callback in self._listeners.get(event, []):
            callback(**payload)

    # stages

    async def clean(self) -> None:
        await asyncio.to_thread(ensure_clean_dir, self.config.output)

    async def load_data(self) -> dict[str, Any]:
        self.data = await asyncio.to_thread(load_data, self.config.data)
        self.templates.data = self.data
        return self.data

    async def _stage(self, stage: str, step: Callable[[], Any]) -> Any:
        logger.debug("stage %s: start", stage)
        try:
            result = await step()
        except Exception as exc:
            raise BuildError.from_exception(stage, exc) from exc
        logger.debug("stage %s: done", stage)
        return result

    async def _together(self, *steps: Awaitable[Any]) -> None:
        """Run stages concurrently; the first failure cancels the others."""
        tasks = [asyncio.ensure_future(step) for step in steps]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def bake(self) -> None:
        """Run one complete build.

        Raises:
            BuildError: If any stage fails; later stages do not run.
        """
        self.emit("bake:start", baker=self)
        self.resolver.clear()
        await self._stage("clean", self.clean)
        await self._stage("data", self.load_data)
        await self._stage("assets", self.assets.build)
        await self._together(
            self._stage("styles", self.styles.build),
            self._stage("scripts", self.scripts.build),
        )
        await self._stage("templates", self.templates.build)
        self.emit("bake:end", baker=self)

    # serve

    async def _capture(self, stage: str, step: Callable[[], Any]) -> bool:
        try:
            await self._stage(stage, step)
        except BuildError as exc:
            self.status.fail(stage, exc)
            return False
        self.status.succeed(stage)
        return True

    async def initial_build(self) -> None:
        """Run the bake sequence, recording each stage's failure separately."""
        self.emit("bake:start", baker=self)
        self.resolver.clear()
        await self._capture("clean", self.clean)
        await self._capture("data", self.load_data)
        await self._capture("assets", self.assets.build)
        await asyncio.gather(
            self._capture("styles", self.styles.build),
            self._capture("scripts", self.scripts.build),
        )
        await self._capture("templates", self.templates.build)
        self.emit("bake:end", baker=self)

    def render_status(self) -> None:
        url = self.server.url if self.server is not None else None
        self.status.render(url, self.config.output, self.config.input, clear=not self.debug)

    async def _reload(self, engine: Engine) -> None:
        if self.server is None:
            return
        if engine is self.styles:
            for output in sorted(self.styles.manifest.values()):
                await self.server.reload(join_prefix(self.config.path_prefix, output))
        else:
            await self.server.reload()

    async def _refresh_styles(self) -> None:
        # stylesheets embed hashed asset URLs
        async with self.styles.lock:
            await self._capture("styles", self.styles.build)

    async def _refresh_templates(self) -> None:
        # hashed names change with content, so pages must be re-rendered
        async with self.templates.lock:
            await self._capture("templates", self.templates.build)

    def engine_changed(self, engine: Engine) -> Callable[[Exception | None, Any], Any]:
        """Build the watch callback for an engine."""

        async def on_change(error: Exception | None, result: Any) -> None:
            self.resolver.clear()
            if error is not None:
                self.status.fail(engine.name, BuildError.from_exception(engine.name, error))
            else:
                self.status.succeed(engine.name)
                if self.config.is_production and engine is not self.templates:
                    if engine is self.assets:
                        await self._refresh_styles()
                        self.resolver.clear()
                    await self._refresh_templates()
                await self._reload(engine)
            self.render_status()

        return on_change

    async def data_changed(self, batch: set) -> None:
        """Reload the data context and re-render every page."""
        self.resolver.clear()
        if await self._capture("data", self.load_data):
            await self._capture("templates", self.templates.build)
        if self.server is not None and self.status.ok:
            await self.server.reload()
        self.render_status()

    def watch_data(self) -> Observer:
        loop = asyncio.get_running_loop()
        data_dir = self.config.data
        # data-triggered rebuilds queue behind template rebuilds
        debouncer = Debouncer(self.data_changed, delay=WATCH_DEBOUNCE, lock=self.templates.lock)
        handler = ChangeHandler(
            lambda path: data_dir in path.resolve().parents, loop, debouncer, label="data"
        )
        observer = Observer()
        observer.schedule(handler, str(self.config.input), recursive=True)
        observer.start()
        return observer

    def watch(self) -> list[Observer]:
        """Attach watchers to every engine and the data directory."""
        self._observers = [engine.watch(self.engine_changed(engine)) for engine in self.engines]
        self._observers.append(self.watch_data())
        return self._observers

    def stop_watching(self) -> None:
        for observer in self._observers:
            observer.stop()
        for observer in self._observers:
            observer.join()
        self._observers = []

    async def serve(self, port: int = 3000, ws_port: int | None = None) -> None:
        """Build, serve output and input, and rebuild on change until cancelled."""
        await self.initial_build()
        self.server = DevServer([self.config.output, self.config.input], port, ws_port)
        await self.server.start()
        self.watch()
        self.render_status()
        try:
            await asyncio.Event().wait()
        finally:
            self.stop_watching()
            await self.server.stop()
