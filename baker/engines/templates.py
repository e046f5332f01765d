"""Template engine for Baker.

This module uses Jinja2 to render every ``.html`` and ``.jinja`` page under
the input directory into the output tree with pretty URLs, plus any pages a
project's ``create_pages`` callback asks for.

Templates are loaded from the layouts directory first and then the input
directory. Caching is disabled so every ``extends``/``include``/``import``
goes through the loader, which records the file as a dependency of the page
being rendered. Pages render concurrently, so the page is tracked per task in
a context variable rather than on the engine.

Key classes:
- TemplateEngine: Engine for Jinja pages.
- TrackingLoader: FileSystemLoader that records dependencies.
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import posixpath
import traceback
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    Template,
    TemplateNotFound,
    TemplateSyntaxError,
    select_autoescape,
)

from ..config import BakerConfig
from ..extensions import ExtensionRegistry
from ..utils import (
    code_frame,
    join_prefix,
    join_root_url,
    pretty_output_path,
    read_text,
    to_posix,
    url_for_output,
    write_file,
)
from .base import Engine, RenderError

TEMPLATE_EXTENSIONS = (".html", ".jinja")

# Called with every template file the loader reads for the current render.
_record_dependency: contextvars.ContextVar[Callable[[Path], None] | None] = (
    contextvars.ContextVar("baker_record_dependency", default=None)
)


class TrackingLoader(FileSystemLoader):
    """FileSystemLoader that reports every file it reads."""

    def get_source(self, environment: Environment, template: str):
        source, filename, uptodate = super().get_source(environment, template)
        record = _record_dependency.get()
        if record is not None:
            record(Path(filename).resolve())
        return source, filename, uptodate


def _format_error_message(exc: Exception) -> str:
    """Format an exception into a user-friendly error message.

    Args:
        exc: The exception to format.

    Returns:
        A human-readable error message.
    """
    error_type = type(exc).__name__
    error_msg = str(exc)

    if error_type == "UndefinedError":
        return f"Undefined variable: {error_msg}"
    if error_type == "TemplateNotFound":
        return f"Template not found: {error_msg}"
    if error_type == "TypeError":
        return f"Type error: {error_msg}"
    if error_type == "AttributeError":
        return f"Attribute error: {error_msg}"
    if error_type in ("MissingReferenceError", "ConfigurationError"):
        return error_msg

    return f"{error_type}: {error_msg}"


def _template_location(exc: Exception) -> tuple[Path, int] | None:
    """Find the innermost template frame in a rendering traceback.

    Jinja rewrites tracebacks so that frames inside templates point at the
    template file and line.
    """
    for frame in reversed(traceback.extract_tb(exc.__traceback__)):
        path = Path(frame.filename)
        if path.suffix in TEMPLATE_EXTENSIONS and path.is_file():
            return path, frame.lineno
    return None


def dynamic_output_path(output: str) -> str:
    """Normalise the output path of a dynamic page.

    Examples:
        >>> dynamic_output_path("/blog/hello/")
        'blog/hello/index.html'

        >>> dynamic_output_path("feed.xml")
        'feed.xml'
    """
    directory = output.endswith("/") or output.strip("/") == ""
    path = posixpath.normpath(output.strip("/") or ".")
    if path == ".." or path.startswith("../"):
        raise ValueError(f"Dynamic page output {output!r} is outside the output directory")
    if directory:
        return "index.html" if path == "." else f"{path}/index.html"
    return path


class TemplateEngine(Engine):
    """Engine for Jinja templates.

    Attributes:
        env: Jinja2 environment, in async mode.
        data: Global context shared by every page, loaded from the data
            directory by the orchestrator.
        pages: Output path to template name for the dynamic pages of the last
            build.
    """

    name = "templates"

    def __init__(self, config: BakerConfig, extensions: ExtensionRegistry | None = None):
        super().__init__(config)
        self.file_patterns = [f"**/*{ext}" for ext in TEMPLATE_EXTENSIONS]
        self.ignore_patterns = ["node_modules/**"]
        for directory in (config.layouts, config.data, config.output, config.assets):
            try:
                self.ignore_patterns.append(f"{to_posix(directory, config.input)}/**")
            except ValueError:
                continue
        self.data: dict[str, Any] = {}
        self.pages: dict[str, str] = {}
        self._dynamic_dependencies: dict[Path, set[str]] = {}
        self.env = Environment(
            loader=TrackingLoader([str(config.layouts), str(config.input)]),
            autoescape=select_autoescape(["html", "xml", "jinja"]),
            undefined=StrictUndefined,
            enable_async=True,
            cache_size=0,
        )
        if extensions is not None:
            self.install_extensions(extensions)

    def install_extensions(self, extensions: ExtensionRegistry) -> None:
        extensions.install(self.env)

    def invalidate(self) -> None:
        super().invalidate()
        self.pages = {}
        self._dynamic_dependencies = {}

    def is_watched(self, path: Path) -> bool:
        return path.resolve() in self._dynamic_dependencies or super().is_watched(path)

    def page_context(self, relative: str, output_path: str) -> dict[str, Any]:
        """Build the ``page`` value every template sees."""
        url = join_prefix(self.config.path_prefix, url_for_output(output_path))
        return {
            "input": relative,
            "output": output_path,
            "url": url,
            "absolute_url": join_root_url(self.config.domain, url) if self.config.domain else None,
        }

    def _compile(self, file: Path, source: str) -> Template:
        relative = to_posix(file, self.input)
        code = self.env.compile(source, name=relative, filename=str(file))
        return self.env.template_class.from_code(
            self.env, code, self.env.make_globals(None), None
        )

    def _syntax_error(self, exc: TemplateSyntaxError, file: Path) -> RenderError:
        source_path = Path(exc.filename).resolve() if exc.filename else file
        source = exc.source
        if source is None and source_path.is_file():
            source = source_path.read_text(encoding="utf-8")
        frame = code_frame(source, exc.lineno) if source else None
        return RenderError(
            source_path,
            f"Syntax error: {exc.message}",
            line=exc.lineno,
            frame=frame,
            original_error=exc,
        )

    def _runtime_error(self, exc: Exception, file: Path) -> RenderError:
        location = _template_location(exc)
        if location is None:
            return RenderError(file, _format_error_message(exc), original_error=exc)
        source_path, line = location
        return RenderError(
            source_path,
            _format_error_message(exc),
            line=line,
            frame=code_frame(source_path.read_text(encoding="utf-8"), line),
            original_error=exc,
        )

    async def _render_template(
        self,
        load: Callable[[], Template],
        context: dict[str, Any],
        file: Path,
        record: Callable[[Path], None],
    ) -> str:
        token = _record_dependency.set(record)
        try:
            try:
                template = load()
            except TemplateSyntaxError as exc:
                raise self._syntax_error(exc, file) from exc
            except TemplateNotFound as exc:
                raise RenderError(file, _format_error_message(exc), original_error=exc) from exc
            try:
                return await template.render_async(context)
            except TemplateSyntaxError as exc:
                raise self._syntax_error(exc, file) from exc
            except RenderError:
                raise
            except Exception as exc:
                raise self._runtime_error(exc, file) from exc
        finally:
            _record_dependency.reset(token)

    async def render(self, file: Path) -> str:
        source = await read_text(file)
        relative = to_posix(file, self.input)
        self.add_dependency(file)
        context = {
            **self.data,
            "page": self.page_context(relative, self.get_output_path(relative, "")),
        }
        return await self._render_template(
            lambda: self._compile(file, source),
            context,
            file,
            lambda dependency: self.add_dependency(dependency, file),
        )

    def get_output_path(self, relative: str, content: bytes | str) -> str:
        return pretty_output_path(relative)

    # dynamic pages

    async def collect_dynamic_pages(self) -> list[tuple[str, str, dict[str, Any]]]:
        """Run the ``create_pages`` callback and return its queued pages.

        The callback is called as ``create_pages(create_page, data)`` and may
        be a coroutine function. Pages are queued through
        ``create_page(template, output, context)`` or returned as an iterable
        of the same triples.
        """
        create_pages = self.config.create_pages
        if create_pages is None:
            return []
        queued: list[tuple[str, str, dict[str, Any]]] = []

        def create_page(template: str, output: str, context: dict[str, Any] | None = None):
            queued.append((template, output, dict(context or {})))

        returned = create_pages(create_page, self.data)
        if inspect.isawaitable(returned):
            returned = await returned
        for item in returned or ():
            template, output, *rest = item
            queued.append((template, output, dict(rest[0] or {}) if rest else {}))
        return queued

    async def render_dynamic_page(
        self, template: str, output: str, context: dict[str, Any]
    ) -> str:
        """Render and write one dynamic page.

        Returns:
            The output path, relative to the output directory.
        """
        output_path = dynamic_output_path(output)
        page_context = {
            **self.data,
            **context,
            "page": self.page_context(template, output_path),
        }

        def record(dependency: Path) -> None:
            self._dynamic_dependencies.setdefault(dependency, set()).add(output_path)

        rendered = await self._render_template(
            lambda: self.env.get_template(template),
            page_context,
            self.input / template,
            record,
        )
        await write_file(self.output / output_path, rendered)
        self.pages[output_path] = template
        return output_path

    async def build_dynamic_pages(self) -> dict[str, str]:
        pages = await self.collect_dynamic_pages()
        await asyncio.gather(
            *(self.render_dynamic_page(template, output, context) for template, output, context in pages)
        )
        return self.pages

    async def build(self) -> dict[str, Any]:
        """Render every page, then every dynamic page."""
        manifest = await super().build()
        try:
            await self.build_dynamic_pages()
        except Exception:
            self.complete = False
            raise
        return manifest

    async def rebuild(self, changed: Iterable[Path]) -> dict[str, Any]:
        changed = [Path(path).resolve() for path in changed]
        if any(path in self._dynamic_dependencies for path in changed):
            # dynamic pages are regenerated from scratch with the callback
            return await self.build()
        return await super().rebuild(changed)
