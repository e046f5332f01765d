"""Style engine for Baker.

Compiles Sass/SCSS entry files to CSS with libsass. Files whose names begin
with an underscore are partials: they are never compiled on their own, but
every partial an entry file imports (directly or through other partials) is
recorded as a dependency of that entry so editing it rebuilds the entry.

``url(...)`` references in the compiled CSS are resolved through the asset
manifest so production stylesheets point at hashed asset files. Stylesheets
can also ask for a URL explicitly with the ``static-path($file)`` and
``static-url($file)`` Sass functions, which go through the ``static`` block.
"""

from __future__ import annotations

import asyncio
import posixpath
import re
from collections.abc import Callable
from pathlib import Path, PurePosixPath

import csscompressor
import sass

from ..config import BakerConfig
from ..utils import code_frame, hashed_name, is_full_url, to_posix
from .base import Engine, RenderError

STYLE_EXTENSIONS = (".scss", ".sass")

# @import "a", "b";  @use "sass:math";  @forward "src/list" hide list-reset;
_IMPORT_RE = re.compile(r"^\s*@(?:import|use|forward)\s+([^;\n]+)", re.MULTILINE)
_QUOTED_RE = re.compile(r"""["']([^"']+)["']""")
_CSS_URL_RE = re.compile(r"""(url\(\s*['"]?)([^"')]+)(["']?\s*\))""")
_LIBSASS_LOCATION_RE = re.compile(r"on line (\d+):(\d+) of (\S+)")


def _candidates(name: str) -> list[str]:
    """Return the file names Sass would try for an import of ``name``."""
    path = PurePosixPath(name)
    if path.suffix in STYLE_EXTENSIONS:
        return [name, str(path.with_name(f"_{path.name}"))]
    names = []
    for ext in STYLE_EXTENSIONS:
        names.append(str(path.with_name(f"{path.name}{ext}")))
        names.append(str(path.with_name(f"_{path.name}{ext}")))
    for ext in STYLE_EXTENSIONS:
        names.append(f"{name}/index{ext}")
        names.append(f"{name}/_index{ext}")
    return names


def resolve_import(name: str, base_dir: Path, include_paths: list[Path]) -> Path | None:
    """Find the file a Sass import refers to.

    Args:
        name: The import target as written in the source.
        base_dir: Directory of the importing file.
        include_paths: Extra load paths, searched after ``base_dir``.

    Returns:
        The resolved path, or None for CSS imports, built-in modules and
        targets that cannot be found.
    """
    if name.startswith(("sass:", "url(")) or name.endswith(".css") or is_full_url(name):
        return None
    for root in [base_dir, *include_paths]:
        for candidate in _candidates(name):
            path = root / candidate
            if path.is_file():
                return path.resolve()
    return None


def collect_imports(file: Path, include_paths: list[Path]) -> list[Path]:
    """Recursively collect every Sass file ``file`` imports.

    Args:
        file: Entry file to scan.
        include_paths: Extra load paths.

    Returns:
        Every transitively imported file, in discovery order, without
        ``file`` itself.
    """
    seen: list[Path] = []
    pending = [file.resolve()]
    while pending:
        current = pending.pop()
        source = current.read_text(encoding="utf-8")
        for match in _IMPORT_RE.finditer(source):
            for name in _QUOTED_RE.findall(match.group(1)) or [match.group(1).strip()]:
                found = resolve_import(name, current.parent, include_paths)
                if found is not None and found != file and found not in seen:
                    seen.append(found)
                    pending.append(found)
    return seen


def rewrite_css_urls(
    css: str, resolve_url: Callable[[str], str | None], base: str = ""
) -> str:
    """Pass every relative ``url(...)`` in ``css`` through ``resolve_url``.

    Args:
        css: Compiled stylesheet.
        resolve_url: Maps an input-relative path to its public URL, or None
            to leave the reference untouched.
        base: Input-relative directory of the stylesheet, which relative
            references are resolved against.

    Returns:
        The stylesheet with resolved references.
    """

    def repl(match: re.Match) -> str:
        before, url, after = match.groups()
        url = url.strip()
        if url.startswith(("data:", "#", "//", "/")) or is_full_url(url):
            return match.group(0)
        path, sep, suffix = _split_suffix(url)
        resolved = resolve_url(posixpath.normpath(posixpath.join(base, path)))
        if resolved is None:
            return match.group(0)
        return f"{before}{resolved}{sep}{suffix}{after}"

    return _CSS_URL_RE.sub(repl, css)


def _split_suffix(url: str) -> tuple[str, str, str]:
    """Split ``font.woff2?#iefix`` into its path, separator and the rest."""
    match = re.search(r"[?#]", url)
    if match is None:
        return url, "", ""
    return url[: match.start()], url[match.start()], url[match.start() + 1 :]


class StyleEngine(Engine):
    """Engine for Sass/SCSS stylesheets.

    Attributes:
        include_paths: Extra load paths for Sass imports.
        url_resolver: Maps the input-relative target of a ``url(...)``
            reference to its public URL, or None when it is unknown. Without
            a resolver URLs are left untouched.
        static_resolver: Backs the ``static-path`` and ``static-url`` Sass
            functions. Without one the functions are not defined.
    """

    name = "styles"

    def __init__(
        self,
        config: BakerConfig,
        url_resolver: Callable[[str], str | None] | None = None,
        include_paths: list[Path] | None = None,
        static_resolver: Callable[[str], str] | None = None,
    ):
        super().__init__(config)
        self.file_patterns = [f"**/*{ext}" for ext in STYLE_EXTENSIONS]
        self.ignore_patterns = ["node_modules/**"]
        if include_paths is None:
            include_paths = [config.input]
            if config.node_modules is not None:
                include_paths.append(config.node_modules)
        self.include_paths = include_paths
        self.url_resolver = url_resolver
        self.static_resolver = static_resolver

    def accepts(self, path: Path) -> bool:
        # partials are only compiled through the files that import them
        return not path.name.startswith("_")

    def sass_functions(self) -> dict[str, Callable[[str], str]]:
        """Return the custom Sass functions, keyed by their Sass name."""
        if self.static_resolver is None:
            return {}
        resolve = self.static_resolver

        def static_path(file: str) -> str:
            return resolve(file)

        def static_url(file: str) -> str:
            return f"url({resolve(file)})"

        return {"static-path": static_path, "static-url": static_url}

    def _compile(self, file: Path) -> str:
        try:
            return sass.compile(
                filename=str(file),
                include_paths=[str(p) for p in self.include_paths],
                output_style="expanded",
                custom_functions=self.sass_functions(),
            )
        except sass.CompileError as exc:
            raise self._render_error(file, exc) from exc

    def _render_error(self, file: Path, exc: Exception) -> RenderError:
        message = str(exc).strip()
        match = _LIBSASS_LOCATION_RE.search(message)
        if not match:
            return RenderError(file, message.splitlines()[0] if message else "Sass error", original_error=exc)
        line, column = int(match.group(1)), int(match.group(2))
        source_path = Path(match.group(3))
        if not source_path.is_absolute():
            source_path = Path.cwd() / source_path
        if not source_path.is_file():
            source_path = file
        frame = None
        if source_path.is_file():
            frame = code_frame(source_path.read_text(encoding="utf-8"), line, column)
        return RenderError(
            source_path,
            message.splitlines()[0],
            line=line,
            column=column,
            frame=frame,
            original_error=exc,
        )

    async def render(self, file: Path) -> str:
        css = await asyncio.to_thread(self._compile, file)
        imports = await asyncio.to_thread(collect_imports, file, self.include_paths)
        self.add_dependency(file, file)
        for dependency in imports:
            self.add_dependency(dependency, file)
        if self.url_resolver is not None:
            base = posixpath.dirname(to_posix(file, self.input))
            css = rewrite_css_urls(css, self.url_resolver, base)
        if self.config.is_production:
            css = await asyncio.to_thread(csscompressor.compress, css)
        return css

    def get_output_path(self, relative: str, content: bytes | str) -> str:
        path = PurePosixPath(relative)
        if self.config.is_production:
            output = hashed_name(relative, content, ext=".css")
        else:
            output = str(path.with_suffix(".css"))
        if self.config.static_root:
            return f"{self.config.static_root}/{output}"
        return output
