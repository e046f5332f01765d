"""Manifest resolution blocks for Baker.

Templates never hard-code output paths. They name a source file and the
blocks look it up in the manifests published by the other engines, which
gives them hashed production filenames, the configured path prefix and, for
``static_absolute``, the site domain.

In development ``static`` falls back to the requested path when nothing
matches, because the dev server also serves the input directory. ``script``
and ``inject`` have nothing to fall back to and always fail loudly.

Key classes:
- ManifestResolver: The static, static_absolute, script and inject blocks.
- MissingReferenceError: A block referenced a file no engine produced.
"""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path, PurePosixPath

from markupsafe import escape

from .config import BakerConfig, ConfigurationError
from .engines.base import Engine
from .engines.scripts import SCRIPT_EXTENSIONS
from .extensions import ExtensionRegistry
from .protocols import LEGACY, MODERN
from .utils import is_full_url, join_prefix, join_root_url, read_text

logger = logging.getLogger(__name__)


class MissingReferenceError(Exception):
    """Error raised when a block references a file absent from every manifest.

    Attributes:
        reference: The file or entry name that was requested.
        kind: The block that failed (``static``, ``script`` or ``inject``).
    """

    def __init__(self, reference: str, kind: str, message: str | None = None):
        self.reference = reference
        self.kind = kind
        super().__init__(
            message or f'{kind}: "{reference}" was not found in any build manifest'
        )


def normalize_reference(file: str) -> str:
    """Turn a template reference into an input-relative POSIX path.

    Examples:
        >>> normalize_reference("/css/../css/main.scss")
        'css/main.scss'
    """
    return posixpath.normpath(file.lstrip("/"))


class ManifestResolver:
    """Resolves source paths to output URLs through the engines' manifests.

    Attributes:
        config: Resolved project configuration.
        engines: Engines searched by ``static`` and ``inject``, in priority
            order.
        scripts: The script engine, read by ``script``.
    """

    def __init__(
        self,
        config: BakerConfig,
        engines: list[Engine],
        scripts: Engine | None = None,
    ):
        self.config = config
        self.engines = engines
        self.scripts = scripts
        self._cache: dict[Path, str] = {}

    def clear(self) -> None:
        """Forget every cached resolution."""
        self._cache.clear()

    def lookup(self, file: str) -> str | None:
        """Find the output path (relative to output) for a source path."""
        relative = normalize_reference(file)
        for engine in self.engines:
            value = engine.manifest.get(relative)
            if isinstance(value, str):
                return value
        return None

    def resolve_url(self, file: str) -> str | None:
        """Like ``lookup`` but returns the public URL path, or None."""
        output = self.lookup(file)
        return join_prefix(self.config.path_prefix, output) if output is not None else None

    def static(self, file: str) -> str:
        """Return the public URL of a source file.

        Args:
            file: Input-relative path, e.g. ``css/main.scss``.

        Returns:
            ``path_prefix + output path``. In development an unknown file
            resolves to ``path_prefix + file``.

        Raises:
            MissingReferenceError: In production, when no engine built it.
        """
        if is_full_url(file):
            return file
        relative = normalize_reference(file)
        key = self.config.input / relative
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        url = self.resolve_url(relative)
        if url is None:
            if self.config.is_production:
                raise MissingReferenceError(
                    file,
                    "static",
                    f'static: "{file}" does not match any built file. '
                    "Check the path is relative to the input directory.",
                )
            logger.debug("static: %s is not in a manifest, serving it from the input", file)
            return join_prefix(self.config.path_prefix, relative)
        self._cache[key] = url
        return url

    def static_absolute(self, file: str) -> str:
        """Return ``static(file)`` as an absolute URL on the configured domain.

        Raises:
            ConfigurationError: If no domain is configured.
        """
        if not self.config.domain:
            raise ConfigurationError(
                'static_absolute needs the "domain" option, e.g. domain: https://example.com'
            )
        url = self.static(file)
        if is_full_url(url):
            return url
        return join_root_url(self.config.domain, url)

    def _script_url(self, path: str) -> str:
        return escape(join_prefix(self.config.path_prefix, path))

    def script(self, entry: str, preload: bool = False) -> str:
        """Return the tags that load a bundled script entrypoint.

        Args:
            entry: Logical entry name (the entry file's stem).
            preload: Also emit preload links for the shared chunks.

        Returns:
            Preload links, stylesheet links for extracted CSS, the module
            script and, when a legacy build exists, a nomodule script.

        Raises:
            MissingReferenceError: If the entry was not bundled.
        """
        name = PurePosixPath(entry).stem
        manifest = self.scripts.manifest if self.scripts is not None else {}
        modern = manifest.get(MODERN, {})
        if name not in modern:
            raise MissingReferenceError(
                entry,
                "script",
                f'script: no entrypoint named "{entry}" was bundled. '
                "Check it is matched by the entrypoints option.",
            )
        tags = []
        if preload:
            for chunk in manifest.get("preloads", []):
                tags.append(
                    f'<link rel="preload" href="{self._script_url(chunk)}" as="script" crossorigin>'
                )
        for css in manifest.get("css", {}).get(name, []):
            tags.append(f'<link rel="stylesheet" href="{self._script_url(css)}">')
        tags.append(f'<script type="module" src="{self._script_url(modern[name])}"></script>')
        legacy = manifest.get(LEGACY, {})
        if name in legacy:
            tags.append(f'<script nomodule defer src="{self._script_url(legacy[name])}"></script>')
        return "\n".join(tags) + "\n"

    async def inject(self, file: str) -> str:
        """Return the contents of the built file for ``file``.

        Raises:
            MissingReferenceError: If no engine built it.
        """
        output = self.lookup(file)
        path = PurePosixPath(file)
        if output is None and self.scripts is not None and path.suffix in ("", *SCRIPT_EXTENSIONS):
            output = self.scripts.manifest.get(MODERN, {}).get(path.stem)
        if output is None:
            raise MissingReferenceError(file, "inject")
        return await read_text(self.config.output / output)

    def register(self, registry: ExtensionRegistry) -> None:
        """Register the blocks as template tags."""
        registry.tag("static", self.static, arity=1)
        registry.tag("static_absolute", self.static_absolute, arity=1)
        registry.tag("staticabsolute", self.static_absolute, arity=1)
        registry.tag("script", self.script, arity=2)
        registry.tag("inject", self.inject, arity=1)
