"""Script engine for Baker.

JavaScript entrypoints are handed to a bundler as one batch, because code
splitting needs to see every entry at once to share chunks between them. The
engine's manifest is therefore a single structured record rather than one
entry per input file::

    {
        "modern": {"app": "scripts/app.js"},
        "legacy": {"app": "scripts/nomodule/app.js"},   # legacy builds only
        "css": {"app": ["scripts/app.css"]},
        "preloads": ["scripts/chunks/shared.4f2a9c1d.js"],
    }

Entries are keyed by their logical name, the entry file's stem, which must
be unique across all entrypoints.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from ..bundler import EsbuildBundler
from ..config import BakerConfig, ConfigurationError
from ..protocols import LEGACY, MODERN, Bundler
from .base import Engine

SCRIPT_EXTENSIONS = (".js", ".mjs", ".cjs", ".jsx", ".ts", ".tsx")


def entry_names(files: Iterable[Path]) -> dict[str, Path]:
    """Map every entrypoint to its logical name.

    Raises:
        ConfigurationError: If two entrypoints share a file stem.
    """
    names: dict[str, Path] = {}
    for file in files:
        name = file.stem
        if name in names:
            raise ConfigurationError(
                f'Multiple JavaScript entrypoints are trying to use "{name}" as their '
                f"identifier ({names[name]} and {file}). Each entrypoint must have "
                "a unique file name."
            )
        names[name] = file
    return names


class ScriptEngine(Engine):
    """Engine for bundled JavaScript entrypoints.

    Attributes:
        bundler: Compiles the entrypoints; esbuild unless replaced.
    """

    name = "scripts"

    def __init__(self, config: BakerConfig, bundler: Bundler | None = None):
        super().__init__(config)
        self.file_patterns = list(config.entrypoints)
        self.watch_patterns = [f"**/*{ext}" for ext in SCRIPT_EXTENSIONS]
        self.ignore_patterns = ["node_modules/**"]
        self.bundler = bundler or EsbuildBundler(config)

    @property
    def flavors(self) -> list[str]:
        return [MODERN, LEGACY] if self.config.legacy else [MODERN]

    async def build(self) -> dict[str, Any]:
        """Bundle every entrypoint in each flavor.

        Duplicate logical names are rejected before the bundler runs, so a
        misconfigured project never writes partial output.
        """
        self.invalidate()
        entrypoints = entry_names(self.find_files())
        flavors = self.flavors
        results = await asyncio.gather(
            *(self.bundler.bundle(entrypoints, flavor) for flavor in flavors)
        )

        manifest: dict[str, Any] = {}
        for flavor, result in zip(flavors, results):
            manifest[flavor] = dict(result.entries)
            if flavor == MODERN:
                manifest["css"] = {name: list(paths) for name, paths in result.css.items()}
                manifest["preloads"] = list(result.chunks)
            for name, modules in result.inputs.items():
                for module in modules:
                    self.add_dependency(module, entrypoints[name])
        for file in entrypoints.values():
            self.add_dependency(file)

        self.manifest = manifest
        self.complete = True
        return self.manifest

    async def rebuild(self, changed: Iterable[Path]) -> dict[str, Any]:
        # shared chunks make partial rebuilds unsafe
        return await self.build()
