"""Protocol definitions for Baker.

The script engine talks to its bundler only through the ``Bundler`` protocol,
so tests (and alternative bundlers) can stand in for esbuild without touching
the engine.
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .bundler import BundleResult

#: Build flavor producing ES modules with code splitting.
MODERN = "modern"

#: Build flavor producing a single-file fallback for browsers without modules.
LEGACY = "legacy"


@runtime_checkable
class Bundler(Protocol):
    """Protocol for compiling script entrypoints into output chunks.

    Implementations write their output under the configured static directory
    and describe what they wrote; they never touch the engine's manifest.
    """

    @abstractmethod
    async def bundle(self, entrypoints: dict[str, Path], flavor: str) -> BundleResult:
        """Bundle a set of entrypoints.

        Args:
            entrypoints: Logical name to absolute entry file.
            flavor: ``MODERN`` or ``LEGACY``.

        Returns:
            Description of the written entry files, extracted CSS, shared
            chunks and bundled input modules.

        Raises:
            RenderError: If the bundler reports a compile error.
        """
        ...
