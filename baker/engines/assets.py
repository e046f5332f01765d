"""Asset engine for Baker.

This module copies everything under the assets directory into the output,
optimising it on the way in production. Each processor handles a single type
of asset and works on bytes, so the engine can hash exactly what it writes.

Key classes:
- AssetsEngine: Engine for static assets.
- ImageProcessor: Optimises raster images with Pillow.
- JSProcessor: Minifies JavaScript with rjsmin.
- CSSProcessor: Minifies plain CSS with csscompressor.
- JSONProcessor: Re-serialises JSON without whitespace.
- AssetProcessorRegistry: Picks the processor for a file by priority.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

import csscompressor
from PIL import Image
from rjsmin import jsmin

from ..config import BakerConfig
from ..utils import hashed_name, read_bytes, to_posix
from .base import Engine

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".svg", ".avif", ".webp"}
FONT_EXTENSIONS = {".woff2", ".woff", ".ttf", ".otf"}
VIDEO_EXTENSIONS = {".mp4", ".webm"}
AUDIO_EXTENSIONS = {".mp3"}
JSON_EXTENSIONS = {".json", ".geojson", ".topojson"}
SCRIPT_STYLE_EXTENSIONS = {".css", ".js"}

#: Extensions that get a content hash in production.
HASHABLE_EXTENSIONS = (
    IMAGE_EXTENSIONS
    | FONT_EXTENSIONS
    | VIDEO_EXTENSIONS
    | AUDIO_EXTENSIONS
    | JSON_EXTENSIONS
    | SCRIPT_STYLE_EXTENSIONS
)

# Sass sources belong to the style engine.
STYLE_SOURCE_EXTENSIONS = {".scss", ".sass"}


class BaseAssetProcessor(ABC):
    """Base class for asset processors.

    Each subclass handles a specific type of asset. Processors only run in
    production; development output is copied byte for byte.
    """

    @property
    @abstractmethod
    def priority(self) -> int:
        """Return processor priority (higher = checked first)."""
        ...

    @abstractmethod
    def can_process(self, path: Path) -> bool:
        """Check if this processor can handle the given asset."""
        ...

    @abstractmethod
    def process(self, content: bytes, path: Path) -> bytes:
        """Transform an asset's content.

        Args:
            content: Raw file content.
            path: Source path, for format detection and messages.

        Returns:
            The processed content.
        """
        ...


class ImageProcessor(BaseAssetProcessor):
    """Optimizes raster images using Pillow.

    Supports PNG, JPG, JPEG, and WebP formats. Images Pillow cannot re-encode
    are written unchanged.
    """

    SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}

    @property
    def priority(self) -> int:
        return 100

    def can_process(self, path: Path) -> bool:
        return path.suffix.lower() in self.SUPPORTED_EXTENSIONS

    def process(self, content: bytes, path: Path) -> bytes:
        buffer = io.BytesIO()
        try:
            with Image.open(io.BytesIO(content)) as img:
                img.save(buffer, format=img.format, optimize=True)
        except OSError as exc:
            logger.debug("image optimisation skipped for %s: %s", path, exc)
            return content
        optimized = buffer.getvalue()
        return optimized if len(optimized) < len(content) else content


class JSProcessor(BaseAssetProcessor):
    """Minifies standalone JavaScript files with rjsmin."""

    @property
    def priority(self) -> int:
        return 80

    def can_process(self, path: Path) -> bool:
        return path.suffix.lower() == ".js"

    def process(self, content: bytes, path: Path) -> bytes:
        return jsmin(content.decode("utf-8")).encode("utf-8")


class CSSProcessor(BaseAssetProcessor):
    """Minifies plain CSS files with csscompressor."""

    @property
    def priority(self) -> int:
        return 90

    def can_process(self, path: Path) -> bool:
        return path.suffix.lower() == ".css"

    def process(self, content: bytes, path: Path) -> bytes:
        return csscompressor.compress(content.decode("utf-8")).encode("utf-8")


class JSONProcessor(BaseAssetProcessor):
    """Strips insignificant whitespace from JSON data files."""

    @property
    def priority(self) -> int:
        return 70

    def can_process(self, path: Path) -> bool:
        return path.suffix.lower() in JSON_EXTENSIONS

    def process(self, content: bytes, path: Path) -> bytes:
        data = json.loads(content.decode("utf-8"))
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class AssetProcessorRegistry:
    """Registry for managing asset processors.

    New processors can be added without modifying existing code; the first
    registered processor (by priority) that accepts a file handles it.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._processors: list[BaseAssetProcessor] = []

    def register(self, processor: BaseAssetProcessor) -> None:
        """Register a new processor, keeping the list sorted by priority."""
        self._processors.append(processor)
        self._processors.sort(key=lambda p: p.priority, reverse=True)

    def get_processor(self, path: Path) -> BaseAssetProcessor | None:
        """Get the appropriate processor for a file, or None."""
        for processor in self._processors:
            if processor.can_process(path):
                return processor
        return None

    def process(self, content: bytes, path: Path) -> bytes:
        """Process content with the matching processor, if any."""
        processor = self.get_processor(path)
        if processor is None:
            return content
        return processor.process(content, path)


def create_default_registry() -> AssetProcessorRegistry:
    """Create a registry with the default processors."""
    registry = AssetProcessorRegistry()
    registry.register(ImageProcessor())
    registry.register(CSSProcessor())
    registry.register(JSProcessor())
    registry.register(JSONProcessor())
    return registry


class AssetsEngine(Engine):
    """Copies static assets into the output, hashing them in production.

    Attributes:
        dir: Assets directory relative to the input, as a POSIX path.
        processor_registry: Registry of production asset processors.
    """

    name = "assets"

    def __init__(
        self,
        config: BakerConfig,
        processor_registry: AssetProcessorRegistry | None = None,
    ):
        super().__init__(config)
        self.dir = to_posix(config.assets, config.input)
        self.file_patterns = [f"{self.dir}/**/*"]
        self.processor_registry = processor_registry or create_default_registry()

    def is_ignored(self, path: Path) -> bool:
        # the assets directory itself may be underscored, its children may not
        try:
            inner = PurePosixPath(to_posix(path, self.config.assets))
        except ValueError:
            return True
        if any(part.startswith("_") or part == "node_modules" for part in inner.parts[:-1]):
            return True
        return self.output in path.parents

    def accepts(self, path: Path) -> bool:
        return path.suffix.lower() not in STYLE_SOURCE_EXTENSIONS

    async def render(self, file: Path) -> bytes:
        content = await read_bytes(file)
        if self.config.is_production:
            content = await asyncio.to_thread(self.processor_registry.process, content, file)
        self.add_dependency(file)
        return content

    def get_output_path(self, relative: str, content: bytes | str) -> str:
        ext = PurePosixPath(relative).suffix.lower()
        if self.config.is_production and ext in HASHABLE_EXTENSIONS:
            relative = hashed_name(relative, content)
        if self.config.static_root:
            return f"{self.config.static_root}/{relative}"
        return relative
