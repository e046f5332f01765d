"""Responsive image helpers for Baker.

``image(src, alt, widths)`` resizes a source image to each requested width
with Pillow, writes the variants under the static root and returns an
``<img>`` tag whose ``srcset`` lists them. ``srcset(pattern, sizes)`` builds
the attribute for variants that already exist, with ``{size}`` in the pattern
standing for each width.

Key classes:
- ResponsiveImages: The ``image`` tag and the ``srcset`` filter.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from markupsafe import escape
from PIL import Image

from .blocks import ManifestResolver, MissingReferenceError, normalize_reference
from .config import BakerConfig
from .extensions import ExtensionRegistry
from .utils import join_prefix

logger = logging.getLogger(__name__)

#: Widths used when a template does not ask for specific ones.
DEFAULT_WIDTHS = (300, 600)


def variant_path(relative: str, width: int) -> str:
    """Name the resized copy of an image.

    Examples:
        >>> variant_path("img/hero.jpg", 300)
        'img/hero-300.jpg'
    """
    path = PurePosixPath(relative)
    return str(path.with_name(f"{path.stem}-{width}{path.suffix}"))


def write_variants(
    source: Path, target_dir: Path, relative: str, widths: Iterable[int]
) -> tuple[int, int, list[tuple[str, int]]]:
    """Resize ``source`` to every width, keeping its aspect ratio.

    Args:
        source: The original image.
        target_dir: Directory the variants are written under.
        relative: Input-relative path of the original.
        widths: Target widths in pixels.

    Returns:
        The original width and height, and (variant path, width) pairs
        sorted by width.
    """
    variants = []
    with Image.open(source) as img:
        width, height = img.size
        for target_width in sorted(set(widths)):
            target_height = max(1, round(height * target_width / width))
            output = variant_path(relative, target_width)
            target = target_dir / output
            target.parent.mkdir(parents=True, exist_ok=True)
            img.resize((target_width, target_height), Image.LANCZOS).save(target, format=img.format)
            variants.append((output, target_width))
    return width, height, variants


class ResponsiveImages:
    """Writes resized image variants and the markup that loads them.

    Attributes:
        config: Resolved project configuration.
        resolver: Resolves ``srcset`` variants to their built URLs.
    """

    def __init__(self, config: BakerConfig, resolver: ManifestResolver):
        self.config = config
        self.resolver = resolver

    def _url(self, output: str) -> str:
        if self.config.static_root:
            output = f"{self.config.static_root}/{output}"
        return join_prefix(self.config.path_prefix, output)

    async def image(self, src: str, alt: str, widths: Iterable[int] | None = None) -> str:
        """Return an ``<img>`` tag with a ``srcset`` of resized variants.

        Raises:
            MissingReferenceError: If ``src`` is not a file in the input.
        """
        relative = normalize_reference(src)
        source = self.config.input / relative
        if not source.is_file():
            raise MissingReferenceError(src, "image", f'image: "{src}" does not exist in the input directory')
        width, height, variants = await asyncio.to_thread(
            write_variants, source, self.config.static_dir, relative, widths or DEFAULT_WIDTHS
        )
        logger.debug("image: %s -> %d variant(s)", relative, len(variants))
        srcset = ", ".join(f"{self._url(output)} {w}w" for output, w in variants)
        return (
            f'<img src="{escape(self._url(variants[0][0]))}" srcset="{escape(srcset)}" '
            f'width="{width}" height="{height}" alt="{escape(alt)}" decoding="async">'
        )

    def srcset(self, pattern: str, sizes: Iterable[int] = DEFAULT_WIDTHS) -> str:
        """Build a ``srcset`` value from a ``{size}`` file pattern.

        Examples:
            ``"img/hero-{size}.jpg"|srcset([400, 800])`` gives
            ``/img/hero-400.jpg 400w, /img/hero-800.jpg 800w``.
        """
        return ", ".join(
            f"{self.resolver.static(pattern.replace('{size}', str(size)))} {size}w" for size in sizes
        )

    def register(self, registry: ExtensionRegistry) -> None:
        registry.tag("image", self.image, arity=3)
        registry.filter("srcset", self.srcset, arity=2)
