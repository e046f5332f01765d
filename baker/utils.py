"""Utility functions for Baker.

This module contains the helpers shared by the engines, the resolution blocks
and the orchestrator: content hashing, path handling, async file I/O and the
debouncer used by the watchers.

Key functions:
    rev_hash: Short deterministic digest of rendered content.
    ensure_clean_dir: Ensure a directory exists and is empty.
    is_internal_path: Check for underscore-prefixed path components.
    glob_match: Match a relative path against a glob with ``**`` support.
    pretty_output_path: Map a template path to its pretty URL output path.
    code_frame: Render the source lines around an error location.

Key classes:
    Debouncer: Coalesces bursts of events into one serialised callback.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import logging
import posixpath
import shutil
from collections.abc import Awaitable, Callable, Hashable
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

#: Length of the content hash appended to production filenames.
HASH_LENGTH = 8

#: Directory names that never hold project sources.
DEPENDENCY_DIRS = ("node_modules",)


def rev_hash(content: bytes | str) -> str:
    """Return the short content hash used for cache busting.

    Args:
        content: Rendered file content.

    Returns:
        First eight hex characters of the MD5 digest.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.md5(content).hexdigest()[:HASH_LENGTH]


def hashed_name(relative: str, content: bytes | str, ext: str | None = None) -> str:
    """Insert the content hash between a file's stem and extension.

    Args:
        relative: POSIX path relative to some root (``css/main.scss``).
        content: Rendered content to hash.
        ext: Replacement extension, including the dot.

    Returns:
        Path like ``css/main.0a1b2c3d.css``.
    """
    path = PurePosixPath(relative)
    suffix = ext if ext is not None else path.suffix
    return str(path.with_name(f"{path.stem}.{rev_hash(content)}{suffix}"))


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    If the directory exists, removes all contents. Creates the
    directory if it doesn't exist.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(str(path), ignore_errors=True)
        if path.exists():
            # Fallback for stubborn directories
            for item in path.rglob("*"):
                if item.is_file():
                    item.unlink()
            for item in sorted(
                [p for p in path.rglob("*") if p.is_dir()], reverse=True
            ):
                item.rmdir()
            path.rmdir()
    path.mkdir(parents=True, exist_ok=True)


def is_internal_path(path: Path | PurePosixPath) -> bool:
    """Check if a path lives under a reserved directory.

    Directories starting with an underscore (layouts, data, partial folders)
    and dependency-manager folders are never discovered as inputs. The final
    component is not checked, so ``_partial.scss`` itself is not internal.

    Args:
        path: Path relative to the engine input.

    Returns:
        True if any parent directory is reserved.
    """
    return any(
        part.startswith("_") or part in DEPENDENCY_DIRS for part in path.parts[:-1]
    )


def glob_match(relative: str, pattern: str) -> bool:
    """Match a POSIX relative path against a glob pattern.

    ``**/`` prefixes also match files at the top level, so ``**/*.scss``
    matches both ``main.scss`` and ``css/main.scss``.

    Args:
        relative: POSIX path relative to the engine input.
        pattern: Glob pattern.

    Returns:
        True if the path matches.
    """
    if fnmatch.fnmatchcase(relative, pattern):
        return True
    while pattern.startswith("**/"):
        pattern = pattern[3:]
        if fnmatch.fnmatchcase(relative, pattern):
            return True
    return "/**/" in pattern and fnmatch.fnmatchcase(
        relative, pattern.replace("/**/", "/")
    )


def to_posix(path: Path, root: Path) -> str:
    """Return ``path`` relative to ``root`` as a POSIX string."""
    return path.relative_to(root).as_posix()


def pretty_output_path(relative: str) -> str:
    """Map a template's input path to its pretty URL output path.

    Args:
        relative: POSIX template path relative to the input directory.

    Returns:
        ``index.html`` files keep their directory; every other page
        becomes ``<name>/index.html``.

    Examples:
        >>> pretty_output_path("page.html")
        'page/index.html'

        >>> pretty_output_path("about/index.html")
        'about/index.html'
    """
    path = PurePosixPath(relative)
    name = path.name
    for ext in (".jinja", ".html"):
        if name.endswith(ext):
            name = name[: -len(ext)]
    if name == "index":
        return str(path.parent / "index.html")
    return str(path.parent / name / "index.html")


def url_for_output(output_path: str) -> str:
    """Return the URL path of an output file, dropping a trailing index.html."""
    if output_path == "index.html":
        return ""
    if output_path.endswith("/index.html"):
        return output_path[: -len("index.html")]
    return output_path


def normalize_path_prefix(prefix: str | None) -> str:
    """Normalise a URL path prefix so it starts and ends with a slash.

    Examples:
        >>> normalize_path_prefix("project")
        '/project/'

        >>> normalize_path_prefix("/")
        '/'
    """
    cleaned = posixpath.normpath("/" + (prefix or "").strip("/"))
    return cleaned if cleaned.endswith("/") else f"{cleaned}/"


def join_prefix(prefix: str, path: str) -> str:
    """Join a normalised path prefix and a relative output path."""
    return prefix + path.lstrip("/")


def join_root_url(root_url: str, path: str) -> str:
    """Safely join a root URL and a path, avoiding double slashes.

    Args:
        root_url: Base URL (e.g., https://example.com/blog).
        path: Path beginning with or without a leading slash.

    Returns:
        Combined URL with proper slash handling.

    Examples:
        >>> join_root_url('https://example.com', '/about')
        'https://example.com/about'

        >>> join_root_url('https://example.com/', 'about')
        'https://example.com/about'
    """
    if not root_url:
        return path
    base = root_url.rstrip("/")
    suffix = path if path.startswith("/") else f"/{path}"
    return f"{base}{suffix}"


def is_full_url(value: str) -> bool:
    """Return True for absolute URLs such as ``https://cdn.example.com/x.js``."""
    parsed = urlparse(value)
    return bool(parsed.scheme and (parsed.netloc or parsed.scheme == "data"))


def code_frame(
    source: str, line: int, column: int | None = None, context: int = 2
) -> str:
    """Render the lines around ``line`` with a marker, like a compiler would.

    Args:
        source: Full source text.
        line: One-based line number of the error.
        column: Optional one-based column for the caret.
        context: Number of lines to show on each side.

    Returns:
        Multi-line frame, or an empty string if the line is out of range.
    """
    lines = source.splitlines()
    if line < 1 or line > len(lines):
        return ""
    start = max(line - context, 1)
    end = min(line + context, len(lines))
    width = len(str(end))
    frame: list[str] = []
    for number in range(start, end + 1):
        marker = ">" if number == line else " "
        frame.append(f"{marker} {number:>{width}} | {lines[number - 1]}")
        if number == line and column:
            frame.append(f"  {' ' * width} | {' ' * (column - 1)}^")
    return "\n".join(frame)


async def read_bytes(path: Path) -> bytes:
    """Read a file without blocking the event loop."""
    return await asyncio.to_thread(path.read_bytes)


async def read_text(path: Path) -> str:
    """Read a UTF-8 text file without blocking the event loop."""
    return await asyncio.to_thread(path.read_text, encoding="utf-8")


def _write(path: Path, content: bytes | str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_bytes(content)


async def write_file(path: Path, content: bytes | str) -> None:
    """Write a file, creating parent directories, without blocking the loop."""
    await asyncio.to_thread(_write, path, content)


class Debouncer:
    """Coalesce bursts of events into a single serialised callback.

    Every ``push`` restarts the timer. When the timer fires, everything pushed
    since the last flush is handed to the callback as one batch. Callbacks
    never overlap: a batch that fires while the previous one is still running
    waits for ``lock``.

    Must be used from inside a running event loop.
    """

    def __init__(
        self,
        callback: Callable[[set], Awaitable[None]],
        delay: float = 0.2,
        lock: asyncio.Lock | None = None,
    ):
        self.callback = callback
        self.delay = delay
        self.lock = lock or asyncio.Lock()
        self._pending: set = set()
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    def push(self, item: Hashable) -> None:
        """Add an item to the pending batch and restart the timer."""
        self._pending.add(item)
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        batch, self._pending = self._pending, set()
        if not batch:
            return
        task = asyncio.ensure_future(self._run(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, batch: set) -> None:
        async with self.lock:
            logger.debug("flushing %d change(s)", len(batch))
            await self.callback(batch)

    async def drain(self) -> None:
        """Wait for every batch that has already fired to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks)
