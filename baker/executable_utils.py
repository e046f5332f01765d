"""Executable discovery utilities for Baker.

Functions:
    find_executable: Locate an executable in node_modules or PATH.
"""

from __future__ import annotations

import shutil
from pathlib import Path


def find_executable(name: str, node_modules: Path | None = None) -> str | None:
    """Find an executable in the local node_modules or on PATH.

    A project-local install wins over a global one, so the version pinned in
    the project's package.json is the one that runs.

    Args:
        name: Name of the executable to find (e.g., 'esbuild').
        node_modules: Optional node_modules directory to search first.

    Returns:
        Full path to the executable if found, None otherwise.

    Examples:
        >>> find_executable('esbuild', Path('/my/project/node_modules'))
        '/my/project/node_modules/.bin/esbuild'
    """
    if node_modules is not None:
        local = node_modules / ".bin" / name
        if local.exists():
            return str(local)

    return shutil.which(name)
