"""Environment handling for Baker.

The build mode is an explicit configuration value. This module only knows how
to validate it, how to load a project's ``.env`` file and how to snapshot the
``BAKER_`` variables that are inlined into client-side bundles.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import load_dotenv

DEVELOPMENT = "development"
PRODUCTION = "production"
VALID_MODES = (DEVELOPMENT, PRODUCTION)

# Variables starting with this prefix are passed through to bundles.
BAKER_REGEX = re.compile(r"^BAKER_", re.IGNORECASE)


def validate_mode(mode: str) -> str:
    """Return ``mode`` if it is a known build mode.

    Raises:
        ValueError: If the mode is not development or production.
    """
    if mode not in VALID_MODES:
        raise ValueError(
            f"Unknown mode {mode!r}; expected one of: {', '.join(VALID_MODES)}"
        )
    return mode


def load_env_file(input_dir: Path) -> bool:
    """Load ``<input>/.env`` into the process environment if it exists.

    References like ``${OTHER}`` are expanded and variables that are already
    set are left alone.

    Returns:
        True if a file was loaded.
    """
    env_file = input_dir / ".env"
    if not env_file.is_file():
        return False
    return load_dotenv(env_file, override=False, interpolate=True)


def collect_environment(
    mode: str, path_prefix: str, environ: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Snapshot the variables that client bundles may reference.

    Args:
        mode: Build mode, exposed as ``NODE_ENV``.
        path_prefix: URL prefix, exposed as ``PATH_PREFIX``.
        environ: Source mapping, defaults to ``os.environ``.

    Returns:
        Mapping of variable name to value.
    """
    source = os.environ if environ is None else environ
    raw = {"NODE_ENV": mode, "PATH_PREFIX": path_prefix}
    for key, value in source.items():
        if BAKER_REGEX.match(key):
            raw[key] = value
    return raw


def bundle_defines(env: Mapping[str, str]) -> dict[str, str]:
    """Turn an environment snapshot into ``process.env.*`` replacement values."""
    return {f"process.env.{key}": json.dumps(value) for key, value in env.items()}
