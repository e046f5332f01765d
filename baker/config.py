"""Configuration loading for Baker.

This module turns the user's options (from ``baker.yaml``, CLI flags or the
Python API) into a ``BakerConfig`` with absolute paths, a normalised URL path
prefix and an explicit build mode. Every engine receives this object; nothing
else in the package reads configuration from the environment.

Key functions:
- load_config: Loads raw options from baker.yaml.
- prepare_config: Resolves raw options into a BakerConfig.
"""

from __future__ import annotations

import importlib
import importlib.util
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .env import DEVELOPMENT, PRODUCTION, collect_environment, load_env_file, validate_mode
from .utils import normalize_path_prefix

CONFIG_FILENAME = "baker.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "input": ".",
    "output": "_dist",
    "layouts": "_layouts",
    "data": "_data",
    "assets": "assets",
    "entrypoints": "scripts/app.js",
    "path_prefix": "/",
    "static_root": "",
    "domain": None,
    "legacy": False,
    "create_pages": None,
    "port": 3000,
}


class ConfigurationError(Exception):
    """Error raised for invalid project configuration.

    Covers duplicate script entrypoints, a missing domain for absolute URLs,
    a missing bundler executable and unloadable ``create_pages`` hooks.
    """


@dataclass
class BakerConfig:
    """Resolved configuration shared by every engine.

    Attributes:
        input: Project source root.
        output: Destination root for the baked site.
        layouts: Directory of extendable templates and includes.
        data: Directory of structured data files.
        assets: Directory of static assets.
        entrypoints: Globs (relative to input) of script bundle inputs.
        path_prefix: URL path prefix, always starting and ending with ``/``.
        static_root: Subdirectory of output for non-HTML files.
        domain: Base URL used for absolute links.
        mode: ``development`` or ``production``.
        legacy: Whether to build a nomodule fallback bundle.
        create_pages: Optional dynamic page generation callback.
        filters: Extra template filters, name to callable.
        tags: Extra template tags, name to callable.
        env: Variables inlined into client bundles.
        node_modules: Local node_modules directory.
    """

    input: Path
    output: Path
    layouts: Path
    data: Path
    assets: Path
    entrypoints: list[str]
    path_prefix: str = "/"
    static_root: str = ""
    domain: str | None = None
    mode: str = DEVELOPMENT
    legacy: bool = False
    create_pages: Callable | None = None
    filters: dict[str, Callable] = field(default_factory=dict)
    tags: dict[str, Callable] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    node_modules: Path | None = None

    @property
    def is_production(self) -> bool:
        return self.mode == PRODUCTION

    @property
    def static_dir(self) -> Path:
        """Absolute directory that non-HTML output is written to."""
        return self.output / self.static_root if self.static_root else self.output


def load_config(input_dir: Path, config_file: Path | None = None) -> dict[str, Any]:
    """Load raw options from baker.yaml.

    Args:
        input_dir: Project directory used to locate the default config file.
        config_file: Explicit config path; must exist when given.

    Returns:
        Dictionary containing configuration values, with defaults applied.

    Raises:
        ConfigurationError: If an explicit config file is missing.
    """
    config = DEFAULT_CONFIG.copy()
    config["input"] = str(input_dir)
    config_path = config_file or input_dir / CONFIG_FILENAME
    if config_file is not None and not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                config.update(loaded)
        # relative "input" values are relative to the config file
        config["input"] = str((config_path.parent / config["input"]).resolve())
    return config


def prepare_config(raw: dict[str, Any], mode: str = DEVELOPMENT) -> BakerConfig:
    """Resolve raw options into a BakerConfig.

    Loads ``<input>/.env`` before snapshotting the bundle environment so its
    ``BAKER_`` variables are picked up.

    Args:
        raw: Options as produced by load_config, CLI flags or the caller.
        mode: Build mode.

    Returns:
        A fully resolved BakerConfig.
    """
    options = {**DEFAULT_CONFIG, **{k: v for k, v in raw.items() if v is not None}}
    mode = validate_mode(mode)

    input_dir = Path(options["input"]).resolve()
    load_env_file(input_dir)

    entrypoints = options["entrypoints"]
    if isinstance(entrypoints, str):
        entrypoints = [entrypoints]

    path_prefix = normalize_path_prefix(options["path_prefix"])
    static_root = str(options["static_root"] or "").strip("/")

    return BakerConfig(
        input=input_dir,
        output=(input_dir / options["output"]).resolve(),
        layouts=(input_dir / options["layouts"]).resolve(),
        data=(input_dir / options["data"]).resolve(),
        assets=(input_dir / options["assets"]).resolve(),
        entrypoints=list(entrypoints),
        path_prefix=path_prefix,
        static_root=static_root,
        domain=options["domain"] or None,
        mode=mode,
        legacy=bool(options["legacy"]),
        create_pages=resolve_callable(options["create_pages"], input_dir),
        filters=dict(options.get("filters") or {}),
        tags=dict(options.get("tags") or {}),
        env=collect_environment(mode, path_prefix),
        node_modules=Path.cwd().resolve() / "node_modules",
    )


def resolve_callable(reference: Any, input_dir: Path) -> Callable | None:
    """Resolve a ``create_pages`` reference into a callable.

    Accepts a callable, ``"pages.py:create_pages"`` (a file relative to the
    input directory) or ``"package.module:create_pages"``.

    Raises:
        ConfigurationError: If the reference cannot be loaded.
    """
    if reference is None or callable(reference):
        return reference
    if not isinstance(reference, str) or ":" not in reference:
        raise ConfigurationError(
            f"create_pages must look like 'module:function', got {reference!r}"
        )
    target, _, attr = reference.rpartition(":")
    if target.endswith(".py"):
        path = (input_dir / target).resolve()
        if not path.exists():
            raise ConfigurationError(f"create_pages file not found: {path}")
        spec = importlib.util.spec_from_file_location(f"_baker_pages_{path.stem}", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    else:
        try:
            module = importlib.import_module(target)
        except ImportError as exc:
            raise ConfigurationError(
                f"Could not import create_pages module {target!r}: {exc}"
            ) from exc
    func = getattr(module, attr, None)
    if not callable(func):
        raise ConfigurationError(f"{reference!r} is not a callable")
    return func
