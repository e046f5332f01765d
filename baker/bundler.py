"""esbuild integration for the script engine.

The bundler runs the ``esbuild`` executable as a subprocess and reads back the
metafile it writes, which describes every output chunk, the entry point it
belongs to, the CSS extracted from it and the input modules it contains.

Key classes:
- EsbuildBundler: ``Bundler`` implementation backed by esbuild.
- BundleResult: What one bundler run produced.

Key functions:
- build_command: Assemble the esbuild command line for a flavor.
- parse_metafile: Turn an esbuild metafile into a BundleResult.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import BakerConfig, ConfigurationError
from .engines.base import RenderError
from .env import bundle_defines
from .executable_utils import find_executable
from .protocols import LEGACY, MODERN
from .utils import code_frame, read_text, to_posix

logger = logging.getLogger(__name__)

ESBUILD = "esbuild"

#: Output directories, relative to the static directory.
SCRIPTS_DIR = "scripts"
LEGACY_DIR = "scripts/nomodule"

_ERROR_RE = re.compile(r"\[ERROR\]\s+(.+)")
_LOCATION_RE = re.compile(r"^\s+([^\s:][^:]*):(\d+):(\d+):\s*$", re.MULTILINE)


@dataclass
class BundleResult:
    """Description of one bundler run.

    Every path is a POSIX path relative to the output directory.

    Attributes:
        entries: Logical entry name to its output file.
        css: Logical entry name to the CSS files extracted from it.
        chunks: Shared (non-entry) chunks, sorted.
        inputs: Logical entry name to every input module bundled into it.
    """

    entries: dict[str, str] = field(default_factory=dict)
    css: dict[str, list[str]] = field(default_factory=dict)
    chunks: list[str] = field(default_factory=list)
    inputs: dict[str, list[Path]] = field(default_factory=dict)


def build_command(
    executable: str,
    entrypoints: dict[str, Path],
    flavor: str,
    outdir: Path,
    metafile: Path,
    production: bool,
    defines: dict[str, str] | None = None,
) -> list[str]:
    """Assemble the esbuild command line.

    Args:
        executable: Path to the esbuild binary.
        entrypoints: Logical name to absolute entry file.
        flavor: ``MODERN`` (ESM with code splitting) or ``LEGACY`` (IIFE).
        outdir: Directory the bundles are written to.
        metafile: Where esbuild should write its metafile.
        production: Minify and hash entry names when True.
        defines: Identifier to JSON literal replacements.

    Returns:
        Argument list suitable for ``create_subprocess_exec``.
    """
    command = [executable]
    command.extend(str(path) for _, path in sorted(entrypoints.items()))
    command.extend(["--bundle", "--platform=browser", "--log-level=error", "--color=false"])
    if flavor == MODERN:
        command.extend(["--format=esm", "--splitting", "--chunk-names=chunks/[name].[hash]"])
    elif flavor == LEGACY:
        command.extend(["--format=iife", "--target=es2015"])
    else:
        raise ValueError(f"Unknown bundle flavor {flavor!r}")
    command.append(f"--outdir={outdir}")
    command.append("--entry-names=[name].[hash]" if production else "--entry-names=[name]")
    command.append(f"--metafile={metafile}")
    if production:
        command.append("--minify")
    else:
        command.append("--sourcemap")
    for key, value in sorted((defines or {}).items()):
        command.append(f"--define:{key}={value}")
    return command


def _resolve(path: str, cwd: Path) -> Path | None:
    # namespaced inputs such as "(disabled):fs" have no file on disk
    if path.startswith(("(", "<")) or ":" in path.split("/")[0]:
        return None
    return (cwd / path).resolve()


def parse_metafile(
    meta: dict[str, Any],
    entrypoints: dict[str, Path],
    cwd: Path,
    output: Path,
) -> BundleResult:
    """Turn an esbuild metafile into a BundleResult.

    Args:
        meta: Parsed metafile JSON.
        entrypoints: Logical name to absolute entry file, as bundled.
        cwd: Directory esbuild ran in; metafile paths are relative to it.
        output: Output root the result paths are made relative to.

    Returns:
        The entries, extracted CSS, shared chunks and input modules.
    """
    names = {Path(path).resolve(): name for name, path in entrypoints.items()}
    outputs: dict[str, dict[str, Any]] = {
        key: value
        for key, value in meta.get("outputs", {}).items()
        if not key.endswith(".map")
    }

    def relative(path: str) -> str:
        return to_posix((cwd / path).resolve(), output)

    result = BundleResult()
    chunk_keys = []
    for key, info in outputs.items():
        entry_point = info.get("entryPoint")
        if entry_point is None:
            if key.endswith(".js"):
                chunk_keys.append(key)
            continue
        name = names.get(_resolve(entry_point, cwd))
        if name is None:
            continue
        result.entries[name] = relative(key)
        css_bundle = info.get("cssBundle")
        result.css[name] = [relative(css_bundle)] if css_bundle else []

        modules: list[Path] = []
        seen: set[str] = set()
        pending = [key, css_bundle] if css_bundle else [key]
        while pending:
            current = pending.pop()
            if current in seen or current not in outputs:
                continue
            seen.add(current)
            for input_path in outputs[current].get("inputs", {}):
                module = _resolve(input_path, cwd)
                if module is not None and module not in modules:
                    modules.append(module)
            pending.extend(item["path"] for item in outputs[current].get("imports", []))
        result.inputs[name] = modules

    result.chunks = sorted(relative(key) for key in chunk_keys)
    return result


def bundle_error(stderr: str, cwd: Path) -> RenderError:
    """Build a RenderError from esbuild's error output."""
    message_match = _ERROR_RE.search(stderr)
    message = message_match.group(1).strip() if message_match else stderr.strip() or "esbuild failed"
    location = _LOCATION_RE.search(stderr)
    if location is None:
        return RenderError(cwd, message)
    source_path = (cwd / location.group(1)).resolve()
    line = int(location.group(2))
    column = int(location.group(3)) + 1
    frame = None
    if source_path.is_file():
        frame = code_frame(source_path.read_text(encoding="utf-8"), line, column)
    return RenderError(source_path, message, line=line, column=column, frame=frame)


class EsbuildBundler:
    """Bundles script entrypoints by running esbuild.

    Attributes:
        config: Resolved project configuration.
    """

    def __init__(self, config: BakerConfig):
        self.config = config

    def find_executable(self) -> str:
        executable = find_executable(ESBUILD, self.config.node_modules)
        if executable is None:
            raise ConfigurationError(
                "Could not find the esbuild executable. "
                "Install it with `npm install --save-dev esbuild`."
            )
        return executable

    def outdir(self, flavor: str) -> Path:
        return self.config.static_dir / (LEGACY_DIR if flavor == LEGACY else SCRIPTS_DIR)

    async def bundle(self, entrypoints: dict[str, Path], flavor: str) -> BundleResult:
        if not entrypoints:
            return BundleResult()
        executable = self.find_executable()
        with tempfile.TemporaryDirectory(prefix="baker-") as tmp:
            metafile = Path(tmp) / "meta.json"
            command = build_command(
                executable,
                entrypoints,
                flavor,
                self.outdir(flavor),
                metafile,
                self.config.is_production,
                bundle_defines(self.config.env),
            )
            logger.debug("running %s", " ".join(command))
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.config.input),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
            if process.returncode != 0:
                raise bundle_error(stderr.decode("utf-8", errors="replace"), self.config.input)
            meta = json.loads(await read_text(metafile))
        return parse_metafile(meta, entrypoints, self.config.input, self.config.output)
