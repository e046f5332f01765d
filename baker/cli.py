"""Command-line interface for Baker.

This module defines the CLI commands using Click framework.

Commands:
- bake (alias build): Build the project into the output directory.
- serve: Build, serve with live reload and rebuild on change.

Options given on the command line override ``baker.yaml``, which overrides
the defaults. ``bake`` builds in production mode and ``serve`` in development
mode unless ``--mode`` says otherwise.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from pathlib import Path
from typing import Any

import click

from . import __version__
from .baker import Baker
from .config import load_config, prepare_config
from .console import on_error, on_success
from .env import DEVELOPMENT, PRODUCTION, VALID_MODES


def build_options(func):
    """Attach the options shared by every command."""
    options = [
        click.option("-c", "--config", "config_file", type=click.Path(path_type=Path), help="Path to a baker.yaml file"),
        click.option("-i", "--input", "input_dir", type=click.Path(path_type=Path), help="Project source directory"),
        click.option("-o", "--output", help="Output directory, relative to the input"),
        click.option("-l", "--layouts", help="Layouts directory, relative to the input"),
        click.option("-d", "--data", help="Data directory, relative to the input"),
        click.option("-a", "--assets", help="Assets directory, relative to the input"),
        click.option("-e", "--entrypoints", multiple=True, help="Script entrypoint glob (repeatable)"),
        click.option("-p", "--path-prefix", help="URL path prefix for every emitted reference"),
        click.option("-s", "--static-root", help="Subdirectory of the output for non-HTML files"),
        click.option("--domain", help="Base URL used for absolute links"),
        click.option("--legacy/--no-legacy", default=None, help="Also build a nomodule bundle"),
        click.option("--mode", type=click.Choice(VALID_MODES), help="Build mode"),
        click.option("--debug", is_flag=True, help="Verbose logging; never clear the console"),
    ]
    for option in reversed(options):
        func = option(func)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if kwargs.get("debug"):
            logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
        return func(*args, **kwargs)

    return wrapper


def _resolve_config(options: dict[str, Any], default_mode: str):
    """Merge baker.yaml and command line options into a BakerConfig."""
    input_dir = (options.pop("input_dir", None) or Path.cwd()).resolve()
    raw = load_config(input_dir, options.pop("config_file", None))
    entrypoints = options.pop("entrypoints", ())
    if entrypoints:
        raw["entrypoints"] = list(entrypoints)
    mode = options.pop("mode", None) or default_mode
    options.pop("debug", None)
    raw.update({key: value for key, value in options.items() if value is not None})
    return raw, prepare_config(raw, mode)


@click.group()
@click.version_option(version=__version__, prog_name="baker")
def cli():
    """Baker static site build tool."""


def _bake(**options):
    try:
        _, config = _resolve_config(options, PRODUCTION)
        asyncio.run(Baker(config).bake())
    except Exception as exc:
        on_error([exc], Path.cwd())
        raise SystemExit(1) from None
    on_success()


@cli.command()
@build_options
def bake(**options):
    """Build the project into the output directory."""
    _bake(**options)


@cli.command()
@build_options
def build(**options):
    """Alias for bake."""
    _bake(**options)


@cli.command()
@build_options
@click.option("--port", type=int, required=False, help="Port to run the dev server (overrides baker.yaml)")
@click.option("--ws-port", type=int, required=False, help="Port for the live reload websocket server")
def serve(port: int | None, ws_port: int | None, **options):
    """Run dev server with live reload."""
    debug = bool(options.get("debug"))
    raw, config = _resolve_config(options, DEVELOPMENT)
    baker = Baker(config)
    baker.debug = debug
    try:
        asyncio.run(baker.serve(port=int(port or raw.get("port", 3000)), ws_port=ws_port))
    except KeyboardInterrupt:
        click.echo("Stopped.")


def main():
    """Entry point for the CLI application."""
    cli()
