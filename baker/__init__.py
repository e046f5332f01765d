"""Baker static site build tool.

This package bakes a project directory of Jinja templates, Sass stylesheets,
JavaScript entrypoints, data files and static assets into a deployable output
tree, and can serve that tree with live reload while you work.

Each asset class is handled by an engine that discovers its own files, renders
them, tracks the files they depend on and publishes a manifest of its outputs.
Templates reach the outputs of the other engines through manifest resolution
blocks (static, script, inject), so hashed production filenames never have to
be written by hand.

The main entry point is the CLI module, which provides the bake and serve
commands. The Baker class in baker.baker is the programmatic entry point.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
