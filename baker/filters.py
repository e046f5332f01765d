"""Built-in template filters for Baker.

Key functions:
- date: Format a date, datetime or ISO date string.
- json_script: Embed a value as JSON inside a script element.
- log: Print a value to the console while rendering.
- markdown: Render Markdown to HTML with syntax highlighted code blocks.
- register_filters: Add the built-ins to an ExtensionRegistry.
"""

from __future__ import annotations

import json
from datetime import date as date_type
from datetime import datetime
from typing import Any

import click
import mistune
from markupsafe import Markup, escape
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

from .extensions import ExtensionRegistry

_JSON_ESCAPES = {
    ord(">"): "\\u003E",
    ord("<"): "\\u003C",
    ord("&"): "\\u0026",
}


def date(value: Any, format: str | None = None) -> str:
    """Format a date with a strftime format string.

    Args:
        value: A date, datetime or ISO 8601 string.
        format: strftime format, required.

    Returns:
        The formatted date.

    Raises:
        ValueError: If no format is given or the string is not ISO 8601.

    Examples:
        >>> date("2024-03-01", "%d %B %Y")
        '01 March 2024'
    """
    if not format:
        raise ValueError("the date filter needs a format, e.g. date('%Y-%m-%d')")
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif not isinstance(value, date_type):
        raise TypeError(f"the date filter cannot format {type(value).__name__} values")
    return value.strftime(format)


def json_script(value: Any, element_id: str | None = None) -> Markup:
    """Serialise ``value`` into a ``<script type="application/json">`` element.

    Characters that could close the script element early are escaped, so the
    output is safe to place anywhere in an HTML document.
    """
    payload = json.dumps(value, separators=(",", ":")).translate(_JSON_ESCAPES)
    if element_id:
        return Markup('<script id="{}" type="application/json">{}</script>').format(
            element_id, Markup(payload)
        )
    return Markup('<script type="application/json">{}</script>').format(Markup(payload))


def log(value: Any) -> Any:
    """Print a value while rendering and pass it through unchanged."""
    click.echo(click.style("[log] ", fg="cyan") + repr(value))
    return value


class _HighlightRenderer(mistune.HTMLRenderer):
    """Markdown renderer with Pygments syntax highlighting."""

    def block_code(self, code: str, info: str | None = None) -> str:
        """Render a code block with Pygments syntax highlighting.

        Args:
            code: The code content.
            info: Language identifier (e.g., 'python', 'javascript').

        Returns:
            HTML string with highlighted code.
        """
        language = info.split()[0] if info else None
        if language:
            try:
                lexer = get_lexer_by_name(language, stripall=True)
            except ClassNotFound:
                lexer = None
            if lexer is not None:
                formatter = HtmlFormatter(nowrap=False, cssclass="highlight")
                return highlight(code, lexer, formatter)
        lang_class = f' class="language-{escape(language)}"' if language else ""
        return f"<pre><code{lang_class}>{escape(code)}</code></pre>\n"


def markdown(text: str) -> Markup:
    """Render Markdown to HTML."""
    render = mistune.create_markdown(
        renderer=_HighlightRenderer(escape=False),
        plugins=["strikethrough", "footnotes", "table", "url"],
    )
    return Markup(render(str(text)))


def register_filters(registry: ExtensionRegistry) -> None:
    """Register the built-in filters."""
    registry.filter("date", date, arity=2)
    registry.filter("json_script", json_script, arity=2)
    registry.filter("log", log, arity=1)
    registry.filter("markdown", markdown, arity=1)
