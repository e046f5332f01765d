"""Template extension registry for Baker.

Tags and filters are registered with their capabilities spelled out (how many
positional arguments they take and whether they are coroutines) instead of
being poked into the Jinja environment directly. The registry then installs
them: tags become globals whose output is trusted markup, filters become
filters.

Key classes:
- Extension: One registered tag or filter.
- ExtensionRegistry: Name to Extension mapping that installs into Jinja.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from jinja2 import Environment
from markupsafe import Markup

TAG = "tag"
FILTER = "filter"
KINDS = (TAG, FILTER)


def positional_arity(handler: Callable) -> int | None:
    """Count the positional parameters of ``handler``.

    Returns:
        The count, or None when the handler accepts ``*args``.
    """
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return None
    count = 0
    for parameter in signature.parameters.values():
        if parameter.kind == parameter.VAR_POSITIONAL:
            return None
        if parameter.kind in (parameter.POSITIONAL_ONLY, parameter.POSITIONAL_OR_KEYWORD):
            count += 1
    return count


@dataclass
class Extension:
    """A template tag or filter.

    Attributes:
        name: Name used in templates.
        handler: The callable doing the work.
        kind: ``tag`` or ``filter``.
        arity: Maximum positional arguments; None means unlimited. For
            filters the filtered value counts as the first argument.
        is_async: Whether the handler returns an awaitable.
    """

    name: str
    handler: Callable[..., Any]
    kind: str = TAG
    arity: int | None = None
    is_async: bool | None = None

    def __post_init__(self):
        if self.kind not in KINDS:
            raise ValueError(f"Unknown extension kind {self.kind!r}; expected tag or filter")
        if self.is_async is None:
            self.is_async = inspect.iscoroutinefunction(self.handler)
        if self.arity is None:
            self.arity = positional_arity(self.handler)

    def check_arguments(self, args: tuple) -> None:
        if self.arity is not None and len(args) > self.arity:
            raise TypeError(
                f"{self.name}() takes at most {self.arity} positional "
                f"argument(s) but {len(args)} were given"
            )

    def _wrap(self, value: Any) -> Any:
        if self.kind == TAG and isinstance(value, str):
            return Markup(value)
        return value

    async def _call_async(self, *args, **kwargs) -> Any:
        return self._wrap(await self.handler(*args, **kwargs))

    def __call__(self, *args, **kwargs) -> Any:
        self.check_arguments(args)
        if self.is_async:
            # the async Jinja environment awaits whatever a call returns
            return self._call_async(*args, **kwargs)
        return self._wrap(self.handler(*args, **kwargs))


class ExtensionRegistry:
    """Registry of template tags and filters.

    Later registrations replace earlier ones with the same name, so user
    extensions can override the built-ins.
    """

    def __init__(self):
        self._extensions: dict[str, Extension] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        kind: str = TAG,
        arity: int | None = None,
        is_async: bool | None = None,
    ) -> Extension:
        """Register a tag or filter and return its Extension."""
        extension = Extension(name, handler, kind=kind, arity=arity, is_async=is_async)
        self._extensions[name] = extension
        return extension

    def tag(self, name: str, handler: Callable[..., Any], **options) -> Extension:
        return self.register(name, handler, kind=TAG, **options)

    def filter(self, name: str, handler: Callable[..., Any], **options) -> Extension:
        return self.register(name, handler, kind=FILTER, **options)

    def get(self, name: str) -> Extension | None:
        return self._extensions.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._extensions

    def __iter__(self) -> Iterator[Extension]:
        return iter(self._extensions.values())

    def __len__(self) -> int:
        return len(self._extensions)

    def install(self, env: Environment) -> None:
        """Install every extension into a Jinja environment."""
        for extension in self:
            if extension.kind == TAG:
                env.globals[extension.name] = extension
            else:
                env.filters[extension.name] = extension
