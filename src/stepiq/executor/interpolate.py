"""Prompt template rendering against the run context.

Templates use Handlebars syntax (``{{input.topic}}``, ``{{#if}}``,
``{{#each}}``), compiled with pybars. Output is not HTML-escaped, and any
missing path (``{{steps.nope.output}}``) renders as an empty string.
"""

from __future__ import annotations

import json
import re
from functools import lru_cache
from typing import Any, Callable

from pybars import Compiler

from stepiq.core.exceptions import TemplateError

_compiler = Compiler()

# Double-stash expressions that are not block, close, partial, comment or else.
_ESCAPED_EXPR = re.compile(r"(?<!\{)\{\{(?![{#/^>!&~])(?!\s*else\s*\}\})\s*([^{}]*?)\s*\}\}(?!\})")
_EXPRESSION = re.compile(r"\{\{(.*?)\}\}", re.S)


class _Node:
    """Read-only view of a mapping whose only attributes are its keys.

    pybars resolves path segments with ``getattr`` before item lookup, so a
    plain dict would answer ``{{items}}`` with ``dict.items``.
    """

    __slots__ = ("_data",)

    def __init__(self, data: dict[str, Any]) -> None:
        object.__setattr__(self, "_data", data)

    def __getattr__(self, name: str) -> Any:
        try:
            return _wrap(self._data[name])
        except KeyError:
            raise AttributeError(name) from None

    def __getitem__(self, name: str) -> Any:
        return _wrap(self._data[name])

    def __iter__(self):
        return (_wrap(v) for v in self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    def __str__(self) -> str:
        return json.dumps(self._data, default=str)


def _wrap(value: Any) -> Any:
    if isinstance(value, dict):
        return _Node(value)
    if isinstance(value, list):
        return [_wrap(v) for v in value]
    return value


def _unescaped(template: str) -> str:
    return _ESCAPED_EXPR.sub(r"{{{\1}}}", template)


@lru_cache(maxsize=256)
def _compile(template: str) -> Callable[..., Any]:
    for expr in _EXPRESSION.findall(template):
        if "__" in expr:
            raise TemplateError(f"Template path not allowed: {expr.strip('{} ')}")
    return _compiler.compile(_unescaped(template))


def interpolate(template: str, context: dict[str, Any]) -> str:
    return str(_compile(template)(_Node(context)))
