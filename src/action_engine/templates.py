"""Prompt template rendering.

Templates are jinja2: ``{{ var }}`` interpolation, ``{% if %}`` sections keyed
on truthiness and ``{% for %}`` over array values. Unknown variables render
empty so optional sections do not fail a run.
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Mapping

from jinja2 import ChainableUndefined, Environment, Template, meta

from .context_provider import AmbientContextProvider
from .state import RunContext


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


_env = Environment(
    undefined=ChainableUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)
_env.filters["json"] = _to_json


@lru_cache(maxsize=512)
def _compile(template: str) -> Template:
    return _env.from_string(template)


@lru_cache(maxsize=512)
def template_variables(template: str) -> frozenset[str]:
    """Top-level names a template reads."""
    return frozenset(meta.find_undeclared_variables(_env.parse(template)))


def render(template: str, values: Mapping[str, Any]) -> str:
    return _compile(template).render(**values)


class PromptResolver:
    """Renders step prompts against the run context plus fresh ambient values."""

    def __init__(self, ambient: AmbientContextProvider) -> None:
        self._ambient = ambient

    async def render(
        self,
        templates: Mapping[str, str],
        ctx: RunContext,
        extra: Mapping[str, Any] | None = None,
    ) -> dict[str, str]:
        wanted: set[str] = set()
        for source in templates.values():
            wanted |= template_variables(source)
        ambient = await self._ambient.fetch(wanted & self._ambient.known())
        values: dict[str, Any] = {**ctx.values, "conversation": ctx.conversation}
        if extra:
            values.update(extra)
        values.update(ambient)
        return {name: render(source, values) for name, source in templates.items()}
