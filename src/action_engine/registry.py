"""Action registry.

Built once at startup and read-only afterwards. Every action reference (sub-action
steps, tool-choice allow-lists, post-steps) is resolved here, so a dangling name
is a startup error rather than a lookup miss mid-run.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from .errors import RegistryError, UnknownActionError
from .schemas import Action


class ActionRegistry(Mapping[str, Action]):
    def __init__(self, actions: Iterable[Action]) -> None:
        table: dict[str, Action] = {}
        for action in actions:
            if action.name in table:
                raise RegistryError(f"Duplicate action name: {action.name}")
            table[action.name] = action

        dangling = sorted(
            f"{action.name} -> {ref}"
            for action in table.values()
            for ref in action.referenced_actions()
            if ref not in table
        )
        if dangling:
            raise RegistryError(
                f"Unresolved action references: {', '.join(dangling)}",
                details={"unresolved": dangling},
            )
        self._actions: Mapping[str, Action] = MappingProxyType(table)

    def __getitem__(self, name: str) -> Action:
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownActionError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def get(self, name: str, default: Action | None = None) -> Action | None:
        return self._actions.get(name, default)

    def __iter__(self) -> Iterator[str]:
        return iter(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "name": action.name,
                "description": action.description,
                "input_schema": action.input_json_schema(),
                "steps": len(action.steps),
                "post_steps": len(action.post_steps),
                "examples": list(action.examples),
            }
            for action in self._actions.values()
        ]

    def build_tools(self, names: Iterable[str], stop_action: str | None = None) -> list[dict[str, Any]]:
        """Translate actions into OpenAI tool schema."""
        tools: list[dict[str, Any]] = []
        for name in names:
            action = self[name]
            description = action.description or action.name
            if name == stop_action:
                description = f"{description} [STOP ACTION: ends the task]"
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": action.name,
                        "description": description,
                        "parameters": action.input_json_schema(),
                    },
                }
            )
        return tools
