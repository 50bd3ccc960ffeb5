"""Per-run state containers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from .schemas import InputSchema, Message


@dataclass
class RunContext:
    """Key/value accumulator threaded through one run.

    Each step's result is merged in (later keys win) and is visible to every
    following step. ``conversation`` is the running message history and is only
    read by model-facing steps.
    """

    values: dict[str, Any] = field(default_factory=dict)
    conversation: list[Message] = field(default_factory=list)

    @classmethod
    def from_params(cls, params: Mapping[str, Any] | None, conversation: list[Message] | None = None) -> "RunContext":
        return cls(values=copy.deepcopy(dict(params or {})), conversation=list(conversation or []))

    def merge(self, partial: Mapping[str, Any] | None) -> None:
        if partial:
            self.values.update(partial)

    def project(self, schema: InputSchema) -> dict[str, Any]:
        """Snapshot of the keys a target action declared, decoupled from later merges."""
        return {key: copy.deepcopy(self.values[key]) for key in schema if key in self.values}

    def child(self, schema: InputSchema, extra: Mapping[str, Any] | None = None) -> "RunContext":
        values = self.project(schema)
        if extra:
            values.update(copy.deepcopy(dict(extra)))
        return RunContext(values=values, conversation=list(self.conversation))

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.values)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)


@dataclass
class ToolCallRecord:
    """Outcome of one model-selected action inside the tool loop."""

    call_id: str
    name: str
    arguments: dict[str, Any]
    ok: bool
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def tool_payload(self) -> dict[str, Any]:
        if self.ok:
            return self.output or {}
        return self.error or {"error": "unknown error"}
