from __future__ import annotations

import inspect
import json
from typing import Any

import pytest

from action_engine.cascade import ModelCascade
from action_engine.engine import Engine
from action_engine.errors import ModelCallError
from action_engine.model_client import ModelRequest, ModelResponse, ToolCall
from action_engine.registry import ActionRegistry
from action_engine.schemas import ModelCandidate
from action_engine.stats import ModelStatsStore
from action_engine.storage import InMemoryStore
from action_engine.templates import PromptResolver
from action_engine.tool_loop import ConversationLimits
from action_engine.trace import TraceStore


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedClient:
    """Pops queued responses per model id; exception instances are raised."""

    def __init__(self, script: dict[str, list[Any]] | None = None, default: Any = None) -> None:
        self.script = {model: list(items) for model, items in (script or {}).items()}
        self.default = default
        self.calls: list[tuple[ModelCandidate, ModelRequest]] = []

    @property
    def models(self) -> list[str]:
        return [candidate.model_id for candidate, _ in self.calls]

    @property
    def requests(self) -> list[ModelRequest]:
        return [request for _, request in self.calls]

    async def call(self, request: ModelRequest, candidate: ModelCandidate) -> ModelResponse:
        self.calls.append((candidate, request))
        queue = self.script.get(candidate.model_id)
        item = queue.pop(0) if queue else self.default
        if callable(item):
            item = item(request, candidate)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        if item is None:
            raise ModelCallError(f"no scripted response for {candidate.model_id}")
        return item


class FixedAmbient:
    def __init__(self, values: dict[str, Any] | None = None) -> None:
        self.values = values if values is not None else {"current_datetime": "Monday, January 05, 2026 09:00 UTC"}
        self.fetches: list[list[str]] = []

    def known(self) -> set[str]:
        return set(self.values)

    async def fetch(self, names) -> dict[str, Any]:
        names = sorted(names)
        self.fetches.append(names)
        return {name: self.values[name] for name in names if name in self.values}


def candidate(model_id: str, *flags: str, endpoint: str = "test") -> ModelCandidate:
    return ModelCandidate(endpoint=endpoint, model_id=model_id, capability_flags=frozenset(flags))


def default_tiers() -> dict[str, list[ModelCandidate]]:
    return {
        "HIGH": [candidate("high-a")],
        "MEDIUM": [candidate("med-a"), candidate("med-b")],
        "LOW": [candidate("low-a")],
    }


def structured(data: dict[str, Any]) -> ModelResponse:
    return ModelResponse(content=json.dumps(data), structured=data, usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5})


def tool_call(name: str, arguments: Any = None, call_id: str = "call_1") -> ModelResponse:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments or {})
    return ModelResponse(tool_calls=[ToolCall(id=call_id, name=name, arguments=raw)])


def text(content: str) -> ModelResponse:
    return ModelResponse(content=content)


def make_cascade(client, *, tiers=None, store=None, clock=None, **kwargs) -> ModelCascade:
    stats = ModelStatsStore(store or InMemoryStore(), clock=clock or Clock())
    return ModelCascade(tiers or default_tiers(), client, stats, **kwargs)


def make_engine(
    actions,
    client,
    *,
    tiers=None,
    store=None,
    clock=None,
    ambient=None,
    step_timeout_s: float = 20.0,
    limits: ConversationLimits | None = None,
    max_traces: int = 100,
    attempt_timeout_s: float = 40.0,
) -> Engine:
    store = store or InMemoryStore()
    return Engine(
        ActionRegistry(actions),
        make_cascade(client, tiers=tiers, store=store, clock=clock, attempt_timeout_s=attempt_timeout_s),
        PromptResolver(ambient or FixedAmbient()),
        traces=TraceStore(store, max_traces=max_traces),
        step_timeout_s=step_timeout_s,
        limits=limits,
    )


def walk(node: dict[str, Any]):
    yield node
    for child in node.get("children", []):
        yield from walk(child)


@pytest.fixture
def clock() -> Clock:
    return Clock()
