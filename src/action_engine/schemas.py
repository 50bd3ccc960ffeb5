"""Shared engine schemas (single source of truth).

Action and step definitions are frozen dataclasses: they are built once at
startup and are read-only afterwards. Records that cross the service boundary
(model candidates, trace nodes) are pydantic models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError

Tier = Literal["LOW", "MEDIUM", "HIGH"]
# Highest first; a tier cascades into every tier after it.
TIER_ORDER: tuple[Tier, ...] = ("HIGH", "MEDIUM", "LOW")

FieldType = Literal["string", "number", "boolean", "array", "object"]
Message = dict[str, Any]

NO_TOOL_CHOICE = "no_tool_choice"
NO_TOOL_USE = "no_tool_use"


@dataclass(frozen=True)
class FieldSpec:
    """One declared input field of an action."""

    type: FieldType
    required: bool = False
    description: str = ""
    enum: tuple[str, ...] | None = None

    def json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.type == "array":
            schema["items"] = {}
        return schema


InputSchema = Mapping[str, FieldSpec]


@dataclass
class StepOutput:
    """What a step hands back to the executor."""

    result: dict[str, Any] = field(default_factory=dict)
    conversation: list[Message] | None = None
    skipped: bool = False


# Handlers receive the live RunContext and may be sync or async.
StepHandler = Callable[[Any], Union[Mapping[str, Any], StepOutput, None, Awaitable[Any]]]
SkipPredicate = Callable[[Any], bool]


@dataclass(frozen=True)
class ToolChoice:
    available_actions: tuple[str, ...]
    stop_action: str
    max_iterations: int = 5

    def __post_init__(self) -> None:
        object.__setattr__(self, "available_actions", tuple(self.available_actions))
        if not self.available_actions:
            raise ConfigurationError("tool_choice.available_actions must not be empty")
        if self.stop_action not in self.available_actions:
            raise ConfigurationError(
                f"tool_choice.stop_action {self.stop_action!r} is not in available_actions"
            )
        if self.max_iterations <= 0:
            raise ConfigurationError("tool_choice.max_iterations must be > 0")


@dataclass(frozen=True)
class FunctionStep:
    handler: StepHandler
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or getattr(self.handler, "__name__", "anonymous")


@dataclass(frozen=True)
class ModelStep:
    """Single-turn structured call (``output_schema``) or multi-turn tool loop (``tool_choice``)."""

    system_prompt: str
    message: str
    tier: Tier = "MEDIUM"
    output_schema: dict[str, Any] | None = None
    tool_choice: ToolChoice | None = None
    continuation_message: str | None = None
    skip_if: SkipPredicate | None = None

    def __post_init__(self) -> None:
        if (self.output_schema is None) == (self.tool_choice is None):
            raise ConfigurationError("a model step needs exactly one of output_schema or tool_choice")
        if self.continuation_message is not None and self.tool_choice is None:
            raise ConfigurationError("continuation_message is only meaningful with tool_choice")

    @property
    def label(self) -> str:
        return "tool_choice" if self.tool_choice else "model"


@dataclass(frozen=True)
class SubActionStep:
    action: str
    skip_if: SkipPredicate | None = None

    @property
    def label(self) -> str:
        return self.action


Step = Union[FunctionStep, ModelStep, SubActionStep]


def step_kind(step: Step) -> str:
    if isinstance(step, FunctionStep):
        return "function"
    if isinstance(step, ModelStep):
        return "model"
    if isinstance(step, SubActionStep):
        return "action"
    raise ConfigurationError(f"Invalid step type: {type(step).__name__}")


@dataclass(frozen=True)
class Action:
    name: str
    steps: tuple[Step, ...]
    description: str = ""
    input_schema: InputSchema = field(default_factory=dict)
    # Run after the result is handed back; only for top-level runs.
    post_steps: tuple[Step, ...] = ()
    examples: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("action name must not be empty")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "post_steps", tuple(self.post_steps))
        object.__setattr__(self, "input_schema", dict(self.input_schema))
        for step in (*self.steps, *self.post_steps):
            step_kind(step)

    def input_json_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {key: spec.json_schema() for key, spec in self.input_schema.items()},
            "required": [key for key, spec in self.input_schema.items() if spec.required],
        }

    def referenced_actions(self) -> set[str]:
        names: set[str] = set()
        for step in (*self.steps, *self.post_steps):
            if isinstance(step, SubActionStep):
                names.add(step.action)
            elif isinstance(step, ModelStep) and step.tool_choice:
                names.update(step.tool_choice.available_actions)
        return names


class ModelCandidate(BaseModel):
    """One concrete (endpoint, model, routing) combination eligible for a tier."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    endpoint: str
    model_id: str
    provider: str | None = None
    capability_flags: frozenset[str] = Field(default_factory=frozenset)

    @property
    def key(self) -> str:
        return f"{self.endpoint}:{self.model_id}:{self.provider or ''}"

    @property
    def no_tool_choice(self) -> bool:
        return NO_TOOL_CHOICE in self.capability_flags

    @property
    def no_tool_use(self) -> bool:
        return NO_TOOL_USE in self.capability_flags

    def with_flags(self, flags: set[str] | frozenset[str]) -> "ModelCandidate":
        if not flags or flags <= self.capability_flags:
            return self
        return self.model_copy(update={"capability_flags": self.capability_flags | frozenset(flags)})


TraceKind = Literal["action", "step", "model_call", "warning"]
TraceStatus = Literal["running", "success", "error"]


class TraceNode(BaseModel):
    id: str
    kind: TraceKind
    name: str
    status: TraceStatus = "running"
    input: Any | None = None
    output: Any | None = None
    error: str | None = None
    started_at: str
    start_time: float
    duration_ms: float | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    children: list["TraceNode"] = Field(default_factory=list)
