"""Multi-turn tool loop.

Each turn the model must pick exactly one action from the step's allow-list.
The loop ends when the stop action succeeds, or after ``max_iterations`` turns
by force-running the stop action.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .logging import get_logger
from .model_client import ModelRequest
from .prompts import (
    CONVERSATION_TRUNCATED,
    EXTRA_TOOL_CALL_IGNORED,
    MAX_ITERATIONS_NOTE,
    TOOL_REQUIRED_CORRECTION,
)
from .schemas import Message, ModelStep, StepOutput, TraceNode
from .state import RunContext
from .templates import render
from .tool_broker import ToolBroker
from .trace import Tracer

if TYPE_CHECKING:
    from .runner import ActionRunner

logger = get_logger("tool_loop")


@dataclass(frozen=True)
class ConversationLimits:
    max_messages: int = 10
    keep_head: int = 2
    keep_tail: int = 6


def prune_conversation(messages: list[Message], limits: ConversationLimits) -> list[Message]:
    """Collapse the middle of a long conversation into one marker message.

    The head keeps the grounding turn, the tail keeps recent turns. A tail never
    starts with a tool result whose assistant tool call was dropped.
    """
    if len(messages) <= limits.max_messages:
        return messages
    head = messages[: limits.keep_head]
    tail = messages[-limits.keep_tail :] if limits.keep_tail > 0 else []
    while tail and tail[0].get("role") == "tool":
        tail = tail[1:]
    marker = {"role": "system", "content": CONVERSATION_TRUNCATED}
    return [*head, marker, *tail]


def _tool_message(call_id: str, payload: dict) -> Message:
    return {"role": "tool", "tool_call_id": call_id, "content": json.dumps(payload, ensure_ascii=False, default=str)}


class ToolLoop:
    def __init__(self, runner: "ActionRunner", *, limits: ConversationLimits | None = None) -> None:
        self._runner = runner
        self._broker = ToolBroker(runner)
        self._limits = limits or ConversationLimits()

    @property
    def broker(self) -> ToolBroker:
        return self._broker

    async def run(self, step: ModelStep, ctx: RunContext, tracer: Tracer, parent: TraceNode) -> StepOutput:
        choice = step.tool_choice
        if choice is None:
            raise ValueError("tool loop requires a tool_choice model step")
        resolver = self._runner.resolver
        tools = self._runner.registry.build_tools(choice.available_actions, choice.stop_action)
        extra = {"stop_action": choice.stop_action}

        prompts = await resolver.render({"system": step.system_prompt, "message": step.message}, ctx, extra)
        loop_ctx = RunContext(
            values=dict(ctx.values),
            conversation=[
                {"role": "system", "content": prompts["system"]},
                {"role": "user", "content": prompts["message"]},
            ],
        )

        for turn in range(1, choice.max_iterations + 1):
            if turn > 1:
                fresh = await resolver.render({"system": step.system_prompt}, loop_ctx, extra)
                loop_ctx.conversation[0] = {"role": "system", "content": fresh["system"]}

            logger.info(
                "tool_loop_turn",
                extra={
                    "extra": {
                        "trace_id": tracer.trace_id,
                        "turn": turn,
                        "max_iterations": choice.max_iterations,
                        "messages": len(loop_ctx.conversation),
                    }
                },
            )
            request = ModelRequest(messages=list(loop_ctx.conversation), tools=tools, stop_tool=choice.stop_action)
            response = await self._runner.call_model(request, step.tier, tracer, parent)

            if not response.tool_calls:
                tracer.warn(parent, "free_text_response", {"turn": turn, "content": response.content})
                loop_ctx.conversation.append(response.assistant_message())
                loop_ctx.conversation.append({"role": "user", "content": render(TOOL_REQUIRED_CORRECTION, extra)})
                loop_ctx.conversation = prune_conversation(loop_ctx.conversation, self._limits)
                continue

            loop_ctx.conversation.append(response.assistant_message())
            call, *ignored = response.tool_calls
            record = await self._broker.invoke(call, choice.available_actions, loop_ctx, tracer, parent)

            if record.ok and record.name == choice.stop_action:
                return StepOutput(result=dict(record.output or {}), conversation=loop_ctx.conversation)

            loop_ctx.conversation.append(_tool_message(call.id, record.tool_payload()))
            for extra_call in ignored:
                loop_ctx.conversation.append(_tool_message(extra_call.id, {"error": EXTRA_TOOL_CALL_IGNORED}))
            if record.ok:
                loop_ctx.merge(record.output)

            follow_up = await resolver.render(
                {"message": step.continuation_message or step.message}, loop_ctx, extra
            )
            loop_ctx.conversation.append({"role": "user", "content": follow_up["message"]})
            loop_ctx.conversation = prune_conversation(loop_ctx.conversation, self._limits)

        logger.warning(
            "tool_loop_forced_stop",
            extra={
                "extra": {
                    "trace_id": tracer.trace_id,
                    "stop_action": choice.stop_action,
                    "max_iterations": choice.max_iterations,
                }
            },
        )
        tracer.warn(parent, "Max iterations reached", {"max_iterations": choice.max_iterations})
        arguments = {"justification": MAX_ITERATIONS_NOTE, "note": MAX_ITERATIONS_NOTE}
        forced = await self._broker.run(choice.stop_action, arguments, loop_ctx, tracer, parent, strict=False)
        return StepOutput(result=dict(forced.result), conversation=loop_ctx.conversation)
