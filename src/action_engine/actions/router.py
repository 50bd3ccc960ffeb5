"""ROUTER action: picks one tool per turn until FINAL_RESPONSE."""

from __future__ import annotations

import time

from ..context_provider import PREVIOUS_CHAT_KEY
from ..prompts import ROUTER_CONTINUATION, ROUTER_MESSAGE, ROUTER_SYSTEM
from ..schemas import Action, FieldSpec, FunctionStep, ModelStep, ToolChoice
from ..state import RunContext
from ..storage import KeyValueStore
from .final_response import FINAL_RESPONSE
from .llm import LLM_TOOL
from .time import CURRENT_TIME

ROUTER = "ROUTER"


def router_action(store: KeyValueStore | None = None, *, max_iterations: int = 5) -> Action:
    post_steps = ()
    if store is not None:

        async def remember_exchange(ctx: RunContext) -> dict:
            # Read back by the previous_chat ambient value on the next request.
            await store.set(
                PREVIOUS_CHAT_KEY,
                {"goal": ctx.get("goal"), "answer": ctx.get("final_answer"), "timestamp": time.time()},
            )
            return {}

        post_steps = (FunctionStep(remember_exchange, name="remember_exchange"),)

    return Action(
        name=ROUTER,
        description="Route a user request to the right tools and finish with a final response.",
        input_schema={"goal": FieldSpec("string", required=True, description="The goal to accomplish")},
        steps=(
            ModelStep(
                system_prompt=ROUTER_SYSTEM,
                message=ROUTER_MESSAGE,
                continuation_message=ROUTER_CONTINUATION,
                tier="HIGH",
                tool_choice=ToolChoice(
                    available_actions=(CURRENT_TIME, LLM_TOOL, FINAL_RESPONSE),
                    stop_action=FINAL_RESPONSE,
                    max_iterations=max_iterations,
                ),
            ),
        ),
        post_steps=post_steps,
        examples=("What time is it in Tokyo?", "Explain recursion with an example"),
    )
