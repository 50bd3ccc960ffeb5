"""Built-in action catalogue."""

from __future__ import annotations

from ..registry import ActionRegistry
from ..storage import KeyValueStore
from .final_response import FINAL_RESPONSE, final_response_action
from .llm import LLM_TOOL, llm_action
from .router import ROUTER, router_action
from .time import CURRENT_TIME, current_time_action

__all__ = ["CURRENT_TIME", "FINAL_RESPONSE", "LLM_TOOL", "ROUTER", "build_registry"]


def build_registry(store: KeyValueStore | None = None, *, default_timezone: str = "UTC") -> ActionRegistry:
    return ActionRegistry(
        [
            current_time_action(default_timezone),
            llm_action(),
            final_response_action(),
            router_action(store),
        ]
    )
