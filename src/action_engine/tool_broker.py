"""Unified action-invocation layer for the tool loop.

This isolates how a model's tool selection becomes a sub-action run (argument
parsing, allow-list checks, error normalization) from the loop's turn logic.
Failures come back as a ``ToolCallRecord`` so the loop can feed them to the model.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from .errors import EngineError, InputValidationError, StepFailedError
from .logging import get_logger
from .model_client import ToolCall
from .schemas import StepOutput, TraceNode
from .state import RunContext, ToolCallRecord
from .trace import Tracer

if TYPE_CHECKING:
    from .runner import ActionRunner

logger = get_logger("tool_broker")


def _error_payload(exc: EngineError) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": exc.message, "code": exc.code}
    errors: list[str] = []
    if isinstance(exc, InputValidationError):
        errors = exc.errors
    elif isinstance(exc, StepFailedError):
        errors = exc.validation_errors
    if errors:
        payload["details"] = {"errors": errors}
    return payload


class ToolBroker:
    def __init__(self, runner: "ActionRunner") -> None:
        self._runner = runner

    async def run(
        self,
        name: str,
        arguments: Mapping[str, Any],
        ctx: RunContext,
        tracer: Tracer,
        parent: TraceNode,
        *,
        strict: bool = True,
    ) -> StepOutput:
        """Run an action with the loop context projected onto its inputs plus the model's arguments."""
        target = self._runner.registry[name]
        child = ctx.child(target.input_schema, extra=arguments)
        return await self._runner.run_action(target, child, tracer, parent, strict=strict)

    async def invoke(
        self,
        call: ToolCall,
        allowed: Iterable[str],
        ctx: RunContext,
        tracer: Tracer,
        parent: TraceNode,
    ) -> ToolCallRecord:
        allowed = tuple(allowed)
        try:
            arguments = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError as exc:
            return self._failed(call, {}, {"error": f"Invalid JSON in tool arguments: {exc}"})
        if not isinstance(arguments, dict):
            return self._failed(call, {}, {"error": "Tool arguments must be a JSON object"})
        if call.name not in allowed:
            return self._failed(
                call,
                arguments,
                {"error": f"Unknown action: {call.name}", "details": {"available_actions": list(allowed)}},
            )

        start = time.time()
        try:
            output = await self.run(call.name, arguments, ctx, tracer, parent)
        except EngineError as exc:
            logger.info(
                "tool_call_failed",
                extra={
                    "extra": {
                        "trace_id": tracer.trace_id,
                        "action": call.name,
                        "latency_ms": int((time.time() - start) * 1000),
                        "error": exc.message,
                    }
                },
            )
            return self._failed(call, arguments, _error_payload(exc))

        logger.info(
            "tool_call",
            extra={
                "extra": {
                    "trace_id": tracer.trace_id,
                    "action": call.name,
                    "latency_ms": int((time.time() - start) * 1000),
                }
            },
        )
        return ToolCallRecord(
            call_id=call.id,
            name=call.name,
            arguments=arguments,
            ok=True,
            output=output.result,
        )

    @staticmethod
    def _failed(call: ToolCall, arguments: dict[str, Any], error: dict[str, Any]) -> ToolCallRecord:
        return ToolCallRecord(call_id=call.id, name=call.name, arguments=arguments, ok=False, error=error)
