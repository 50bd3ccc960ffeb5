"""Step executor.

Runs an action's steps in declared order against one ``RunContext``, merging
each result before the next step starts. Every action, step and model call gets
a trace node that is closed with success or error before control returns.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Mapping

from .cascade import ModelCascade
from .errors import CascadeExhaustedError, InputValidationError, StepFailedError, StepTimeoutError
from .logging import get_logger
from .model_client import ModelRequest, ModelResponse
from .registry import ActionRegistry
from .schemas import (
    Action,
    FunctionStep,
    ModelCandidate,
    ModelStep,
    Step,
    StepOutput,
    SubActionStep,
    Tier,
    TraceNode,
    step_kind,
)
from .state import RunContext
from .templates import PromptResolver
from .tool_loop import ConversationLimits, ToolLoop
from .trace import Tracer
from .validation import validate_params

logger = get_logger("runner")


def _coerce_output(value: Any) -> StepOutput:
    if value is None:
        return StepOutput()
    if isinstance(value, StepOutput):
        return value
    if isinstance(value, Mapping):
        return StepOutput(result=dict(value))
    raise TypeError(f"Function step must return a mapping, got {type(value).__name__}")


class ActionRunner:
    def __init__(
        self,
        registry: ActionRegistry,
        cascade: ModelCascade,
        resolver: PromptResolver,
        *,
        step_timeout_s: float = 20.0,
        limits: ConversationLimits | None = None,
    ) -> None:
        self.registry = registry
        self.cascade = cascade
        self.resolver = resolver
        self._step_timeout_s = step_timeout_s
        self._tool_loop = ToolLoop(self, limits=limits)

    async def run_action(
        self,
        action: Action | str,
        ctx: RunContext,
        tracer: Tracer,
        parent: TraceNode | None = None,
        *,
        strict: bool = True,
    ) -> StepOutput:
        """Validate, then run every step; returns the last non-skipped step's result.

        With ``strict`` an input validation failure aborts the action, otherwise it
        is logged and recorded as a trace warning.
        """
        if isinstance(action, str):
            action = self.registry[action]
        node = tracer.start("action", action.name, parent, input=ctx.snapshot())

        validation = validate_params(ctx.values, action.input_schema)
        if not validation.valid:
            error = InputValidationError(action.name, validation.errors)
            if strict:
                tracer.end(node, error=error)
                raise error
            logger.warning(
                "input_validation_warning",
                extra={"extra": {"trace_id": tracer.trace_id, "action": action.name, "errors": validation.errors}},
            )
            tracer.warn(node, "input_validation", {"errors": validation.errors})

        last: dict[str, Any] = {}
        try:
            for index, step in enumerate(action.steps):
                output = await self.run_step(action, index, step, ctx, tracer, node)
                if not output.skipped:
                    last = output.result
        except StepFailedError as exc:
            tracer.end(node, error=exc)
            raise

        result = dict(last)
        tracer.end(node, output=result)
        return StepOutput(result=result, conversation=ctx.conversation)

    async def run_step(
        self,
        action: Action,
        index: int,
        step: Step,
        ctx: RunContext,
        tracer: Tracer,
        parent: TraceNode,
    ) -> StepOutput:
        node = tracer.start("step", f"{step_kind(step)}:{step.label}", parent, meta={"index": index})
        try:
            output = await self._dispatch(step, ctx, tracer, node)
        except Exception as exc:
            tracer.end(node, error=exc)
            logger.warning(
                "step_failed",
                extra={
                    "extra": {
                        "trace_id": tracer.trace_id,
                        "action": action.name,
                        "step_index": index,
                        "error": getattr(exc, "message", None) or str(exc),
                    }
                },
            )
            raise StepFailedError(action.name, index, exc) from exc

        if output.skipped:
            tracer.end(node, output={"skipped": True})
            return output
        ctx.merge(output.result)
        if output.conversation is not None:
            ctx.conversation = list(output.conversation)
        tracer.end(node, output=output.result)
        return output

    async def _dispatch(self, step: Step, ctx: RunContext, tracer: Tracer, node: TraceNode) -> StepOutput:
        if isinstance(step, FunctionStep):
            try:
                value = await asyncio.wait_for(self._call_handler(step, ctx), timeout=self._step_timeout_s)
            except asyncio.TimeoutError:
                raise StepTimeoutError(self._step_timeout_s) from None
            return _coerce_output(value)

        if isinstance(step, ModelStep):
            if step.skip_if is not None and step.skip_if(ctx):
                return StepOutput(skipped=True)
            if step.tool_choice is not None:
                return await self._tool_loop.run(step, ctx, tracer, node)
            return await self._structured(step, ctx, tracer, node)

        if isinstance(step, SubActionStep):
            if step.skip_if is not None and step.skip_if(ctx):
                return StepOutput(skipped=True)
            target = self.registry[step.action]
            output = await self.run_action(target, ctx.child(target.input_schema), tracer, node, strict=False)
            return StepOutput(result=output.result, conversation=output.conversation)

        step_kind(step)
        raise AssertionError("unreachable")

    @staticmethod
    async def _call_handler(step: FunctionStep, ctx: RunContext) -> Any:
        # Sync handlers run in a worker thread so the step timeout can fire.
        if inspect.iscoroutinefunction(step.handler):
            value = step.handler(ctx)
        else:
            value = await asyncio.to_thread(step.handler, ctx)
        if inspect.isawaitable(value):
            value = await value
        return value

    async def _structured(self, step: ModelStep, ctx: RunContext, tracer: Tracer, node: TraceNode) -> StepOutput:
        prompts = await self.resolver.render({"system": step.system_prompt, "message": step.message}, ctx)
        request = ModelRequest(
            messages=[
                {"role": "system", "content": prompts["system"]},
                {"role": "user", "content": prompts["message"]},
            ],
            output_schema=step.output_schema,
        )
        response = await self.call_model(request, step.tier, tracer, node)
        return StepOutput(result=dict(response.structured or {}))

    async def call_model(self, request: ModelRequest, tier: Tier, tracer: Tracer, parent: TraceNode) -> ModelResponse:
        node = tracer.start(
            "model_call",
            f"tier:{tier}",
            parent,
            input={"messages": request.messages, "tools": [t["function"]["name"] for t in request.tools or []]},
        )

        def on_error(candidate: ModelCandidate, error: BaseException, phase: str) -> None:
            tracer.warn(node, "model_attempt_failed", {"model": candidate.model_id, "phase": phase, "error": str(error)})

        try:
            generation = await self.cascade.generate(request, tier=tier, on_error=on_error)
        except CascadeExhaustedError as exc:
            tracer.end(node, error=exc, meta={"attempts": exc.attempts})
            raise
        except Exception as exc:
            tracer.end(node, error=exc)
            raise
        tracer.end(
            node,
            output=generation.response.summary(),
            meta={
                "model": generation.candidate.model_id,
                "endpoint": generation.candidate.endpoint,
                "usage": generation.response.usage,
                "attempts": [a.as_dict() for a in generation.attempts],
            },
        )
        return generation.response
