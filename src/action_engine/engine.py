"""Engine facade: the entry point callers use to run actions and read traces."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from .actions import build_registry
from .cascade import ModelCascade
from .context_provider import DefaultAmbientContext
from .errors import EngineError
from .logging import get_logger
from .model_client import MockModelClient, ModelClient, OpenAIModelClient
from .registry import ActionRegistry
from .runner import ActionRunner
from .schemas import Action, Message
from .settings import EngineSettings
from .state import RunContext
from .stats import ModelStatsStore
from .storage import InMemoryStore, JsonFileStore, KeyValueStore
from .templates import PromptResolver
from .tool_loop import ConversationLimits
from .trace import TraceStore, Tracer

logger = get_logger("engine")

_TRACE_ID = re.compile(r"[A-Za-z0-9._-]{1,128}")


@dataclass
class RunOutcome:
    result: dict[str, Any]
    trace_id: str
    conversation: list[Message] = field(default_factory=list)


class Engine:
    def __init__(
        self,
        registry: ActionRegistry,
        cascade: ModelCascade,
        resolver: PromptResolver,
        *,
        traces: TraceStore | None = None,
        step_timeout_s: float = 20.0,
        limits: ConversationLimits | None = None,
    ) -> None:
        self.registry = registry
        self.cascade = cascade
        self.runner = ActionRunner(registry, cascade, resolver, step_timeout_s=step_timeout_s, limits=limits)
        self._traces = traces
        self._active: dict[str, Tracer] = {}
        self._background: set[asyncio.Task] = set()

    async def run_action(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        *,
        trace_id: str | None = None,
        conversation: list[Message] | None = None,
    ) -> RunOutcome:
        action = self.registry[name]
        if trace_id is not None and not _TRACE_ID.fullmatch(trace_id):
            raise EngineError(
                "Trace id must be 1-128 characters from [A-Za-z0-9._-]",
                code="INVALID_ARGUMENT",
                details={"trace_id": trace_id},
            )
        tracer = Tracer(self._traces, trace_id=trace_id)
        if tracer.trace_id in self._active:
            raise EngineError(f"Trace id already in use: {tracer.trace_id}", code="CONFLICT")
        self._active[tracer.trace_id] = tracer
        if trace_id is not None and self._traces is not None and await self._traces.get(trace_id) is not None:
            self._active.pop(trace_id, None)
            raise EngineError(f"Trace id already in use: {trace_id}", code="CONFLICT")
        ctx = RunContext.from_params(params, conversation)

        logger.info("action_start", extra={"extra": {"trace_id": tracer.trace_id, "action": name}})
        start = time.time()
        try:
            output = await self.runner.run_action(action, ctx, tracer, strict=True)
        except BaseException as exc:
            tracer.abandon_open(f"Run aborted: {type(exc).__name__}")
            await self._finish(tracer)
            raise
        logger.info(
            "action_complete",
            extra={
                "extra": {
                    "trace_id": tracer.trace_id,
                    "action": name,
                    "latency_ms": int((time.time() - start) * 1000),
                }
            },
        )
        outcome = RunOutcome(result=output.result, trace_id=tracer.trace_id, conversation=list(ctx.conversation))

        if action.post_steps:
            task = asyncio.get_running_loop().create_task(self._run_post_steps(action, ctx, tracer))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        else:
            await self._finish(tracer)
        return outcome

    async def _run_post_steps(self, action: Action, ctx: RunContext, tracer: Tracer) -> None:
        try:
            for index, step in enumerate(action.post_steps):
                await self.runner.run_step(action, index, step, ctx, tracer, tracer.root)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "post_step_failed",
                extra={"extra": {"trace_id": tracer.trace_id, "action": action.name, "error": str(exc)}},
            )
        finally:
            tracer.abandon_open("Post-steps aborted")
            await self._finish(tracer)

    async def _finish(self, tracer: Tracer) -> None:
        try:
            await tracer.finalize()
        finally:
            self._active.pop(tracer.trace_id, None)

    async def get_trace(self, trace_id: str) -> dict[str, Any] | None:
        """Trace tree of an in-progress or finished run."""
        tracer = self._active.get(trace_id)
        if tracer is not None:
            return tracer.snapshot()
        if self._traces is None:
            return None
        return await self._traces.get(trace_id)

    async def list_traces(self, limit: int | None = None) -> list[dict[str, Any]]:
        if self._traces is None:
            return []
        return await self._traces.list(limit)

    async def delete_trace(self, trace_id: str) -> bool:
        if self._traces is None:
            return False
        return await self._traces.delete(trace_id)

    def describe_actions(self) -> list[dict[str, Any]]:
        return self.registry.describe()

    @property
    def pending_post_steps(self) -> int:
        return len(self._background)

    async def aclose(self) -> None:
        """Wait for detached post-steps so none are dropped on shutdown."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def build_engine(
    settings: EngineSettings,
    *,
    client: ModelClient | None = None,
    store: KeyValueStore | None = None,
    registry: ActionRegistry | None = None,
) -> Engine:
    if store is None:
        store = JsonFileStore(settings.state_dir) if settings.state_dir else InMemoryStore()
    if client is None:
        if settings.mock_llm:
            client = MockModelClient()
        else:
            client = OpenAIModelClient(settings.resolved_endpoints(), timeout_s=settings.model_timeout_s)

    stats = ModelStatsStore(store, max_entries=settings.stats_max_entries, retention_s=settings.stats_retention_s)
    cascade = ModelCascade(
        settings.tiers,
        client,
        stats,
        attempt_timeout_s=settings.model_timeout_s,
        skip_window_s=settings.skip_window_s,
        fallback_error_window_s=settings.fallback_error_window_s,
    )
    ambient = DefaultAmbientContext(
        default_timezone=settings.default_timezone,
        store=store,
        cache_ttl_s=settings.ambient_cache_ttl_s,
    )
    traces = TraceStore(store, max_traces=settings.max_traces) if settings.trace_enabled else None
    return Engine(
        registry or build_registry(store, default_timezone=settings.default_timezone),
        cascade,
        PromptResolver(ambient),
        traces=traces,
        step_timeout_s=settings.step_timeout_s,
        limits=ConversationLimits(
            max_messages=settings.conversation_max_messages,
            keep_head=settings.conversation_keep_head,
            keep_tail=settings.conversation_keep_tail,
        ),
    )
